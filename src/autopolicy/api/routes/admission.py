"""AutoPolicy admission webhook route."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from autopolicy.admission import AdmissionReview, review
from autopolicy.config import Settings, get_settings

router = APIRouter()
logger = structlog.get_logger()


@router.post("/validate", response_model=AdmissionReview, response_model_exclude_none=True)
async def validate(
    body: AdmissionReview,
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> AdmissionReview:
    """Validate an AutoPolicy create/update request."""
    if body.request is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="AdmissionReview has no request",
        )

    response = review(body.request, settings.policy_kind_ref)
    logger.info(
        "admission_reviewed",
        uid=response.uid,
        operation=body.request.operation,
        allowed=response.allowed,
        reason=response.status.message if response.status else None,
    )
    return AdmissionReview(apiVersion=body.api_version, response=response)
