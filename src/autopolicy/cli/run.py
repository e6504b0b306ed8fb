"""CLI commands that start the long-running processes."""

from __future__ import annotations

import asyncio

import structlog
import uvicorn

from autopolicy.config import Settings, get_settings
from autopolicy.controller import Controller
from autopolicy.core.errors import main_with_error_handling
from autopolicy.kube import KubeClient
from autopolicy.logging import configure_logging

logger = structlog.get_logger()


@main_with_error_handling()
def run_command(settings: Settings | None = None) -> int:
    """Run the reconciliation controller until SIGINT/SIGTERM."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    kube = KubeClient(
        kubeconfig=settings.kubeconfig,
        context=settings.kube_context,
        field_manager=settings.field_manager,
        timeout=settings.request_timeout_seconds,
    )
    controller = Controller(settings, kube)
    asyncio.run(controller.run())
    return 0


@main_with_error_handling()
def webhook_command(settings: Settings | None = None) -> int:
    """Serve the admission webhook."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    logger.info("webhook_starting", host=settings.webhook_host, port=settings.webhook_port)
    uvicorn.run(
        "autopolicy.api.main:app",
        host=settings.webhook_host,
        port=settings.webhook_port,
        ssl_certfile=settings.webhook_certfile,
        ssl_keyfile=settings.webhook_keyfile,
        log_config=None,
    )
    return 0
