"""
Label selector evaluation.

Replicates the Kubernetes LabelSelector semantics used by the API server so
that client-side matching (routing watch events) and server-side filtering
(listing workloads with a label query) always agree.

Two rules are easy to confuse and both matter:

- an absent selector matches nothing
- a present selector with no clauses matches everything

Query grammar (as accepted by ``labelSelector`` on list/watch calls):

    key=value
    key in (v1, v2)
    key notin (v1, v2)
    key
    !key

Clauses are joined with commas and combined with AND.
"""

from __future__ import annotations

import re
from typing import Iterable, Mapping

import structlog

from autopolicy.core.errors import InvalidSelectorError
from autopolicy.models import LabelSelector, LabelSelectorRequirement

logger = structlog.get_logger()

IN = "In"
NOT_IN = "NotIn"
EXISTS = "Exists"
DOES_NOT_EXIST = "DoesNotExist"

_SET_CLAUSE = re.compile(r"^(?P<key>[^\s!=(),]+)\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")
_EQUALITY_CLAUSE = re.compile(r"^(?P<key>[^\s!=(),]+)\s*(?P<op>==|=|!=)\s*(?P<value>[^\s!=(),]*)$")
_KEY = re.compile(r"^[^\s!=(),]+$")


def requirement_error(requirement: LabelSelectorRequirement) -> str | None:
    """Return why a requirement is malformed, or None if it is well formed."""
    operator = requirement.operator
    values = requirement.values or []

    if operator in (IN, NOT_IN):
        if not values:
            return f"LabelSelector has no or empty values for [{operator}] operator"
    elif operator in (EXISTS, DOES_NOT_EXIST):
        if values:
            return f"LabelSelector has [{operator}] operator with values, this is not legal"
    else:
        return f"LabelSelector has illegal/unknown operator [{operator}]"
    return None


def requirement_matches(requirement: LabelSelectorRequirement, labels: Mapping[str, str]) -> bool:
    """Evaluate one expression clause. Malformed clauses never match."""
    error = requirement_error(requirement)
    if error is not None:
        logger.warning(
            "selector_requirement_invalid",
            key=requirement.key,
            operator=requirement.operator,
            reason=error,
        )
        return False

    operator = requirement.operator
    present = requirement.key in labels

    if operator == IN:
        return present and labels[requirement.key] in (requirement.values or [])
    if operator == NOT_IN:
        return not present or labels[requirement.key] not in (requirement.values or [])
    if operator == EXISTS:
        return present
    return not present


def selector_matches(selector: LabelSelector, labels: Mapping[str, str]) -> bool:
    """Evaluate a present selector against a label map."""
    for key, value in (selector.match_labels or {}).items():
        if labels.get(key) != value:
            return False

    for requirement in selector.match_expressions or []:
        if not requirement_matches(requirement, labels):
            return False

    return True


def matches(
    namespace_filter: Iterable[str] | None,
    object_selector: LabelSelector | None,
    namespace: str | None,
    labels: Mapping[str, str] | None,
) -> bool:
    """
    Decide whether a candidate object falls under a policy.

    Args:
        namespace_filter: Allowed namespaces, or None for all namespaces
        object_selector: Label selector, or None to match nothing
        namespace: Candidate namespace
        labels: Candidate labels

    Returns:
        True if the candidate is selected
    """
    if namespace_filter is not None and namespace not in set(namespace_filter):
        return False

    if object_selector is None:
        return False

    return selector_matches(object_selector, labels or {})


def compile_to_query(selector: LabelSelector) -> str:
    """
    Render a selector as a label query string for list/watch calls.

    Raises:
        InvalidSelectorError: On the first malformed clause; no partial
            query is ever returned.
    """
    clauses = [f"{key}={value}" for key, value in sorted((selector.match_labels or {}).items())]

    for requirement in selector.match_expressions or []:
        error = requirement_error(requirement)
        if error is not None:
            raise InvalidSelectorError(error, {"key": requirement.key})

        operator = requirement.operator
        if operator in (IN, NOT_IN):
            values = ", ".join(requirement.values or [])
            clauses.append(f"{requirement.key} {operator.lower()} ({values})")
        elif operator == EXISTS:
            clauses.append(requirement.key)
        else:
            clauses.append(f"!{requirement.key}")

    return ",".join(clauses)


def _split_clauses(query: str) -> list[str]:
    """Split on commas that are not inside a value set."""
    clauses: list[str] = []
    depth = 0
    current: list[str] = []

    for char in query:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise InvalidSelectorError("Unbalanced ')' in label query", {"query": query})
        if char == "," and depth == 0:
            clauses.append("".join(current).strip())
            current = []
        else:
            current.append(char)

    if depth != 0:
        raise InvalidSelectorError("Unbalanced '(' in label query", {"query": query})

    clauses.append("".join(current).strip())
    return clauses


def parse_query(query: str) -> LabelSelector:
    """
    Parse a label query string back into a selector.

    Equality clauses become ``matchLabels``; ``!=`` becomes a single-value
    ``NotIn``. An empty query yields the empty selector.

    Raises:
        InvalidSelectorError: If any clause does not follow the grammar
    """
    if not query.strip():
        return LabelSelector(matchLabels={}, matchExpressions=[])

    match_labels: dict[str, str] = {}
    expressions: list[LabelSelectorRequirement] = []

    for clause in _split_clauses(query):
        if not clause:
            raise InvalidSelectorError("Empty clause in label query", {"query": query})

        set_match = _SET_CLAUSE.match(clause)
        if set_match:
            values = [v.strip() for v in set_match.group("values").split(",") if v.strip()]
            if not values:
                raise InvalidSelectorError(
                    "Set-based clause requires at least one value", {"clause": clause}
                )
            operator = IN if set_match.group("op") == "in" else NOT_IN
            expressions.append(
                LabelSelectorRequirement(key=set_match.group("key"), operator=operator, values=values)
            )
            continue

        equality_match = _EQUALITY_CLAUSE.match(clause)
        if equality_match:
            key = equality_match.group("key")
            value = equality_match.group("value")
            if equality_match.group("op") == "!=":
                expressions.append(
                    LabelSelectorRequirement(key=key, operator=NOT_IN, values=[value])
                )
            else:
                match_labels[key] = value
            continue

        if clause.startswith("!") and _KEY.match(clause[1:]):
            expressions.append(LabelSelectorRequirement(key=clause[1:], operator=DOES_NOT_EXIST))
            continue

        if _KEY.match(clause):
            expressions.append(LabelSelectorRequirement(key=clause, operator=EXISTS))
            continue

        raise InvalidSelectorError("Unparseable label query clause", {"clause": clause})

    return LabelSelector(matchLabels=match_labels, matchExpressions=expressions)
