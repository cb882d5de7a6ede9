"""Deterministic executor failure classification for retry policy."""

from __future__ import annotations

from collections.abc import Sequence
from fnmatch import fnmatchcase

from media_orchestrator.orchestrator.models import ErrorClassification

FAILURE_CLASSIFIER_VERSION = 1

_GLOB_CHARS = frozenset("*?[")


def classify_failure(
    *,
    error_type: str | None,
    error_message: str | None,
    retryable_patterns: Sequence[str],
    non_retryable_patterns: Sequence[str],
    default_retryable: bool,
) -> ErrorClassification:
    """Classify one failure; non-retryable patterns win over retryable ones."""

    candidates = _normalize_candidates(error_type=error_type, error_message=error_message)

    pattern = _first_match(candidates, non_retryable_patterns)
    if pattern is not None:
        return ErrorClassification(
            retryable=False,
            matched_rule="non_retryable_pattern",
            matched_pattern=pattern,
        )

    pattern = _first_match(candidates, retryable_patterns)
    if pattern is not None:
        return ErrorClassification(
            retryable=True,
            matched_rule="retryable_pattern",
            matched_pattern=pattern,
        )

    return ErrorClassification(
        retryable=default_retryable,
        matched_rule="fallback_retryable" if default_retryable else "fallback_non_retryable",
        matched_pattern=None,
    )


def is_glob_pattern(pattern: str) -> bool:
    return any(char in _GLOB_CHARS for char in pattern)


def _normalize_candidates(*, error_type: str | None, error_message: str | None) -> tuple[str, ...]:
    return tuple(value.lower() for value in (error_type, error_message) if value)


def _first_match(candidates: tuple[str, ...], patterns: Sequence[str]) -> str | None:
    for pattern in patterns:
        needle = pattern.strip().lower()
        if not needle:
            continue
        if is_glob_pattern(needle):
            if any(fnmatchcase(candidate, needle) for candidate in candidates):
                return pattern
        elif any(needle in candidate for candidate in candidates):
            return pattern
    return None
