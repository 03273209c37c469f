"""Deletion scope parsing and the scope → table mapping."""

from __future__ import annotations

from compliance.errors import ValidationError
from compliance.models.activity import ConsentRecord, Subscription, TrainingSession, UserSettings
from compliance.models.base import Base
from compliance.models.enums import DeletionScope

# Purge order for per-user collections; the users row itself goes last.
COLLECTION_MODELS: dict[str, type[Base]] = {
    DeletionScope.SESSIONS.value: TrainingSession,
    DeletionScope.SETTINGS.value: UserSettings,
    DeletionScope.SUBSCRIPTIONS.value: Subscription,
    DeletionScope.CONSENTS.value: ConsentRecord,
}


def validate_scope(scope: list[str] | None) -> list[str]:
    """Normalize a requested scope.

    Raises:
        ValidationError: empty scope, unknown entry, or `all` mixed with others.
    """
    if not scope:
        raise ValidationError("invalid_scope", "Deletion scope must not be empty")
    valid = {s.value for s in DeletionScope}
    unknown = sorted(set(scope) - valid)
    if unknown:
        raise ValidationError("invalid_scope", f"Unknown deletion scope: {unknown}")
    unique = list(dict.fromkeys(scope))
    if DeletionScope.ALL.value in unique and len(unique) > 1:
        raise ValidationError("invalid_scope", "'all' cannot be combined with other scopes")
    return unique


def is_full_scope(scope: list[str]) -> bool:
    return DeletionScope.ALL.value in scope


def collections_for_scope(scope: list[str]) -> list[tuple[str, type[Base]]]:
    if is_full_scope(scope):
        return list(COLLECTION_MODELS.items())
    return [(name, model) for name, model in COLLECTION_MODELS.items() if name in scope]
