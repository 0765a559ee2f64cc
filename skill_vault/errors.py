"""
Service-level error taxonomy.

Services raise these; the API layer turns them into JSON responses via the
handler installed in ``skill_vault.main``. Anything else that escapes a
service is an internal error.
"""
from typing import Any, List, Optional


class ServiceError(Exception):
    """Base class for typed, caller-visible service failures."""

    status_code: int = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        payload: dict = {"error": self.message}
        payload.update(self.extra)
        return payload


class ValidationError(ServiceError):
    """Malformed input. ``errors`` carries every violation found."""

    status_code = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None, **extra: Any):
        if errors is not None:
            extra["errors"] = list(errors)
        super().__init__(message, **extra)

    @property
    def errors(self) -> List[str]:
        return self.extra.get("errors", [self.message])


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    """Version-token mismatch or uniqueness collision.

    Extras carry the conflicting current value (``currentVersion``,
    ``conflictTagId``) so callers can resync.
    """

    status_code = 409


class PayloadTooLargeError(ValidationError):
    status_code = 413


class InvalidSnapshotError(ServiceError):
    """A stored version snapshot failed shape validation."""

    status_code = 422


class FeatureUnavailableError(ServiceError):
    """Versioning storage is not provisioned (distinct from "not found")."""

    status_code = 503


VERSIONING_NOT_READY_MESSAGE = (
    "Versioning is not initialized. Create the skill_versions and "
    "skill_publications tables, then restart the server."
)
