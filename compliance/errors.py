"""Error taxonomy shared by services, collaborator adapters and the HTTP layer.

- ValidationError: bad input, rejected before any side effect.
- TransientExternalError: network/timeout/5xx from a collaborator, safe to retry.
- NotFoundError: the collaborator says the resource is already gone.
- IntegrityError: a deletion certificate no longer matches its signature.
- RateLimitedError: caller exceeded a request quota.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class ComplianceError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(ComplianceError):
    """Input rejected before any side effect took place."""

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or code)


class TransientExternalError(ComplianceError):
    """A collaborator call failed in a way that may succeed on retry."""


class NotFoundError(ComplianceError):
    """A collaborator reports the target resource does not exist."""


class IntegrityError(ComplianceError):
    """A stored deletion certificate failed signature verification."""


class RateLimitedError(ComplianceError):
    """Too many requests for the same key within the window."""

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(f"Rate limited, retry after {retry_after}s")


@dataclass
class DeleteOutcome:
    """Result of an idempotent delete against one collaborator."""

    deleted: bool
    not_found: bool = False
    error: str | None = None


async def delete_idempotently(op: Callable[[], Awaitable[object]], target: str = "") -> DeleteOutcome:
    """Run a delete call where "already gone" counts as success.

    NotFoundError maps to deleted=True; any other exception maps to
    deleted=False with the message recorded.
    """
    try:
        await op()
    except NotFoundError:
        logger.info("Delete target already absent: %s", target)
        return DeleteOutcome(deleted=True, not_found=True)
    except Exception as exc:
        logger.warning("Delete failed for %s: %s", target, exc)
        return DeleteOutcome(deleted=False, error=str(exc) or exc.__class__.__name__)
    return DeleteOutcome(deleted=True)
