"""Periodic jobs: the deletion sweep and expired-artifact cleanup.

Each job returns a summary dict and emits a SYSTEM_MAINTENANCE event.
Safe to run on every tick and from several workers at once: due requests
are claimed with a compare-and-set before anything is purged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from compliance.db.engine import async_session_factory
from compliance.events import emit
from compliance.gdpr.export import ExportPipeline, export_pipeline
from compliance.gdpr.recovery import RecoveryCodeManager, recovery_manager
from compliance.gdpr.scheduler import DeletionScheduler, deletion_scheduler
from compliance.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


async def run_deletion_sweep(
    scheduler: DeletionScheduler | None = None,
    session_factory: Callable[[], Any] = async_session_factory,
    limit: int | None = None,
) -> dict[str, int]:
    """Execute every scheduled deletion whose grace period has ended.

    Requests stuck in processing past the timeout are resumed in the same pass.

    Each request runs in its own session so one failure does not block
    the rest of the batch.
    """
    scheduler = scheduler or deletion_scheduler
    summary = {"due": 0, "resumed": 0, "completed": 0, "failed": 0, "skipped": 0}

    try:
        async with session_factory() as db:
            due_ids = [request.id for request in await scheduler.find_due_requests(db, limit=limit)]
            stale_ids = [request.id for request in await scheduler.find_stale_requests(db, limit=limit)]
    except Exception:
        logger.exception("Deletion sweep could not load due requests")
        return summary
    summary["due"] = len(due_ids)
    summary["resumed"] = len(stale_ids)

    batch = [(request_id, scheduler.process_request) for request_id in due_ids]
    batch += [(request_id, scheduler.resume_stale) for request_id in stale_ids]
    for request_id, run in batch:
        try:
            async with session_factory() as db:
                result = await run(db, request_id)
        except Exception:
            logger.exception("Deletion sweep failed on request %s", request_id)
            summary["failed"] += 1
            continue
        if result is None:
            summary["skipped"] += 1
        elif result.success:
            summary["completed"] += 1
        else:
            summary["failed"] += 1

    await emit(SystemEvent(
        event_type=EventType.SYSTEM_MAINTENANCE,
        data={"action": "deletion_sweep", **summary},
        source_module="gdpr.jobs",
    ))
    logger.info(
        "Deletion sweep complete: due=%d resumed=%d completed=%d failed=%d skipped=%d",
        summary["due"],
        summary["resumed"],
        summary["completed"],
        summary["failed"],
        summary["skipped"],
    )
    return summary


async def run_export_cleanup(pipeline: ExportPipeline | None = None) -> dict[str, int]:
    """Remove export archives past the retention window."""
    pipeline = pipeline or export_pipeline
    summary = {"exports_deleted": 0}
    try:
        summary["exports_deleted"] = await pipeline.cleanup_expired()
    except Exception:
        logger.exception("Export cleanup job failed")
        return summary

    await emit(SystemEvent(
        event_type=EventType.SYSTEM_MAINTENANCE,
        data={"action": "export_cleanup", **summary},
        source_module="gdpr.jobs",
    ))
    return summary


async def run_recovery_code_cleanup(
    manager: RecoveryCodeManager | None = None,
    session_factory: Callable[[], Any] = async_session_factory,
) -> dict[str, int]:
    """Flip pending recovery codes past their expiry to `expired`."""
    manager = manager or recovery_manager
    summary = {"codes_expired": 0}
    try:
        async with session_factory() as db:
            summary["codes_expired"] = await manager.cleanup_expired(db)
            await db.commit()
    except Exception:
        logger.exception("Recovery code cleanup job failed")
        return summary

    await emit(SystemEvent(
        event_type=EventType.SYSTEM_MAINTENANCE,
        data={"action": "recovery_code_cleanup", **summary},
        source_module="gdpr.jobs",
    ))
    if summary["codes_expired"]:
        logger.info("Expired %d recovery code(s)", summary["codes_expired"])
    return summary
