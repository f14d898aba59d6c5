import logging
from dataclasses import dataclass
from datetime import datetime

from journey_engine.core.config import settings
from journey_engine.core.errors import EnrollmentConflictError
from journey_engine.core.observability import log_engine_event
from journey_engine.core.time_utils import ensure_utc
from journey_engine.db.session import SessionLocal
from journey_engine.services.journey_executor import (
    JourneyRuntime,
    build_runtime,
    execute_node,
    graph_for,
    handle_event_timeout,
    move_to_next_node,
    retry_failed_resume,
)
from journey_engine.services.journey_store import (
    advance_transaction,
    get_due_scheduled_executions,
    get_enrollment,
    get_journey,
    get_scheduled_execution,
    mark_scheduled_execution,
    update_enrollment,
)


@dataclass
class SchedulerSummary:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    conflicts: int = 0


def process_scheduled_executions(runtime: JourneyRuntime, now: datetime | None = None) -> SchedulerSummary:
    """Drain due pending records, one transaction per record."""
    db = runtime.db
    now = ensure_utc(now) if now is not None else runtime.now()
    summary = SchedulerSummary()

    due = get_due_scheduled_executions(db, now=now, limit=settings.journey_scheduler_batch_size)
    record_ids = [record.id for record in due]

    for record_id in record_ids:
        try:
            with advance_transaction(db):
                outcome = _process_record(runtime, record_id, now)
        except EnrollmentConflictError:
            summary.conflicts += 1
            log_engine_event("scheduled_execution_conflict", level=logging.WARNING, record_id=record_id)
            continue
        except Exception as exc:  # noqa: BLE001
            _recover_after_error(runtime, record_id, now, exc)
            summary.failed += 1
            continue

        if outcome == "processed":
            summary.processed += 1
        elif outcome == "failed":
            summary.failed += 1
        else:
            summary.skipped += 1

    log_engine_event(
        "scheduler_tick_completed",
        due=len(record_ids),
        processed=summary.processed,
        failed=summary.failed,
        skipped=summary.skipped,
        conflicts=summary.conflicts,
    )
    return summary


def process_scheduled_journey_steps() -> SchedulerSummary:
    db = SessionLocal()
    try:
        return process_scheduled_executions(build_runtime(db))
    finally:
        db.close()


def _process_record(runtime: JourneyRuntime, record_id: str, now: datetime) -> str:
    db = runtime.db
    record = get_scheduled_execution(db, record_id)
    if record is None or record.status != "pending":
        return "skipped"

    enrollment = get_enrollment(db, record.enrollment_id)
    if enrollment is None:
        mark_scheduled_execution(db, record, "failed", processed_at=now, error="enrollment_not_found")
        return "failed"
    journey = get_journey(db, record.journey_id)
    if journey is None:
        mark_scheduled_execution(db, record, "failed", processed_at=now, error="journey_not_found")
        return "failed"
    graph = graph_for(journey)
    node = graph.node(record.node_id)
    if node is None:
        mark_scheduled_execution(db, record, "failed", processed_at=now, error="node_not_found")
        return "failed"

    if enrollment.status != "waiting" or enrollment.current_node_id != record.node_id:
        mark_scheduled_execution(db, record, "cancelled", processed_at=now, error="stale_resume")
        return "skipped"

    mark_scheduled_execution(db, record, "processed", processed_at=now)
    kind = (record.metadata_json or {}).get("kind")
    if kind == "retry":
        enrollment.status = "active"
        update_enrollment(db, enrollment)
        execute_node(runtime, journey, enrollment, node, graph=graph)
    elif kind == "event_timeout":
        handle_event_timeout(runtime, journey, enrollment, node, record)
    else:
        move_to_next_node(runtime, journey, enrollment, node, graph=graph)
    return "processed"


def _recover_after_error(runtime: JourneyRuntime, record_id: str, now: datetime, error: Exception) -> None:
    """Close the record that raised and re-queue its step so the enrollment is never left parked."""
    db = runtime.db
    log_engine_event(
        "scheduled_execution_failed",
        level=logging.ERROR,
        record_id=record_id,
        error_type=type(error).__name__,
        error=str(error),
    )
    try:
        with advance_transaction(db):
            _requeue_failed_record(runtime, record_id, now, error)
    except EnrollmentConflictError:
        # The record is still pending; the next tick picks it up again.
        log_engine_event("scheduled_execution_conflict", level=logging.WARNING, record_id=record_id)
    except Exception as exc:  # noqa: BLE001
        log_engine_event(
            "scheduled_execution_recovery_failed",
            level=logging.ERROR,
            record_id=record_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        record = get_scheduled_execution(db, record_id)
        if record is not None and record.status == "pending":
            mark_scheduled_execution(db, record, "failed", processed_at=now, error=str(error) or type(error).__name__)
            db.commit()


def _requeue_failed_record(runtime: JourneyRuntime, record_id: str, now: datetime, error: Exception) -> None:
    db = runtime.db
    record = get_scheduled_execution(db, record_id)
    if record is None or record.status != "pending":
        return
    mark_scheduled_execution(db, record, "failed", processed_at=now, error=str(error) or type(error).__name__)

    enrollment = get_enrollment(db, record.enrollment_id)
    journey = get_journey(db, record.journey_id)
    if enrollment is None or journey is None or enrollment.current_node_id != record.node_id:
        return
    node = graph_for(journey).node(record.node_id)
    if node is None:
        return
    retry_failed_resume(runtime, journey, enrollment, node, record, error, now=now)
