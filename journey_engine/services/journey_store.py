import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from journey_engine.core.config import settings
from journey_engine.core.errors import EnrollmentConflictError, RecordIntegrityError
from journey_engine.core.id_utils import generate_prefixed_id
from journey_engine.core.observability import log_engine_event
from journey_engine.core.time_utils import ensure_utc, utcnow
from journey_engine.models.journey import (
    Journey,
    JourneyActivityLog,
    JourneyCampaignMessage,
    JourneyEnrollment,
    JourneyScheduledExecution,
)


ENROLLMENT_STATUSES = {"active", "waiting", "completed", "exited", "failed"}
TERMINAL_STATUSES = {"completed", "exited", "failed"}
SCHEDULE_STATUSES = {"pending", "processed", "failed", "cancelled"}
JOURNEY_STATUSES = {"DRAFT", "ACTIVE", "PAUSED", "ARCHIVED"}


def validated_json(collection: str, payload: Any) -> Any:
    """Round-trip ``payload`` through JSON and return the decoded copy.

    Anything that cannot be represented as strict JSON is written to a
    timestamped backup file and raised as ``RecordIntegrityError``.
    """
    if payload is None:
        return None
    try:
        return json.loads(json.dumps(payload, allow_nan=False))
    except (TypeError, ValueError) as exc:
        backup_path = _write_backup(collection, payload)
        log_engine_event(
            "record_integrity_failure",
            level=logging.ERROR,
            collection=collection,
            backup_path=backup_path,
            error=str(exc),
        )
        raise RecordIntegrityError(
            f"Refusing to persist {collection}: payload is not serializable ({exc})",
            backup_path=backup_path,
        ) from exc


def _write_backup(collection: str, payload: Any) -> str:
    os.makedirs(settings.journey_backup_dir, exist_ok=True)
    stamp = int(utcnow().timestamp() * 1000)
    path = os.path.join(settings.journey_backup_dir, f"{collection}.{stamp}.backup")
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, default=repr, indent=2))
    return path


# Journeys


def get_journey(db: Session, journey_id: str) -> Journey | None:
    return db.execute(select(Journey).where(Journey.id == journey_id)).scalar_one_or_none()


def get_active_journeys(db: Session) -> list[Journey]:
    rows = db.execute(
        select(Journey).where(Journey.status == "ACTIVE").order_by(Journey.created_at.asc(), Journey.id.asc())
    ).scalars().all()
    return [row for row in rows if _is_valid_journey(row)]


def list_journeys(db: Session, *, status: str | None = None, limit: int = 50, offset: int = 0) -> tuple[list[Journey], int]:
    query = select(Journey)
    count_query = select(func.count(Journey.id))
    if status:
        query = query.where(Journey.status == status)
        count_query = count_query.where(Journey.status == status)
    total = int(db.execute(count_query).scalar_one())
    rows = db.execute(query.order_by(Journey.created_at.desc(), Journey.id.asc()).offset(offset).limit(limit)).scalars().all()
    return list(rows), total


def save_journey(
    db: Session,
    *,
    name: str,
    nodes: list[dict[str, Any]],
    edges: list[dict[str, Any]],
    settings_json: dict[str, Any] | None = None,
    description: str | None = None,
    status: str = "DRAFT",
    journey_id: str | None = None,
) -> Journey:
    journey = Journey(
        id=journey_id or generate_prefixed_id("journey"),
        name=name,
        description=description,
        status=status,
        nodes_json=validated_json("journeys", nodes),
        edges_json=validated_json("journeys", edges),
        settings_json=validated_json("journeys", settings_json or {}),
        version=1,
    )
    db.add(journey)
    db.flush()
    return journey


def _is_valid_journey(journey: Journey) -> bool:
    if journey.status not in JOURNEY_STATUSES:
        log_engine_event("record_dropped", collection="journeys", record_id=journey.id, reason="unknown_status")
        return False
    if not isinstance(journey.nodes_json, list) or not isinstance(journey.edges_json, list):
        log_engine_event("record_dropped", collection="journeys", record_id=journey.id, reason="malformed_graph")
        return False
    return True


# Enrollments


def append_enrollment(db: Session, enrollment: JourneyEnrollment) -> JourneyEnrollment:
    _validate_enrollment_payload(enrollment)
    db.add(enrollment)
    db.flush()
    return enrollment


def update_enrollment(db: Session, enrollment: JourneyEnrollment) -> JourneyEnrollment:
    """Validate JSON fields and flush; the version column guards concurrent writers."""
    _validate_enrollment_payload(enrollment)
    db.flush()
    return enrollment


def _validate_enrollment_payload(enrollment: JourneyEnrollment) -> None:
    validated_json(
        "enrollments",
        {
            "completed_nodes": enrollment.completed_nodes_json,
            "context": enrollment.context_json,
            "metadata": enrollment.metadata_json,
        },
    )


def _is_valid_enrollment(enrollment: JourneyEnrollment) -> bool:
    if enrollment.status not in ENROLLMENT_STATUSES:
        reason = "unknown_status"
    elif not enrollment.customer_id or not enrollment.journey_id:
        reason = "missing_identity"
    elif enrollment.entered_at is None:
        reason = "missing_entered_at"
    else:
        return True
    log_engine_event("record_dropped", collection="enrollments", record_id=enrollment.id, reason=reason)
    return False


def get_enrollment(db: Session, enrollment_id: str) -> JourneyEnrollment | None:
    enrollment = db.execute(
        select(JourneyEnrollment).where(JourneyEnrollment.id == enrollment_id)
    ).scalar_one_or_none()
    if enrollment is None or not _is_valid_enrollment(enrollment):
        return None
    return enrollment


def list_customer_enrollments(
    db: Session,
    *,
    customer_id: str,
    journey_id: str | None = None,
    statuses: set[str] | None = None,
) -> list[JourneyEnrollment]:
    query = select(JourneyEnrollment).where(JourneyEnrollment.customer_id == customer_id)
    if journey_id:
        query = query.where(JourneyEnrollment.journey_id == journey_id)
    if statuses:
        query = query.where(JourneyEnrollment.status.in_(sorted(statuses)))
    rows = db.execute(query.order_by(JourneyEnrollment.entered_at.asc(), JourneyEnrollment.id.asc())).scalars().all()
    return [row for row in rows if _is_valid_enrollment(row)]


def get_last_enrollment(db: Session, *, journey_id: str, customer_id: str) -> JourneyEnrollment | None:
    enrollments = list_customer_enrollments(db, customer_id=customer_id, journey_id=journey_id)
    if not enrollments:
        return None
    return max(enrollments, key=lambda item: ensure_utc(item.entered_at))


def list_enrollments(
    db: Session,
    *,
    journey_id: str,
    status: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> tuple[list[JourneyEnrollment], int]:
    query = select(JourneyEnrollment).where(JourneyEnrollment.journey_id == journey_id)
    count_query = select(func.count(JourneyEnrollment.id)).where(JourneyEnrollment.journey_id == journey_id)
    if status:
        query = query.where(JourneyEnrollment.status == status)
        count_query = count_query.where(JourneyEnrollment.status == status)
    total = int(db.execute(count_query).scalar_one())
    query = query.order_by(JourneyEnrollment.entered_at.desc(), JourneyEnrollment.id.asc()).offset(offset)
    if limit is not None:
        query = query.limit(limit)
    rows = db.execute(query).scalars().all()
    return [row for row in rows if _is_valid_enrollment(row)], total


# Activity log


def append_activity(
    db: Session,
    *,
    enrollment_id: str,
    event_type: str,
    data: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> JourneyActivityLog:
    last_sequence = db.execute(
        select(func.max(JourneyActivityLog.sequence)).where(JourneyActivityLog.enrollment_id == enrollment_id)
    ).scalar_one()
    sequence = int(last_sequence or 0) + 1
    record = JourneyActivityLog(
        id=generate_prefixed_id("log"),
        enrollment_id=enrollment_id,
        sequence=sequence,
        timestamp=timestamp or utcnow(),
        event_type=event_type,
        data_json=validated_json("activity_logs", data),
    )
    db.add(record)
    db.flush()

    cap = settings.journey_activity_log_cap
    if sequence > cap:
        db.execute(
            delete(JourneyActivityLog).where(
                JourneyActivityLog.enrollment_id == enrollment_id,
                JourneyActivityLog.sequence <= sequence - cap,
            )
        )
    return record


def list_activity(
    db: Session,
    *,
    enrollment_id: str,
    event_type: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[JourneyActivityLog]:
    """Activity entries for one enrollment, newest first."""
    query = select(JourneyActivityLog).where(JourneyActivityLog.enrollment_id == enrollment_id)
    if event_type:
        query = query.where(JourneyActivityLog.event_type == event_type)
    query = query.order_by(JourneyActivityLog.sequence.desc()).offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return list(db.execute(query).scalars().all())


def count_activity(db: Session, *, enrollment_id: str) -> int:
    return int(
        db.execute(
            select(func.count(JourneyActivityLog.id)).where(JourneyActivityLog.enrollment_id == enrollment_id)
        ).scalar_one()
    )


# Scheduled executions


def add_scheduled_execution(
    db: Session,
    *,
    journey_id: str,
    enrollment_id: str,
    node_id: str,
    resume_at: datetime,
    created_at: datetime,
    metadata: dict[str, Any] | None = None,
    id_prefix: str = "sched",
) -> JourneyScheduledExecution:
    record = JourneyScheduledExecution(
        id=generate_prefixed_id(id_prefix),
        journey_id=journey_id,
        enrollment_id=enrollment_id,
        node_id=node_id,
        resume_at=resume_at,
        status="pending",
        created_at=created_at,
        processed_at=None,
        error=None,
        metadata_json=validated_json("scheduled_executions", metadata),
    )
    db.add(record)
    db.flush()
    return record


def get_due_scheduled_executions(db: Session, *, now: datetime, limit: int | None = None) -> list[JourneyScheduledExecution]:
    query = (
        select(JourneyScheduledExecution)
        .where(
            JourneyScheduledExecution.status == "pending",
            JourneyScheduledExecution.resume_at <= now,
        )
        .order_by(JourneyScheduledExecution.resume_at.asc(), JourneyScheduledExecution.created_at.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    rows = db.execute(query).scalars().all()
    return [row for row in rows if row.enrollment_id and row.node_id]


def get_scheduled_execution(db: Session, record_id: str) -> JourneyScheduledExecution | None:
    return db.execute(
        select(JourneyScheduledExecution).where(JourneyScheduledExecution.id == record_id)
    ).scalar_one_or_none()


def mark_scheduled_execution(
    db: Session,
    record: JourneyScheduledExecution,
    status: str,
    *,
    processed_at: datetime,
    error: str | None = None,
) -> JourneyScheduledExecution:
    if status not in SCHEDULE_STATUSES:
        raise ValueError(f"Unknown scheduled execution status '{status}'")
    record.status = status
    record.processed_at = processed_at
    record.error = error[:255] if error else None
    db.flush()
    return record


def cancel_scheduled_executions_for_enrollment(
    db: Session,
    *,
    enrollment_id: str,
    now: datetime,
    kind: str | None = None,
) -> int:
    pending = list_scheduled_executions(db, enrollment_id=enrollment_id, status="pending")
    ids = [
        record.id
        for record in pending
        if kind is None or (record.metadata_json or {}).get("kind") == kind
    ]
    if not ids:
        return 0
    db.execute(
        update(JourneyScheduledExecution)
        .where(
            JourneyScheduledExecution.id.in_(ids),
            JourneyScheduledExecution.status == "pending",
        )
        .values(status="cancelled", processed_at=now)
        .execution_options(synchronize_session="fetch")
    )
    db.flush()
    return len(ids)


def list_scheduled_executions(
    db: Session,
    *,
    enrollment_id: str,
    status: str | None = None,
) -> list[JourneyScheduledExecution]:
    query = select(JourneyScheduledExecution).where(JourneyScheduledExecution.enrollment_id == enrollment_id)
    if status:
        query = query.where(JourneyScheduledExecution.status == status)
    return list(db.execute(query.order_by(JourneyScheduledExecution.resume_at.asc())).scalars().all())


# Campaign messages


def append_campaign_message(
    db: Session,
    *,
    journey_id: str,
    enrollment_id: str,
    node_id: str,
    recipient: str,
    template_name: str,
    sent_at: datetime,
    meta: dict[str, Any] | None,
) -> JourneyCampaignMessage:
    record = JourneyCampaignMessage(
        id=generate_prefixed_id("msg"),
        journey_id=journey_id,
        enrollment_id=enrollment_id,
        node_id=node_id,
        recipient=recipient,
        template_name=template_name,
        sent_at=sent_at,
        meta_json=validated_json("campaign_messages", meta),
    )
    db.add(record)
    db.flush()
    return record


def list_campaign_messages(db: Session, *, enrollment_id: str) -> list[JourneyCampaignMessage]:
    return list(
        db.execute(
            select(JourneyCampaignMessage)
            .where(JourneyCampaignMessage.enrollment_id == enrollment_id)
            .order_by(JourneyCampaignMessage.sent_at.asc())
        ).scalars().all()
    )


@contextmanager
def advance_transaction(db: Session) -> Iterator[None]:
    """Commit one enrollment advance, or roll it back entirely.

    A concurrent writer that bumped the enrollment version first surfaces as
    ``EnrollmentConflictError``.
    """
    try:
        yield
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise EnrollmentConflictError("Enrollment was modified concurrently; retry the operation") from exc
    except Exception:
        db.rollback()
        raise
