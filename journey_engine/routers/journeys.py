from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from journey_engine.core.api_docs import error_responses
from journey_engine.core.deps import get_db, get_runtime
from journey_engine.core.errors import EnrollmentConflictError
from journey_engine.core.time_utils import ensure_utc
from journey_engine.models.journey import Journey, JourneyActivityLog, JourneyEnrollment
from journey_engine.schemas.common import PaginationMeta
from journey_engine.schemas.journey import (
    ActivityListOut,
    ActivityOut,
    EnrollmentExitIn,
    EnrollmentListOut,
    EnrollmentOut,
    EnrollmentStatus,
    JourneyActivationOut,
    JourneyAnalyticsOut,
    JourneyCreateIn,
    JourneyEventIn,
    JourneyEventOut,
    JourneyListOut,
    JourneyOut,
    JourneyStatus,
    JourneyValidationResult,
    LinkClickIn,
    LinkClickOut,
    SchedulerRunIn,
    SchedulerRunOut,
)
from journey_engine.services.journey_analytics import compute_journey_analytics
from journey_engine.services.journey_executor import JourneyRuntime, exit_journey, record_link_click
from journey_engine.services.journey_scheduler import process_scheduled_executions
from journey_engine.services.journey_store import (
    TERMINAL_STATUSES,
    advance_transaction,
    count_activity,
    get_enrollment,
    get_journey,
    list_activity,
    list_enrollments,
    list_journeys,
    save_journey,
)
from journey_engine.services.journey_validation import validate_journey
from journey_engine.services.trigger_matcher import match_and_execute_journeys

router = APIRouter(prefix="/journeys", tags=["journeys"])


def _journey_or_404(db: Session, journey_id: str) -> Journey:
    journey = get_journey(db, journey_id)
    if not journey:
        raise HTTPException(status_code=404, detail="Journey not found")
    return journey


def _enrollment_or_404(db: Session, enrollment_id: str) -> JourneyEnrollment:
    enrollment = get_enrollment(db, enrollment_id)
    if not enrollment:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    return enrollment


def _journey_out(journey: Journey) -> JourneyOut:
    return JourneyOut(
        id=journey.id,
        name=journey.name,
        description=journey.description,
        status=journey.status,
        nodes=journey.nodes_json or [],
        edges=journey.edges_json or [],
        settings=journey.settings_json or {},
        version=journey.version,
        activated_at=ensure_utc(journey.activated_at),
        created_at=ensure_utc(journey.created_at),
        updated_at=ensure_utc(journey.updated_at),
    )


def _enrollment_out(enrollment: JourneyEnrollment) -> EnrollmentOut:
    return EnrollmentOut(
        id=enrollment.id,
        journey_id=enrollment.journey_id,
        customer_id=enrollment.customer_id,
        customer_email=enrollment.customer_email,
        customer_phone=enrollment.customer_phone,
        status=enrollment.status,
        current_node_id=enrollment.current_node_id,
        completed_nodes=list(enrollment.completed_nodes_json or []),
        entered_at=ensure_utc(enrollment.entered_at),
        last_activity_at=ensure_utc(enrollment.last_activity_at),
        completed_at=ensure_utc(enrollment.completed_at),
        goal_achieved=bool(enrollment.goal_achieved),
        conversion_value=enrollment.conversion_value,
        context=enrollment.context_json or {},
        waiting_for_event=enrollment.waiting_for_event,
        waiting_for_event_timeout=ensure_utc(enrollment.waiting_for_event_timeout),
        waiting_for_goal=bool(enrollment.waiting_for_goal),
        goal_node_id=enrollment.goal_node_id,
        exit_reason=enrollment.exit_reason,
        metadata=enrollment.metadata_json or {},
        version=enrollment.version,
    )


def _activity_out(entry: JourneyActivityLog) -> ActivityOut:
    return ActivityOut(
        id=entry.id,
        enrollment_id=entry.enrollment_id,
        sequence=entry.sequence,
        timestamp=ensure_utc(entry.timestamp),
        event_type=entry.event_type,
        data=entry.data_json,
    )


@router.post(
    "/events",
    response_model=JourneyEventOut,
    summary="Ingest a business event and advance matching journeys",
    responses=error_responses(409, 422, 500),
)
def ingest_event(
    payload: JourneyEventIn,
    runtime: JourneyRuntime = Depends(get_runtime),
):
    try:
        with advance_transaction(runtime.db):
            summary = match_and_execute_journeys(
                runtime,
                payload.event_type,
                payload=payload.payload,
                shop=payload.shop,
                received_at=payload.received_at,
            )
    except EnrollmentConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return JourneyEventOut(
        event_type=summary.event_type,
        customer_id=summary.customer_id,
        matched_journey_ids=summary.matched_journey_ids,
        started_enrollment_ids=summary.started_enrollment_ids,
        resumed_enrollment_ids=summary.resumed_enrollment_ids,
        goal_enrollment_ids=summary.goal_enrollment_ids,
        skipped_ineligible=summary.skipped_ineligible,
    )


@router.post(
    "/scheduler/run",
    response_model=SchedulerRunOut,
    summary="Drain due scheduled journey steps",
    responses=error_responses(422, 500),
)
def run_scheduler(
    payload: SchedulerRunIn | None = None,
    runtime: JourneyRuntime = Depends(get_runtime),
):
    now = payload.now if payload else None
    summary = process_scheduled_executions(runtime, now=now)
    return SchedulerRunOut(
        processed=summary.processed,
        failed=summary.failed,
        skipped=summary.skipped,
        conflicts=summary.conflicts,
    )


@router.get(
    "/enrollments/{enrollment_id}",
    response_model=EnrollmentOut,
    summary="Get enrollment state",
    responses=error_responses(404, 422, 500),
)
def get_enrollment_detail(enrollment_id: str, db: Session = Depends(get_db)):
    return _enrollment_out(_enrollment_or_404(db, enrollment_id))


@router.get(
    "/enrollments/{enrollment_id}/activity",
    response_model=ActivityListOut,
    summary="List enrollment activity, newest first",
    responses=error_responses(404, 422, 500),
)
def list_enrollment_activity(
    enrollment_id: str,
    event_type: str | None = Query(default=None, max_length=80),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    _enrollment_or_404(db, enrollment_id)
    entries = list_activity(db, enrollment_id=enrollment_id, event_type=event_type, limit=limit, offset=offset)
    if event_type:
        total = len(list_activity(db, enrollment_id=enrollment_id, event_type=event_type))
    else:
        total = count_activity(db, enrollment_id=enrollment_id)
    return ActivityListOut(
        items=[_activity_out(entry) for entry in entries],
        pagination=PaginationMeta.for_page(total=total, limit=limit, offset=offset, count=len(entries)),
    )


@router.post(
    "/enrollments/{enrollment_id}/exit",
    response_model=EnrollmentOut,
    summary="Exit an enrollment and cancel its pending steps",
    responses=error_responses(404, 409, 422, 500),
)
def exit_enrollment(
    enrollment_id: str,
    payload: EnrollmentExitIn,
    runtime: JourneyRuntime = Depends(get_runtime),
):
    enrollment = _enrollment_or_404(runtime.db, enrollment_id)
    if enrollment.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail="Enrollment has already finished")
    try:
        with advance_transaction(runtime.db):
            exit_journey(runtime, enrollment, payload.reason)
    except EnrollmentConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return _enrollment_out(enrollment)


@router.post(
    "/enrollments/{enrollment_id}/link-clicks",
    response_model=LinkClickOut,
    summary="Record a tracked link click for an enrollment",
    responses=error_responses(404, 409, 422, 500),
)
def record_enrollment_link_click(
    enrollment_id: str,
    payload: LinkClickIn,
    runtime: JourneyRuntime = Depends(get_runtime),
):
    enrollment = _enrollment_or_404(runtime.db, enrollment_id)
    try:
        with advance_transaction(runtime.db):
            achieved = record_link_click(runtime, enrollment, tracking=payload.tracking, url=payload.url)
    except EnrollmentConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return LinkClickOut(enrollment=_enrollment_out(enrollment), goal_achieved=achieved)


@router.post(
    "",
    response_model=JourneyOut,
    summary="Create journey",
    responses=error_responses(422, 500),
)
def create_journey(payload: JourneyCreateIn, db: Session = Depends(get_db)):
    journey = save_journey(
        db,
        name=payload.name.strip(),
        description=payload.description,
        status=payload.status,
        nodes=payload.nodes,
        edges=payload.edges,
        settings_json=payload.settings,
    )
    db.commit()
    db.refresh(journey)
    return _journey_out(journey)


@router.get(
    "",
    response_model=JourneyListOut,
    summary="List journeys",
    responses=error_responses(422, 500),
)
def list_journey_definitions(
    status: JourneyStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = list_journeys(db, status=status, limit=limit, offset=offset)
    return JourneyListOut(
        items=[_journey_out(row) for row in rows],
        pagination=PaginationMeta.for_page(total=total, limit=limit, offset=offset, count=len(rows)),
    )


@router.get(
    "/{journey_id}",
    response_model=JourneyOut,
    summary="Get journey",
    responses=error_responses(404, 422, 500),
)
def get_journey_detail(journey_id: str, db: Session = Depends(get_db)):
    return _journey_out(_journey_or_404(db, journey_id))


@router.post(
    "/{journey_id}/validate",
    response_model=JourneyValidationResult,
    summary="Validate journey graph and node configuration",
    responses=error_responses(404, 422, 500),
)
def validate_journey_definition(journey_id: str, db: Session = Depends(get_db)):
    return validate_journey(_journey_or_404(db, journey_id))


@router.post(
    "/{journey_id}/activate",
    response_model=JourneyActivationOut,
    summary="Validate and activate journey",
    responses=error_responses(404, 422, 500),
)
def activate_journey(
    journey_id: str,
    runtime: JourneyRuntime = Depends(get_runtime),
):
    db = runtime.db
    journey = _journey_or_404(db, journey_id)
    validation = validate_journey(journey)
    if validation.status == "fail":
        raise HTTPException(
            status_code=422,
            detail=[
                {"field": issue.node_id or "journey", "message": issue.title, "type": issue.id}
                for issue in validation.errors
            ],
        )
    if journey.status != "ACTIVE":
        journey.status = "ACTIVE"
        journey.activated_at = runtime.now()
        journey.version = (journey.version or 0) + 1
        db.commit()
        db.refresh(journey)
    return JourneyActivationOut(journey=_journey_out(journey), validation=validation)


@router.get(
    "/{journey_id}/enrollments",
    response_model=EnrollmentListOut,
    summary="List journey enrollments",
    responses=error_responses(404, 422, 500),
)
def list_journey_enrollments(
    journey_id: str,
    status: EnrollmentStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    _journey_or_404(db, journey_id)
    rows, total = list_enrollments(db, journey_id=journey_id, status=status, limit=limit, offset=offset)
    return EnrollmentListOut(
        items=[_enrollment_out(row) for row in rows],
        pagination=PaginationMeta.for_page(total=total, limit=limit, offset=offset, count=len(rows)),
    )


@router.get(
    "/{journey_id}/analytics",
    response_model=JourneyAnalyticsOut,
    summary="Journey funnel and experiment metrics",
    responses=error_responses(404, 422, 500),
)
def get_journey_analytics(journey_id: str, db: Session = Depends(get_db)):
    analytics = compute_journey_analytics(db, journey_id)
    if analytics is None:
        raise HTTPException(status_code=404, detail="Journey not found")
    return analytics
