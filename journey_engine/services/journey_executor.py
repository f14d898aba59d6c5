import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from journey_engine.core.config import settings
from journey_engine.core.errors import ActionExecutionError, NodeConfigError, RecordIntegrityError
from journey_engine.core.id_utils import generate_prefixed_id
from journey_engine.core.observability import log_engine_event
from journey_engine.core.time_utils import ensure_utc, isoformat, parse_timestamp, utcnow
from journey_engine.models.journey import Journey, JourneyEnrollment, JourneyScheduledExecution
from journey_engine.schemas.node_config import (
    ActionConfig,
    ConditionConfig,
    DelayConfig,
    ExperimentConfig,
    ExperimentVariant,
    GoalConfig,
    NodeConfig,
)
from journey_engine.services.condition_evaluator import evaluate_conditions, to_number
from journey_engine.services.customer_directory import (
    CustomerDirectory,
    CustomerMutationService,
    get_customer_directory,
    parse_tags,
)
from journey_engine.services.journey_graph import JourneyGraph, JourneyNode
from journey_engine.services.journey_store import (
    TERMINAL_STATUSES,
    add_scheduled_execution,
    append_activity,
    append_campaign_message,
    append_enrollment,
    cancel_scheduled_executions_for_enrollment,
    get_journey,
    list_activity,
    list_customer_enrollments,
    update_enrollment,
)
from journey_engine.services.messaging_provider import (
    MessagingProvider,
    TemplatedMessageRequest,
    get_messaging_provider,
)
from journey_engine.services.retry_policy import next_retry_delay, policy_for


EXIT_REASONS = {"completed", "timeout", "no_path", "manual", "unsubscribed", "loop_detected"}


@dataclass(frozen=True)
class JourneyRuntime:
    """Everything one advance of the engine needs: storage and collaborators."""

    db: Session
    directory: CustomerDirectory
    mutations: CustomerMutationService
    messenger: MessagingProvider
    clock: Callable[[], datetime] = utcnow
    rng: random.Random = field(default_factory=random.Random)
    max_steps: int = settings.journey_max_steps_per_advance

    def now(self) -> datetime:
        return ensure_utc(self.clock())


def build_runtime(
    db: Session,
    *,
    clock: Callable[[], datetime] | None = None,
    rng: random.Random | None = None,
) -> JourneyRuntime:
    directory = get_customer_directory(settings.customer_directory_default)
    return JourneyRuntime(
        db=db,
        directory=directory,
        mutations=directory,
        messenger=get_messaging_provider(settings.messaging_provider_default),
        clock=clock or utcnow,
        rng=rng or random.Random(),
        max_steps=settings.journey_max_steps_per_advance,
    )


def graph_for(journey: Journey) -> JourneyGraph:
    return JourneyGraph.from_raw(journey.nodes_json, journey.edges_json)


def start_journey_execution(
    runtime: JourneyRuntime,
    journey: Journey,
    *,
    customer: dict[str, Any],
    trigger_node: JourneyNode,
    trigger_event: dict[str, Any],
) -> JourneyEnrollment:
    now = runtime.now()
    enrollment = JourneyEnrollment(
        id=generate_prefixed_id("enroll"),
        journey_id=journey.id,
        customer_id=str(customer["id"]),
        customer_email=customer.get("email") or None,
        customer_phone=customer.get("phone") or None,
        status="active",
        current_node_id=trigger_node.id,
        completed_nodes_json=[trigger_node.id],
        entered_at=now,
        last_activity_at=now,
        completed_at=None,
        goal_achieved=False,
        conversion_value=None,
        context_json={"trigger_event": trigger_event or {}, "variables": {}},
        waiting_for_event=None,
        waiting_for_event_timeout=None,
        waiting_for_goal=False,
        goal_node_id=None,
        exit_reason=None,
        metadata_json={},
    )
    append_enrollment(runtime.db, enrollment)
    _log(
        runtime,
        enrollment,
        "journey_started",
        {"journey_id": journey.id, "journey_name": journey.name, "customer_id": enrollment.customer_id},
    )

    graph = graph_for(journey)
    edge = graph.default_edge(trigger_node.id)
    if edge is None:
        return enrollment
    target = graph.node(edge.target)
    if target is not None:
        execute_node(runtime, journey, enrollment, target, graph=graph)
    return enrollment


def execute_node(
    runtime: JourneyRuntime,
    journey: Journey,
    enrollment: JourneyEnrollment,
    node: JourneyNode | None,
    *,
    graph: JourneyGraph | None = None,
) -> JourneyEnrollment:
    """Advance ``enrollment`` from ``node`` until it waits or terminates."""
    graph = graph or graph_for(journey)
    steps = 0
    current = node
    while current is not None:
        if enrollment.status in TERMINAL_STATUSES:
            break
        steps += 1
        if steps > runtime.max_steps:
            log_engine_event(
                "journey_loop_detected",
                level=logging.WARNING,
                journey_id=journey.id,
                enrollment_id=enrollment.id,
                node_id=current.id,
                steps=steps - 1,
            )
            exit_journey(runtime, enrollment, "loop_detected")
            break
        current = _enter_node(runtime, journey, graph, enrollment, current)
    return enrollment


def move_to_next_node(
    runtime: JourneyRuntime,
    journey: Journey,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    *,
    graph: JourneyGraph | None = None,
) -> JourneyEnrollment:
    graph = graph or graph_for(journey)
    _clear_failure(enrollment, node.id)
    target = _next_after(runtime, graph, enrollment, node)
    if target is not None:
        execute_node(runtime, journey, enrollment, target, graph=graph)
    return enrollment


def exit_journey(runtime: JourneyRuntime, enrollment: JourneyEnrollment, reason: str) -> JourneyEnrollment:
    if reason not in EXIT_REASONS:
        raise ValueError(f"Unknown exit reason '{reason}'")
    if enrollment.status in TERMINAL_STATUSES:
        return enrollment
    now = runtime.now()
    enrollment.status = "exited"
    enrollment.exit_reason = reason
    enrollment.completed_at = now
    enrollment.last_activity_at = now
    update_enrollment(runtime.db, enrollment)
    cancel_scheduled_executions_for_enrollment(runtime.db, enrollment_id=enrollment.id, now=now)
    _log(runtime, enrollment, "journey_exited", {"reason": reason})
    return enrollment


def fail_enrollment(
    runtime: JourneyRuntime,
    enrollment: JourneyEnrollment,
    *,
    node_id: str,
    reason: str,
    attempts: int | None = None,
) -> JourneyEnrollment:
    if enrollment.status in TERMINAL_STATUSES:
        return enrollment
    now = runtime.now()
    enrollment.status = "failed"
    enrollment.exit_reason = "node_failure"
    enrollment.completed_at = now
    enrollment.last_activity_at = now
    update_enrollment(runtime.db, enrollment)
    cancel_scheduled_executions_for_enrollment(runtime.db, enrollment_id=enrollment.id, now=now)
    _log(runtime, enrollment, "journey_failed", {"node_id": node_id, "attempts": attempts, "reason": reason})
    log_engine_event(
        "journey_failed",
        level=logging.WARNING,
        journey_id=enrollment.journey_id,
        enrollment_id=enrollment.id,
        node_id=node_id,
        reason=reason,
        attempts=attempts,
    )
    return enrollment


def signal_event(
    runtime: JourneyRuntime,
    enrollment: JourneyEnrollment,
    event_name: str,
    *,
    payload: dict[str, Any] | None = None,
) -> bool:
    """Resume an enrollment parked on ``event_name``. Returns False if it was not waiting for it."""
    if enrollment.status != "waiting" or not enrollment.waiting_for_event:
        return False
    if enrollment.waiting_for_event.strip().lower() != (event_name or "").strip().lower():
        return False

    journey = get_journey(runtime.db, enrollment.journey_id)
    if journey is None:
        return False
    graph = graph_for(journey)
    node = graph.node(enrollment.current_node_id)

    now = runtime.now()
    context = dict(enrollment.context_json or {})
    variables = dict(context.get("variables") or {})
    variables["last_event"] = {"name": event_name, "received_at": isoformat(now), "payload": payload or {}}
    context["variables"] = variables
    enrollment.context_json = context
    enrollment.waiting_for_event = None
    enrollment.waiting_for_event_timeout = None
    enrollment.last_activity_at = now
    update_enrollment(runtime.db, enrollment)
    cancel_scheduled_executions_for_enrollment(
        runtime.db,
        enrollment_id=enrollment.id,
        now=now,
        kind="event_timeout",
    )
    _log(runtime, enrollment, "event_received", {"node_id": enrollment.current_node_id, "event_name": event_name})

    if node is None:
        exit_journey(runtime, enrollment, "no_path")
        return True
    move_to_next_node(runtime, journey, enrollment, node, graph=graph)
    return True


def handle_event_timeout(
    runtime: JourneyRuntime,
    journey: Journey,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    record: JourneyScheduledExecution,
) -> bool:
    expected = str((record.metadata_json or {}).get("event_name") or "")
    still_waiting = (
        enrollment.status == "waiting"
        and enrollment.current_node_id == node.id
        and bool(enrollment.waiting_for_event)
        and enrollment.waiting_for_event.strip().lower() == expected.strip().lower()
    )
    if not still_waiting:
        return False

    enrollment.waiting_for_event = None
    enrollment.waiting_for_event_timeout = None
    _clear_failure(enrollment, node.id)
    update_enrollment(runtime.db, enrollment)
    _log(runtime, enrollment, "event_wait_timeout", {"node_id": node.id, "event_name": expected})
    exit_journey(runtime, enrollment, "timeout")
    return True


def retry_failed_resume(
    runtime: JourneyRuntime,
    journey: Journey,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    record: JourneyScheduledExecution,
    error: Exception,
    *,
    now: datetime,
) -> bool:
    """Re-queue a scheduled step whose resume raised, or fail the enrollment once attempts run out.

    The new record keeps the original kind so the same step is replayed.
    Returns True when a retry was scheduled.
    """
    if enrollment.status in TERMINAL_STATUSES:
        return False

    attempt = _record_failure(runtime, enrollment, node.id, error)
    _log(runtime, enrollment, "resume_error", {"node_id": node.id, "error": _short_error(error), "attempt": attempt})

    try:
        config = node.config()
    except NodeConfigError:
        config = None
    policy = policy_for(config if isinstance(config, ActionConfig) else ActionConfig())
    if attempt >= policy.max_attempts:
        fail_enrollment(runtime, enrollment, node_id=node.id, reason="resume_error", attempts=attempt)
        return False

    delay_ms = next_retry_delay(
        attempt,
        policy.strategy,
        policy.base_delay_ms,
        policy.max_delay_ms,
        rng=runtime.rng,
    )
    add_scheduled_execution(
        runtime.db,
        journey_id=journey.id,
        enrollment_id=enrollment.id,
        node_id=node.id,
        resume_at=now + timedelta(milliseconds=delay_ms),
        created_at=now,
        metadata={**(record.metadata_json or {}), "attempt": attempt, "reason": "resume_error"},
        id_prefix="retry",
    )
    enrollment.status = "waiting"
    enrollment.current_node_id = node.id
    update_enrollment(runtime.db, enrollment)
    _log(
        runtime,
        enrollment,
        "retry_scheduled",
        {"node_id": node.id, "attempt": attempt, "delay_ms": delay_ms, "strategy": policy.strategy},
    )
    return True


def recheck_waiting_goals(runtime: JourneyRuntime, customer_id: str) -> list[JourneyEnrollment]:
    """Re-evaluate every goal a customer is parked on; returns the enrollments that converted."""
    converted: list[JourneyEnrollment] = []
    waiting = list_customer_enrollments(runtime.db, customer_id=customer_id, statuses={"waiting"})
    for enrollment in waiting:
        if _recheck_goal(runtime, enrollment):
            converted.append(enrollment)
    return converted


def record_link_click(
    runtime: JourneyRuntime,
    enrollment: JourneyEnrollment,
    *,
    tracking: str,
    url: str | None = None,
) -> bool:
    _log(runtime, enrollment, "link_clicked", {"tracking": tracking, "url": url})
    if enrollment.status == "waiting":
        return _recheck_goal(runtime, enrollment)
    return False


def check_goal_achievement(
    runtime: JourneyRuntime,
    enrollment: JourneyEnrollment,
    config: GoalConfig,
) -> tuple[bool, float | None]:
    """Whether the goal is met, plus the conversion value of qualifying orders."""
    goal_type = config.goal_type

    if goal_type == "tag_added":
        if not config.tag_name:
            return False, None
        customer = runtime.directory.get_customer(enrollment.customer_id) or {}
        return config.tag_name in parse_tags(customer.get("tags")), None

    if goal_type == "link_clicked":
        if not config.link_tracking:
            return False, None
        expected = config.link_tracking.strip().lower()
        clicks = list_activity(runtime.db, enrollment_id=enrollment.id, event_type="link_clicked")
        for click in clicks:
            tracking = str((click.data_json or {}).get("tracking") or "")
            if tracking.strip().lower() == expected:
                return True, None
        return False, None

    orders = _orders_since_entry(runtime, enrollment)

    if goal_type == "order_value":
        threshold = config.order_threshold or 0
        total = _order_total(orders)
        return total >= threshold, total

    if goal_type == "product_purchased":
        if not config.product_id:
            return False, None
        matching = [order for order in orders if _has_line_item(order, config.product_id)]
        return bool(matching), (_order_total(matching) if matching else None)

    return bool(orders), (_order_total(orders) if orders else None)


def pick_variant(variants: list[ExperimentVariant], rng: random.Random) -> dict[str, Any] | None:
    if not variants:
        return None
    choices = [
        {
            "variant_id": variant.id,
            "variant_label": variant.label or variant.id or "Variant",
            "weight": variant.weight,
        }
        for variant in variants
    ]
    total = sum(choice["weight"] for choice in choices)
    if total <= 0:
        equal = 100 / len(choices)
        for choice in choices:
            choice["weight"] = equal
        total = equal * len(choices)

    threshold = rng.random() * total
    for choice in choices:
        if threshold < choice["weight"]:
            return choice
        threshold -= choice["weight"]
    return choices[-1]


# Node handlers


def _enter_node(
    runtime: JourneyRuntime,
    journey: Journey,
    graph: JourneyGraph,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
) -> JourneyNode | None:
    enrollment.status = "active"
    enrollment.current_node_id = node.id
    enrollment.last_activity_at = runtime.now()
    update_enrollment(runtime.db, enrollment)
    _log(runtime, enrollment, "node_entered", {"node_id": node.id, "node_type": node.type})

    try:
        config = node.config()
    except NodeConfigError as exc:
        _log(runtime, enrollment, "node_config_invalid", {"node_id": node.id, "error": _short_error(exc)})
        fail_enrollment(runtime, enrollment, node_id=node.id, reason="node_config_invalid")
        return None

    if isinstance(config, ActionConfig):
        return _execute_action_node(runtime, journey, graph, enrollment, node, config)
    if isinstance(config, DelayConfig):
        return _execute_delay_node(runtime, journey, graph, enrollment, node, config)
    if isinstance(config, ExperimentConfig):
        return _execute_experiment_node(runtime, graph, enrollment, node, config)
    if isinstance(config, ConditionConfig):
        return _execute_condition_node(runtime, graph, enrollment, node, config)
    if isinstance(config, GoalConfig):
        _execute_goal_node(runtime, enrollment, node, config)
        return None
    return _next_after(runtime, graph, enrollment, node)


def _execute_action_node(
    runtime: JourneyRuntime,
    journey: Journey,
    graph: JourneyGraph,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    config: ActionConfig,
) -> JourneyNode | None:
    try:
        _perform_action(runtime, journey, enrollment, node, config)
    except (RecordIntegrityError, SQLAlchemyError):
        raise
    except Exception as exc:  # noqa: BLE001
        attempt = _record_failure(runtime, enrollment, node.id, exc)
        _log(runtime, enrollment, "node_error", {"node_id": node.id, "error": _short_error(exc), "attempt": attempt})
        _schedule_retry_or_fail(runtime, journey, enrollment, node, config, attempt, "node_action_failure")
        return None

    _clear_failure(enrollment, node.id)
    _append_completed(enrollment, node.id)
    update_enrollment(runtime.db, enrollment)
    return _next_after(runtime, graph, enrollment, node)


def _perform_action(
    runtime: JourneyRuntime,
    journey: Journey,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    config: ActionConfig,
) -> None:
    subtype = (node.subtype or "").strip().lower()

    if subtype == "send_whatsapp":
        if not enrollment.customer_phone:
            _log(runtime, enrollment, "action_skipped", {"node_id": node.id, "reason": "missing_phone"})
            return
        template = config.template_name or "default_template"
        result = runtime.messenger.send_templated_message(
            TemplatedMessageRequest(
                to=enrollment.customer_phone,
                template=template,
                language=config.template_language,
                components=config.components,
            )
        )
        if not result.success:
            raise ActionExecutionError(result.error or "Message dispatch failed")
        _log(
            runtime,
            enrollment,
            "whatsapp_sent",
            {"node_id": node.id, "template": template, "result": result.as_dict()},
        )
        append_campaign_message(
            runtime.db,
            journey_id=journey.id,
            enrollment_id=enrollment.id,
            node_id=node.id,
            recipient=enrollment.customer_phone,
            template_name=template,
            sent_at=runtime.now(),
            meta=result.as_dict(),
        )
        return

    if subtype == "add_tag" and config.tag_name:
        runtime.mutations.add_tag(enrollment.customer_id, config.tag_name)
        _log(runtime, enrollment, "tag_added", {"node_id": node.id, "tag_name": config.tag_name})
        return

    if subtype == "update_property" and config.property_key:
        value = "" if config.property_value is None else config.property_value
        runtime.mutations.update_metafield(enrollment.customer_id, config.property_key, value)
        _log(runtime, enrollment, "property_updated", {"node_id": node.id, "property_key": config.property_key})
        return

    _log(runtime, enrollment, "action_skipped", {"node_id": node.id, "reason": "nothing_to_do", "subtype": subtype})


def _execute_delay_node(
    runtime: JourneyRuntime,
    journey: Journey,
    graph: JourneyGraph,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    config: DelayConfig,
) -> JourneyNode | None:
    now = runtime.now()
    mode = (config.delay_mode or "").strip().lower()

    if mode == "event" and config.event_name:
        timeout_seconds = config.timeout_seconds()
        timeout_at = now + timedelta(seconds=timeout_seconds) if timeout_seconds else None
        enrollment.waiting_for_event = config.event_name
        enrollment.waiting_for_event_timeout = timeout_at
        enrollment.status = "waiting"
        _append_completed(enrollment, node.id)
        update_enrollment(runtime.db, enrollment)
        if timeout_at is not None:
            add_scheduled_execution(
                runtime.db,
                journey_id=journey.id,
                enrollment_id=enrollment.id,
                node_id=node.id,
                resume_at=timeout_at,
                created_at=now,
                metadata={"kind": "event_timeout", "event_name": config.event_name},
            )
        _log(
            runtime,
            enrollment,
            "event_wait_started",
            {"node_id": node.id, "event_name": config.event_name, "timeout_at": isoformat(timeout_at)},
        )
        return None

    resume_at: datetime | None = None
    if mode == "until" and config.wait_until:
        resume_at = parse_timestamp(config.wait_until)
        if resume_at is None:
            _log(runtime, enrollment, "delay_invalid_until", {"node_id": node.id, "wait_until": config.wait_until})
    else:
        seconds = config.duration_seconds()
        if seconds:
            resume_at = now + timedelta(seconds=seconds)

    if resume_at is None:
        return _next_after(runtime, graph, enrollment, node)

    add_scheduled_execution(
        runtime.db,
        journey_id=journey.id,
        enrollment_id=enrollment.id,
        node_id=node.id,
        resume_at=resume_at,
        created_at=now,
        metadata={"kind": "delay"},
    )
    enrollment.status = "waiting"
    _append_completed(enrollment, node.id)
    update_enrollment(runtime.db, enrollment)
    _log(runtime, enrollment, "delay_scheduled", {"node_id": node.id, "resume_at": isoformat(resume_at)})
    return None


def _execute_condition_node(
    runtime: JourneyRuntime,
    graph: JourneyGraph,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    config: ConditionConfig,
) -> JourneyNode | None:
    trigger_event = (enrollment.context_json or {}).get("trigger_event") or {}
    context = {
        "customer": runtime.directory.get_customer(enrollment.customer_id),
        "customer_id": enrollment.customer_id,
        "trigger_event": trigger_event,
        "order": trigger_event,
    }
    result = evaluate_conditions(
        config.conditions,
        context,
        config.condition_logic,
        directory=runtime.directory,
    )
    _log(runtime, enrollment, "condition_evaluated", {"node_id": node.id, "result": result})

    _clear_failure(enrollment, node.id)
    _append_completed(enrollment, node.id)
    update_enrollment(runtime.db, enrollment)

    label = config.true_label if result else config.false_label
    edge = graph.labeled_edge(node.id, label)
    target = graph.node(edge.target) if edge else None
    if target is None:
        exit_journey(runtime, enrollment, "no_path")
        return None
    return target


def _execute_experiment_node(
    runtime: JourneyRuntime,
    graph: JourneyGraph,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    config: ExperimentConfig,
) -> JourneyNode | None:
    if not config.variants:
        _log(runtime, enrollment, "experiment_error", {"node_id": node.id, "error": "No variants configured"})
        exit_journey(runtime, enrollment, "no_path")
        return None

    metadata = dict(enrollment.metadata_json or {})
    experiments = dict(metadata.get("experiments") or {})
    assignment = experiments.get(node.id)
    if not isinstance(assignment, dict):
        choice = pick_variant(config.variants, runtime.rng)
        assignment = {
            **choice,
            "assigned_at": isoformat(runtime.now()),
            "evaluation_metric": config.evaluation_metric,
            "guardrail_metric": config.guardrail_metric,
            "sample_size": config.sample_size,
            "edge_id": None,
        }
        experiments[node.id] = assignment
        metadata["experiments"] = experiments
        enrollment.metadata_json = metadata
        update_enrollment(runtime.db, enrollment)
        _log(
            runtime,
            enrollment,
            "experiment_assigned",
            {
                "node_id": node.id,
                "variant_id": assignment["variant_id"],
                "variant_label": assignment["variant_label"],
                "weight": assignment["weight"],
            },
        )

    _clear_failure(enrollment, node.id)
    if node.id not in (enrollment.completed_nodes_json or []):
        _append_completed(enrollment, node.id)
    update_enrollment(runtime.db, enrollment)

    variant_id = assignment.get("variant_id")
    variant_label = assignment.get("variant_label") or variant_id
    edge = graph.labeled_edge(node.id, variant_label) or graph.labeled_edge(node.id, variant_id)
    selection = {"node_id": node.id, "variant_id": variant_id, "variant_label": variant_label}
    if edge is None:
        _log(runtime, enrollment, "experiment_no_path", selection)
        fail_enrollment(runtime, enrollment, node_id=node.id, reason="experiment_no_path")
        return None

    target = graph.node(edge.target)
    if target is None:
        _log(runtime, enrollment, "experiment_no_target", {**selection, "edge_id": edge.id})
        exit_journey(runtime, enrollment, "no_path")
        return None

    metadata = dict(enrollment.metadata_json or {})
    experiments = dict(metadata.get("experiments") or {})
    experiments[node.id] = {**assignment, "edge_id": edge.id}
    metadata["experiments"] = experiments
    enrollment.metadata_json = metadata
    update_enrollment(runtime.db, enrollment)
    _log(runtime, enrollment, "experiment_variant_selected", {**selection, "edge_id": edge.id})
    return target


def _execute_goal_node(
    runtime: JourneyRuntime,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    config: GoalConfig,
) -> None:
    achieved, conversion_value = check_goal_achievement(runtime, enrollment, config)
    if achieved:
        _complete_goal(runtime, enrollment, node, config, conversion_value)
        return

    enrollment.waiting_for_goal = True
    enrollment.goal_node_id = node.id
    enrollment.status = "waiting"
    update_enrollment(runtime.db, enrollment)
    _log(runtime, enrollment, "goal_pending", {"node_id": node.id, "goal_type": config.goal_type})


def _complete_goal(
    runtime: JourneyRuntime,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    config: GoalConfig,
    conversion_value: float | None,
) -> None:
    now = runtime.now()
    enrollment.status = "completed"
    enrollment.goal_achieved = True
    enrollment.waiting_for_goal = False
    enrollment.conversion_value = conversion_value
    enrollment.completed_at = now
    enrollment.last_activity_at = now
    _append_completed(enrollment, node.id)
    update_enrollment(runtime.db, enrollment)
    cancel_scheduled_executions_for_enrollment(runtime.db, enrollment_id=enrollment.id, now=now)
    _log(
        runtime,
        enrollment,
        "goal_achieved",
        {"node_id": node.id, "goal_type": config.goal_type, "conversion_value": conversion_value},
    )


def _recheck_goal(runtime: JourneyRuntime, enrollment: JourneyEnrollment) -> bool:
    if enrollment.status != "waiting" or not enrollment.waiting_for_goal or not enrollment.goal_node_id:
        return False
    journey = get_journey(runtime.db, enrollment.journey_id)
    if journey is None:
        return False
    node = graph_for(journey).node(enrollment.goal_node_id)
    if node is None or node.type != "goal":
        return False
    try:
        config = node.config()
    except NodeConfigError:
        return False
    if not isinstance(config, GoalConfig):
        return False

    achieved, conversion_value = check_goal_achievement(runtime, enrollment, config)
    if not achieved:
        return False
    _complete_goal(runtime, enrollment, node, config, conversion_value)
    return True


# Traversal and bookkeeping


def _next_after(
    runtime: JourneyRuntime,
    graph: JourneyGraph,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
) -> JourneyNode | None:
    edge = graph.default_edge(node.id)
    if edge is None:
        exit_journey(runtime, enrollment, "completed")
        return None
    target = graph.node(edge.target)
    if target is None:
        exit_journey(runtime, enrollment, "no_path")
        return None
    return target


def _schedule_retry_or_fail(
    runtime: JourneyRuntime,
    journey: Journey,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    config: ActionConfig,
    attempt: int,
    reason: str,
) -> None:
    policy = policy_for(config)
    if attempt >= policy.max_attempts:
        fail_enrollment(runtime, enrollment, node_id=node.id, reason=reason, attempts=attempt)
        return

    delay_ms = next_retry_delay(
        attempt,
        policy.strategy,
        policy.base_delay_ms,
        policy.max_delay_ms,
        rng=runtime.rng,
    )
    now = runtime.now()
    add_scheduled_execution(
        runtime.db,
        journey_id=journey.id,
        enrollment_id=enrollment.id,
        node_id=node.id,
        resume_at=now + timedelta(milliseconds=delay_ms),
        created_at=now,
        metadata={"kind": "retry", "attempt": attempt, "reason": reason},
        id_prefix="retry",
    )
    enrollment.status = "waiting"
    enrollment.current_node_id = node.id
    update_enrollment(runtime.db, enrollment)
    _log(
        runtime,
        enrollment,
        "retry_scheduled",
        {"node_id": node.id, "attempt": attempt, "delay_ms": delay_ms, "strategy": policy.strategy},
    )
    log_engine_event(
        "journey_retry_scheduled",
        journey_id=journey.id,
        enrollment_id=enrollment.id,
        node_id=node.id,
        attempt=attempt,
        delay_ms=delay_ms,
    )


def _record_failure(runtime: JourneyRuntime, enrollment: JourneyEnrollment, node_id: str, error: Exception) -> int:
    now_iso = isoformat(runtime.now())
    metadata = dict(enrollment.metadata_json or {})
    failures = dict(metadata.get("failures") or {})
    existing = failures.get(node_id)
    if isinstance(existing, dict):
        state = {
            **existing,
            "attempts": int(existing.get("attempts") or 0) + 1,
            "last_failed_at": now_iso,
            "last_error": _short_error(error),
        }
    else:
        state = {
            "attempts": 1,
            "first_failed_at": now_iso,
            "last_failed_at": now_iso,
            "last_error": _short_error(error),
        }
    failures[node_id] = state
    metadata["failures"] = failures
    enrollment.metadata_json = metadata
    update_enrollment(runtime.db, enrollment)
    return state["attempts"]


def _clear_failure(enrollment: JourneyEnrollment, node_id: str) -> None:
    metadata = dict(enrollment.metadata_json or {})
    failures = dict(metadata.get("failures") or {})
    if node_id not in failures:
        return
    failures.pop(node_id)
    metadata["failures"] = failures
    enrollment.metadata_json = metadata


def _append_completed(enrollment: JourneyEnrollment, node_id: str) -> None:
    enrollment.completed_nodes_json = [*(enrollment.completed_nodes_json or []), node_id]


def _orders_since_entry(runtime: JourneyRuntime, enrollment: JourneyEnrollment) -> list[dict[str, Any]]:
    entered_at = ensure_utc(enrollment.entered_at)
    orders: list[dict[str, Any]] = []
    for order in runtime.directory.get_customer_orders(enrollment.customer_id):
        created_at = parse_timestamp(order.get("created_at"))
        if created_at is not None and created_at >= entered_at:
            orders.append(order)
    return orders


def _order_total(orders: list[dict[str, Any]]) -> float:
    return sum(to_number(order.get("total_price")) or 0.0 for order in orders)


def _has_line_item(order: dict[str, Any], product_id: str) -> bool:
    for item in order.get("line_items") or []:
        if isinstance(item, dict) and str(item.get("product_id") or "") == product_id:
            return True
    return False


def _log(runtime: JourneyRuntime, enrollment: JourneyEnrollment, event_type: str, data: dict[str, Any]) -> None:
    append_activity(
        runtime.db,
        enrollment_id=enrollment.id,
        event_type=event_type,
        data=data,
        timestamp=runtime.now(),
    )


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Journey action failed"
    return text[:255]
