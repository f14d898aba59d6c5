import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from journey_engine.core.errors import NodeConfigError
from journey_engine.core.observability import log_engine_event
from journey_engine.core.time_utils import ensure_utc
from journey_engine.models.journey import Journey
from journey_engine.schemas.node_config import TriggerConfig
from journey_engine.services.condition_evaluator import evaluate_conditions, to_number
from journey_engine.services.customer_directory import parse_tags
from journey_engine.services.journey_executor import (
    JourneyRuntime,
    graph_for,
    recheck_waiting_goals,
    signal_event,
    start_journey_execution,
)
from journey_engine.services.journey_store import (
    get_active_journeys,
    get_last_enrollment,
    list_customer_enrollments,
)


_ORDER_TOTAL_KEYS = ("total_price", "subtotal_price", "total", "totalPrice", "totalAmount")


@dataclass
class TriggerMatchSummary:
    event_type: str
    customer_id: str | None = None
    resumed_enrollment_ids: list[str] = field(default_factory=list)
    goal_enrollment_ids: list[str] = field(default_factory=list)
    started_enrollment_ids: list[str] = field(default_factory=list)
    matched_journey_ids: list[str] = field(default_factory=list)
    skipped_ineligible: int = 0


def extract_primary_customer(payload: dict[str, Any] | None) -> dict[str, Any] | None:
    if not isinstance(payload, dict):
        return None

    nested = payload.get("customer")
    if isinstance(nested, dict):
        customer_id = _first_not_none(nested.get("id"), payload.get("customer_id"), payload.get("id"))
        if customer_id in (None, ""):
            return None
        return {
            "id": str(customer_id),
            "email": _string_or_none(nested.get("email")),
            "phone": _string_or_none(nested.get("phone")),
            "first_name": _string_or_none(nested.get("first_name")),
            "last_name": _string_or_none(nested.get("last_name")),
        }

    customer_id = _first_not_none(payload.get("customer_id"), payload.get("id"))
    if customer_id in (None, ""):
        return None
    return {
        "id": str(customer_id),
        "email": _string_or_none(payload.get("email")) or _string_or_none(payload.get("contact_email")),
        "phone": _string_or_none(payload.get("phone")),
    }


def match_and_execute_journeys(
    runtime: JourneyRuntime,
    event_type: str,
    *,
    payload: dict[str, Any],
    shop: str | None = None,
    received_at: datetime | str | None = None,
) -> TriggerMatchSummary:
    """Route one inbound business event through the engine.

    Enrollments of the event's customer that wait on this event are resumed
    and parked goals are re-checked before any new enrollment is started.
    """
    payload = payload or {}
    summary = TriggerMatchSummary(event_type=event_type)
    primary = extract_primary_customer(payload)
    customer_record = runtime.directory.get_customer(primary["id"]) if primary else None

    if primary:
        summary.customer_id = primary["id"]
        _resume_waiting_enrollments(runtime, primary["id"], event_type, payload, summary)

    for journey in get_active_journeys(runtime.db):
        graph = graph_for(journey)
        for trigger in graph.nodes_of_type("trigger"):
            try:
                config = trigger.config()
            except NodeConfigError as exc:
                log_engine_event(
                    "trigger_config_invalid",
                    level=logging.WARNING,
                    journey_id=journey.id,
                    node_id=trigger.id,
                    error=str(exc),
                )
                continue
            if not isinstance(config, TriggerConfig):
                continue
            if not trigger_matches(
                runtime,
                config,
                event_type,
                payload,
                primary=primary,
                customer=customer_record,
            ):
                continue
            if primary is None:
                continue

            summary.matched_journey_ids.append(journey.id)
            if not can_enter_journey(runtime, journey, primary["id"]):
                summary.skipped_ineligible += 1
                continue

            enrollment = start_journey_execution(
                runtime,
                journey,
                customer=_enrollment_customer(primary, customer_record),
                trigger_node=trigger,
                trigger_event=payload,
            )
            summary.started_enrollment_ids.append(enrollment.id)

    log_engine_event(
        "journey_event_processed",
        event_type=event_type,
        shop=shop,
        received_at=received_at,
        customer_id=summary.customer_id,
        started=len(summary.started_enrollment_ids),
        resumed=len(summary.resumed_enrollment_ids),
        goals=len(summary.goal_enrollment_ids),
    )
    return summary


def trigger_matches(
    runtime: JourneyRuntime,
    config: TriggerConfig,
    event_type: str,
    payload: dict[str, Any],
    *,
    primary: dict[str, Any] | None = None,
    customer: dict[str, Any] | None = None,
) -> bool:
    expected = (config.expected_event or "").strip().lower()
    if expected and expected != (event_type or "").strip().lower():
        return False

    if config.order_value_operator and config.order_value_amount:
        total = to_number(_first_not_none(*(payload.get(key) for key in _ORDER_TOTAL_KEYS))) or 0.0
        operator = config.order_value_operator.strip().lower()
        if operator == "gt" and not total > config.order_value_amount:
            return False
        if operator == "lt" and not total < config.order_value_amount:
            return False
        if operator in {"eq", "equals"} and total != config.order_value_amount:
            return False

    if config.product_categories:
        categories = _line_item_categories(payload)
        if not any(category in categories for category in config.product_categories):
            return False

    if config.customer_tags:
        tags = parse_tags((customer or {}).get("tags"))
        if not all(tag in tags for tag in config.customer_tags):
            return False

    if config.location_field and config.location_value:
        address = (customer or {}).get("default_address")
        if not isinstance(address, dict):
            return False
        value = address.get(config.location_field)
        if not value or str(value).lower() != config.location_value.lower():
            return False

    if config.conditions:
        context: dict[str, Any] = {"trigger_event": payload, "order": payload}
        if primary:
            context["customer_id"] = primary["id"]
            context["customer"] = customer
        if not evaluate_conditions(config.conditions, context, config.condition_logic, directory=runtime.directory):
            return False

    return True


def can_enter_journey(runtime: JourneyRuntime, journey: Journey, customer_id: str) -> bool:
    journey_settings = journey.settings_json if isinstance(journey.settings_json, dict) else {}
    allow_reentry = _first_not_none(journey_settings.get("allowReentry"), journey_settings.get("allow_reentry"))
    cooldown_days = to_number(
        _first_not_none(
            journey_settings.get("reentryCooldownDays"),
            journey_settings.get("reentryCooldown"),
            journey_settings.get("reentry_cooldown_days"),
        )
    )

    if allow_reentry is not True:
        prior = list_customer_enrollments(runtime.db, customer_id=customer_id, journey_id=journey.id)
        return not prior

    if cooldown_days:
        last = get_last_enrollment(runtime.db, journey_id=journey.id, customer_id=customer_id)
        if last is not None:
            cooldown_end = ensure_utc(last.entered_at) + timedelta(days=cooldown_days)
            if runtime.now() < cooldown_end:
                return False
    return True


def _resume_waiting_enrollments(
    runtime: JourneyRuntime,
    customer_id: str,
    event_type: str,
    payload: dict[str, Any],
    summary: TriggerMatchSummary,
) -> None:
    waiting = list_customer_enrollments(runtime.db, customer_id=customer_id, statuses={"waiting"})
    for enrollment in waiting:
        if signal_event(runtime, enrollment, event_type, payload=payload):
            summary.resumed_enrollment_ids.append(enrollment.id)

    for enrollment in recheck_waiting_goals(runtime, customer_id):
        summary.goal_enrollment_ids.append(enrollment.id)


def _enrollment_customer(primary: dict[str, Any], record: dict[str, Any] | None) -> dict[str, Any]:
    record = record or {}
    return {
        "id": primary["id"],
        "email": primary.get("email") or _string_or_none(record.get("email")),
        "phone": primary.get("phone") or _string_or_none(record.get("phone")),
        "first_name": _string_or_none(record.get("first_name")),
        "last_name": _string_or_none(record.get("last_name")),
    }


def _line_item_categories(payload: dict[str, Any]) -> set[str]:
    items = payload.get("line_items")
    if not isinstance(items, list):
        items = payload.get("items")
    if not isinstance(items, list):
        return set()
    categories: set[str] = set()
    for item in items:
        if not isinstance(item, dict):
            continue
        product_type = item.get("product_type")
        if not isinstance(product_type, str):
            product_type = item.get("productType")
        if isinstance(product_type, str) and product_type:
            categories.add(product_type)
    return categories


def _first_not_none(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _string_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None
