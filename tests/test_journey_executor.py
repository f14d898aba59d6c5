import dataclasses
import random
from collections import Counter
from datetime import datetime, timezone

import pytest

from journey_engine.schemas.node_config import ExperimentVariant
from journey_engine.services.journey_executor import (
    execute_node,
    exit_journey,
    graph_for,
    pick_variant,
    record_link_click,
)
from journey_engine.services.journey_scheduler import process_scheduled_executions
from journey_engine.services.journey_store import (
    get_enrollment,
    list_activity,
    list_campaign_messages,
    list_scheduled_executions,
)
from journey_engine.services.trigger_matcher import match_and_execute_journeys


START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _trigger(node_id="trigger-1", event="orders/create"):
    return {"id": node_id, "type": "trigger", "data": {"type": "webhook", "webhookEvent": event}}


def _goal(node_id="goal-1", **config):
    return {"id": node_id, "type": "goal", "data": {"goalType": "order_any", **config}}


def _edge(source, target, label=None):
    edge = {"id": f"{source}->{target}", "source": source, "target": target}
    if label is not None:
        edge["label"] = label
    return edge


def _enter(runtime, customer_id="c-1", event="orders/create", **customer):
    summary = match_and_execute_journeys(
        runtime,
        event,
        payload={"id": 9001, "total_price": "40.00", "customer": {"id": customer_id, **customer}},
    )
    runtime.db.commit()
    assert len(summary.started_enrollment_ids) == 1, summary
    return get_enrollment(runtime.db, summary.started_enrollment_ids[0])


def _events(db, enrollment_id, event_type):
    return list_activity(db, enrollment_id=enrollment_id, event_type=event_type)


def test_delay_node_schedules_resume_from_entry_time(runtime, create_journey):
    create_journey(
        [_trigger(), {"id": "delay-1", "type": "delay", "data": {"duration": 2, "unit": "days"}}, _goal()],
        [_edge("trigger-1", "delay-1"), _edge("delay-1", "goal-1")],
    )

    enrollment = _enter(runtime)

    assert enrollment.status == "waiting"
    assert enrollment.current_node_id == "delay-1"
    (record,) = list_scheduled_executions(runtime.db, enrollment_id=enrollment.id, status="pending")
    assert record.resume_at.replace(tzinfo=timezone.utc) == datetime(2024, 1, 3, tzinfo=timezone.utc)
    assert record.metadata_json == {"kind": "delay"}
    assert enrollment.completed_nodes_json == ["trigger-1", "delay-1"]


def test_unreadable_wait_until_is_logged_and_skipped(runtime, create_journey):
    create_journey(
        [
            _trigger(),
            {"id": "delay-1", "type": "delay", "data": {"delayMode": "until", "waitUntil": "next tuesday"}},
            _goal(),
        ],
        [_edge("trigger-1", "delay-1"), _edge("delay-1", "goal-1")],
    )

    enrollment = _enter(runtime)

    assert enrollment.current_node_id == "goal-1"
    assert list_scheduled_executions(runtime.db, enrollment_id=enrollment.id) == []
    (invalid,) = _events(runtime.db, enrollment.id, "delay_invalid_until")
    assert invalid.data_json == {"node_id": "delay-1", "wait_until": "next tuesday"}


def test_action_retries_then_fails_after_max_attempts(runtime, create_journey, messenger, clock):
    create_journey(
        [
            _trigger(),
            {
                "id": "action-1",
                "type": "action",
                "subtype": "send_whatsapp",
                "data": {"templateName": "welcome", "retryMaxAttempts": 3, "retryDelayMs": 1000},
            },
            _goal(),
        ],
        [_edge("trigger-1", "action-1"), _edge("action-1", "goal-1")],
    )
    messenger.failures_remaining = 10

    enrollment = _enter(runtime, phone="+2348000000001")
    assert enrollment.status == "waiting"
    assert enrollment.metadata_json["failures"]["action-1"]["attempts"] == 1

    for _ in range(2):
        clock.advance(minutes=5)
        process_scheduled_executions(runtime)

    enrollment = get_enrollment(runtime.db, enrollment.id)
    assert enrollment.status == "failed"
    assert enrollment.exit_reason == "node_failure"
    assert enrollment.metadata_json["failures"]["action-1"]["attempts"] == 3
    assert list_scheduled_executions(runtime.db, enrollment_id=enrollment.id, status="pending") == []

    retries = _events(runtime.db, enrollment.id, "retry_scheduled")
    assert sorted(entry.data_json["attempt"] for entry in retries) == [1, 2]
    (failed,) = _events(runtime.db, enrollment.id, "journey_failed")
    assert failed.data_json["attempts"] == 3
    assert messenger.sent == []


def test_action_recovers_on_retry_and_clears_failure(runtime, create_journey, messenger, clock):
    create_journey(
        [
            _trigger(),
            {
                "id": "action-1",
                "type": "action",
                "subtype": "send_whatsapp",
                "data": {"templateName": "welcome", "retryDelayMs": 1000},
            },
            _goal(),
        ],
        [_edge("trigger-1", "action-1"), _edge("action-1", "goal-1")],
    )
    messenger.failures_remaining = 1

    enrollment = _enter(runtime, phone="+2348000000001")
    clock.advance(minutes=1)
    summary = process_scheduled_executions(runtime)

    enrollment = get_enrollment(runtime.db, enrollment.id)
    assert summary.processed == 1
    assert enrollment.current_node_id == "goal-1"
    assert enrollment.waiting_for_goal is True
    assert "action-1" not in enrollment.metadata_json.get("failures", {})
    assert [request.template for request in messenger.sent] == ["welcome"]
    (message,) = list_campaign_messages(runtime.db, enrollment_id=enrollment.id)
    assert message.recipient == "+2348000000001"
    assert message.template_name == "welcome"


def test_whatsapp_action_without_phone_is_skipped(runtime, create_journey, messenger):
    create_journey(
        [
            _trigger(),
            {"id": "action-1", "type": "action", "subtype": "send_whatsapp", "data": {"templateName": "welcome"}},
            _goal(),
        ],
        [_edge("trigger-1", "action-1"), _edge("action-1", "goal-1")],
    )

    enrollment = _enter(runtime)

    (skipped,) = _events(runtime.db, enrollment.id, "action_skipped")
    assert skipped.data_json["reason"] == "missing_phone"
    assert enrollment.current_node_id == "goal-1"
    assert messenger.sent == []


def test_tag_and_property_actions_mutate_customer(runtime, create_journey, directory):
    directory.upsert_customer({"id": "c-1", "tags": "early"})
    create_journey(
        [
            _trigger(),
            {"id": "tag-1", "type": "action", "subtype": "add_tag", "data": {"tagName": "journey-welcome"}},
            {
                "id": "prop-1",
                "type": "action",
                "subtype": "update_property",
                "data": {"propertyKey": "last_journey", "propertyValue": "welcome"},
            },
            _goal(goalType="tag_added", tagName="journey-welcome"),
        ],
        [_edge("trigger-1", "tag-1"), _edge("tag-1", "prop-1"), _edge("prop-1", "goal-1")],
    )

    enrollment = _enter(runtime)

    customer = directory.get_customer("c-1")
    assert customer["tags"] == "early, journey-welcome"
    assert customer["metafields"] == {"last_journey": "welcome"}
    assert enrollment.status == "completed"
    assert enrollment.goal_achieved is True


def test_pick_variant_follows_weights():
    variants = [
        ExperimentVariant(id="a", label="Variant A", weight=70),
        ExperimentVariant(id="b", label="Variant B", weight=30),
    ]
    rng = random.Random(2024)

    counts = Counter(pick_variant(variants, rng)["variant_id"] for _ in range(10_000))

    assert 0.65 <= counts["a"] / 10_000 <= 0.75
    assert 0.25 <= counts["b"] / 10_000 <= 0.35


def test_pick_variant_splits_zero_weights_equally():
    variants = [ExperimentVariant(id="a", weight=0), ExperimentVariant(id="b", weight=0)]
    rng = random.Random(3)

    counts = Counter(pick_variant(variants, rng)["variant_id"] for _ in range(2000))

    assert set(counts) == {"a", "b"}
    assert pick_variant([], rng) is None


def _experiment_journey(create_journey, *, weights=(50, 50), labels=("Variant A", "Variant B")):
    nodes = [
        _trigger(),
        {
            "id": "exp-1",
            "type": "condition",
            "subtype": "ab_test",
            "data": {
                "variants": [
                    {"id": "a", "label": "Variant A", "weight": weights[0]},
                    {"id": "b", "label": "Variant B", "weight": weights[1]},
                ],
                "evaluationMetric": "conversion_rate",
            },
        },
        _goal("goal-a"),
        _goal("goal-b"),
    ]
    edges = [_edge("trigger-1", "exp-1")]
    targets = {"Variant A": "goal-a", "Variant B": "goal-b"}
    edges.extend(_edge("exp-1", targets[label], label) for label in labels)
    return create_journey(nodes, edges)


def test_experiment_assignment_is_sticky(runtime, create_journey):
    journey = _experiment_journey(create_journey)
    enrollment = _enter(runtime)

    assignment = enrollment.metadata_json["experiments"]["exp-1"]
    expected_goal = "goal-a" if assignment["variant_id"] == "a" else "goal-b"
    assert enrollment.current_node_id == expected_goal
    assert assignment["edge_id"] == f"exp-1->{expected_goal}"
    assert assignment["evaluation_metric"] == "conversion_rate"

    graph = graph_for(journey)
    for _ in range(5):
        execute_node(runtime, journey, enrollment, graph.node("exp-1"), graph=graph)

    assert enrollment.metadata_json["experiments"]["exp-1"]["variant_id"] == assignment["variant_id"]
    assert enrollment.current_node_id == expected_goal
    assert len(_events(runtime.db, enrollment.id, "experiment_assigned")) == 1
    assert enrollment.completed_nodes_json.count("exp-1") == 1


def test_experiment_without_matching_edge_fails_enrollment(runtime, create_journey):
    _experiment_journey(create_journey, weights=(0, 100), labels=("Variant A",))

    enrollment = _enter(runtime)

    assert enrollment.metadata_json["experiments"]["exp-1"]["variant_id"] == "b"
    assert enrollment.status == "failed"
    assert enrollment.exit_reason == "node_failure"
    (no_path,) = _events(runtime.db, enrollment.id, "experiment_no_path")
    assert no_path.data_json["variant_label"] == "Variant B"


def test_experiment_without_variants_exits(runtime, create_journey):
    create_journey(
        [_trigger(), {"id": "exp-1", "type": "condition", "subtype": "ab_test", "data": {}}, _goal()],
        [_edge("trigger-1", "exp-1"), _edge("exp-1", "goal-1")],
    )

    enrollment = _enter(runtime)

    assert enrollment.status == "exited"
    assert enrollment.exit_reason == "no_path"
    assert len(_events(runtime.db, enrollment.id, "experiment_error")) == 1


def _condition_journey(create_journey, edges_from_condition):
    nodes = [
        _trigger(),
        {
            "id": "cond-1",
            "type": "condition",
            "data": {"conditions": [{"source": "customer", "field": "tags", "operator": "contains", "value": "vip"}]},
        },
        _goal("goal-vip"),
        _goal("goal-std"),
    ]
    return create_journey(nodes, [_edge("trigger-1", "cond-1"), *edges_from_condition])


def test_condition_routes_by_label(runtime, create_journey, directory):
    directory.upsert_customer({"id": "c-1", "tags": "VIP, early"})
    directory.upsert_customer({"id": "c-2", "tags": "early"})
    _condition_journey(
        create_journey,
        [_edge("cond-1", "goal-vip", "Yes"), _edge("cond-1", "goal-std", "No")],
    )

    vip = _enter(runtime, "c-1")
    regular = _enter(runtime, "c-2")

    assert vip.current_node_id == "goal-vip"
    assert regular.current_node_id == "goal-std"
    (evaluated,) = _events(runtime.db, vip.id, "condition_evaluated")
    assert evaluated.data_json == {"node_id": "cond-1", "result": True}


def test_condition_ignores_unlabeled_edge(runtime, create_journey, directory):
    directory.upsert_customer({"id": "c-2", "tags": "early"})
    _condition_journey(
        create_journey,
        [_edge("cond-1", "goal-vip", "Yes"), _edge("cond-1", "goal-std")],
    )

    enrollment = _enter(runtime, "c-2")

    assert enrollment.current_node_id == "cond-1"
    assert enrollment.status == "exited"
    assert enrollment.exit_reason == "no_path"


def test_condition_without_branch_exits_no_path(runtime, create_journey, directory):
    directory.upsert_customer({"id": "c-2", "tags": "early"})
    _condition_journey(create_journey, [_edge("cond-1", "goal-vip", "Yes")])

    enrollment = _enter(runtime, "c-2")

    assert enrollment.status == "exited"
    assert enrollment.exit_reason == "no_path"


def _event_wait_journey(create_journey):
    return create_journey(
        [
            _trigger(),
            {
                "id": "wait-1",
                "type": "delay",
                "data": {
                    "delayMode": "event",
                    "eventName": "checkout/completed",
                    "timeoutDuration": 2,
                    "timeoutUnit": "hours",
                },
            },
            {"id": "tag-1", "type": "action", "subtype": "add_tag", "data": {"tagName": "buyer"}},
            _goal(),
        ],
        [_edge("trigger-1", "wait-1"), _edge("wait-1", "tag-1"), _edge("tag-1", "goal-1")],
    )


def test_event_wait_resumes_on_matching_event(runtime, create_journey, directory, clock):
    directory.upsert_customer({"id": "c-1"})
    _event_wait_journey(create_journey)
    enrollment = _enter(runtime)

    assert enrollment.status == "waiting"
    assert enrollment.waiting_for_event == "checkout/completed"
    (timeout,) = list_scheduled_executions(runtime.db, enrollment_id=enrollment.id, status="pending")
    assert timeout.metadata_json == {"kind": "event_timeout", "event_name": "checkout/completed"}

    clock.advance(minutes=30)
    summary = match_and_execute_journeys(
        runtime,
        "Checkout/Completed",
        payload={"customer": {"id": "c-1"}, "checkout_id": "chk-1"},
    )
    runtime.db.commit()

    enrollment = get_enrollment(runtime.db, enrollment.id)
    assert summary.resumed_enrollment_ids == [enrollment.id]
    assert enrollment.waiting_for_event is None
    assert enrollment.current_node_id == "goal-1"
    assert enrollment.context_json["variables"]["last_event"]["payload"]["checkout_id"] == "chk-1"
    assert "buyer" in directory.get_customer("c-1")["tags"]
    assert list_scheduled_executions(runtime.db, enrollment_id=enrollment.id, status="cancelled")[0].id == timeout.id

    clock.advance(hours=3)
    assert process_scheduled_executions(runtime).processed == 0


def test_event_wait_times_out(runtime, create_journey, clock):
    _event_wait_journey(create_journey)
    enrollment = _enter(runtime)

    clock.advance(hours=2)
    summary = process_scheduled_executions(runtime)

    enrollment = get_enrollment(runtime.db, enrollment.id)
    assert summary.processed == 1
    assert enrollment.status == "exited"
    assert enrollment.exit_reason == "timeout"
    assert len(_events(runtime.db, enrollment.id, "event_wait_timeout")) == 1

    late = match_and_execute_journeys(runtime, "checkout/completed", payload={"customer": {"id": "c-1"}})
    assert late.resumed_enrollment_ids == []


def test_order_value_goal_rechecked_on_later_events(runtime, create_journey, directory):
    create_journey(
        [_trigger(), _goal(goalType="order_value", minValue=100)],
        [_edge("trigger-1", "goal-1")],
    )
    directory.add_order("c-1", {"created_at": "2023-12-31T10:00:00Z", "total_price": "500.00"})

    enrollment = _enter(runtime)
    assert enrollment.status == "waiting"
    assert enrollment.waiting_for_goal is True
    assert enrollment.goal_node_id == "goal-1"

    directory.add_order("c-1", {"created_at": "2024-01-02T08:00:00Z", "total_price": "60.00"})
    directory.add_order("c-1", {"created_at": "2024-01-03T08:00:00Z", "total_price": "90.00"})
    summary = match_and_execute_journeys(runtime, "orders/paid", payload={"customer": {"id": "c-1"}})
    runtime.db.commit()

    enrollment = get_enrollment(runtime.db, enrollment.id)
    assert summary.goal_enrollment_ids == [enrollment.id]
    assert summary.started_enrollment_ids == []
    assert enrollment.status == "completed"
    assert enrollment.goal_achieved is True
    assert enrollment.conversion_value == 150.0
    assert enrollment.waiting_for_goal is False


def test_product_goal_requires_matching_line_item(runtime, create_journey, directory):
    create_journey(
        [_trigger(), _goal(goalType="product_purchased", productId="sku-9")],
        [_edge("trigger-1", "goal-1")],
    )
    directory.add_order(
        "c-1",
        {"created_at": "2024-01-01T00:00:00Z", "total_price": "25", "line_items": [{"product_id": "sku-9"}]},
    )
    directory.add_order(
        "c-1",
        {"created_at": "2024-01-01T00:00:00Z", "total_price": "75", "line_items": [{"product_id": "sku-1"}]},
    )

    enrollment = _enter(runtime)

    assert enrollment.status == "completed"
    assert enrollment.conversion_value == 25.0


def test_link_click_goal(runtime, create_journey):
    create_journey(
        [_trigger(), _goal(goalType="link_clicked", linkTracking="promo-1")],
        [_edge("trigger-1", "goal-1")],
    )
    enrollment = _enter(runtime)

    assert record_link_click(runtime, enrollment, tracking="other") is False
    assert record_link_click(runtime, enrollment, tracking="PROMO-1", url="https://shop.example/p") is True
    assert enrollment.status == "completed"
    assert len(_events(runtime.db, enrollment.id, "link_clicked")) == 2


def test_cycle_exits_with_loop_detected(runtime, create_journey):
    create_journey(
        [
            _trigger(),
            {"id": "loop-a", "type": "action", "subtype": "add_tag", "data": {}},
            {"id": "loop-b", "type": "action", "subtype": "add_tag", "data": {}},
            _goal(),
        ],
        [_edge("trigger-1", "loop-a"), _edge("loop-a", "loop-b"), _edge("loop-b", "loop-a")],
    )
    bounded = dataclasses.replace(runtime, max_steps=10)

    enrollment = _enter(bounded)

    assert enrollment.status == "exited"
    assert enrollment.exit_reason == "loop_detected"
    assert len(_events(runtime.db, enrollment.id, "node_entered")) == 10


def test_last_node_without_edges_completes(runtime, create_journey):
    create_journey(
        [_trigger(), {"id": "tag-1", "type": "action", "subtype": "add_tag", "data": {}}],
        [_edge("trigger-1", "tag-1")],
    )

    enrollment = _enter(runtime)

    assert enrollment.status == "exited"
    assert enrollment.exit_reason == "completed"
    (skipped,) = _events(runtime.db, enrollment.id, "action_skipped")
    assert skipped.data_json["reason"] == "nothing_to_do"


def test_invalid_node_config_fails_enrollment(runtime, create_journey):
    create_journey(
        [_trigger(), {"id": "delay-1", "type": "delay", "data": {"duration": 1, "unit": "fortnights"}}, _goal()],
        [_edge("trigger-1", "delay-1"), _edge("delay-1", "goal-1")],
    )

    enrollment = _enter(runtime)

    assert enrollment.status == "failed"
    assert enrollment.exit_reason == "node_failure"
    (invalid,) = _events(runtime.db, enrollment.id, "node_config_invalid")
    assert invalid.data_json["node_id"] == "delay-1"


def test_exit_cancels_pending_steps(runtime, create_journey):
    create_journey(
        [_trigger(), {"id": "delay-1", "type": "delay", "data": {"duration": 2, "unit": "days"}}, _goal()],
        [_edge("trigger-1", "delay-1"), _edge("delay-1", "goal-1")],
    )
    enrollment = _enter(runtime)

    exit_journey(runtime, enrollment, "manual")

    assert enrollment.status == "exited"
    assert enrollment.exit_reason == "manual"
    assert list_scheduled_executions(runtime.db, enrollment_id=enrollment.id, status="pending") == []
    assert len(list_scheduled_executions(runtime.db, enrollment_id=enrollment.id, status="cancelled")) == 1

    with pytest.raises(ValueError):
        exit_journey(runtime, enrollment, "bored")


def test_activity_log_is_ordered(runtime, create_journey):
    create_journey([_trigger(), _goal()], [_edge("trigger-1", "goal-1")])

    enrollment = _enter(runtime)

    entries = list(reversed(list_activity(runtime.db, enrollment_id=enrollment.id)))
    assert [entry.event_type for entry in entries] == ["journey_started", "node_entered", "goal_pending"]
    assert [entry.sequence for entry in entries] == [1, 2, 3]
