from journey_engine.schemas.node_config import TriggerConfig
from journey_engine.services.trigger_matcher import (
    extract_primary_customer,
    match_and_execute_journeys,
    trigger_matches,
)


def _trigger_node(**config):
    return {"id": "trigger-1", "type": "trigger", "data": {"type": "webhook", **config}}


def _simple_journey(create_journey, *, settings_json=None, **trigger_config):
    trigger_config.setdefault("webhookEvent", "orders/create")
    return create_journey(
        [_trigger_node(**trigger_config), {"id": "goal-1", "type": "goal", "data": {"goalType": "order_any"}}],
        [{"id": "e1", "source": "trigger-1", "target": "goal-1"}],
        settings_json=settings_json,
    )


def _order(customer_id="c-1", total="40.00", **extra):
    return {"id": 5001, "total_price": total, "customer": {"id": customer_id}, **extra}


def test_order_value_filter(runtime):
    config = TriggerConfig.model_validate(
        {"event": "orders/create", "orderValueOperator": "gt", "orderValueAmount": 1000}
    )

    assert trigger_matches(runtime, config, "orders/create", {"total_price": "1500.00"})
    assert not trigger_matches(runtime, config, "orders/create", {"total_price": "900"})
    assert not trigger_matches(runtime, config, "orders/paid", {"total_price": "1500.00"})


def test_order_value_filter_reads_alternative_total_keys(runtime):
    config = TriggerConfig.model_validate({"orderValueOperator": "lt", "orderValueAmount": 50})

    assert trigger_matches(runtime, config, "anything", {"totalPrice": 20})
    assert not trigger_matches(runtime, config, "anything", {"subtotal_price": "75"})


def test_event_match_is_case_insensitive_and_prefers_webhook_event(runtime):
    config = TriggerConfig.model_validate({"type": "webhook", "webhookEvent": "Orders/Create", "eventName": "ignored"})

    assert config.expected_event == "Orders/Create"
    assert trigger_matches(runtime, config, "orders/create", {})
    assert not trigger_matches(runtime, config, "ignored", {})


def test_product_category_filter(runtime):
    config = TriggerConfig.model_validate({"productCategories": "Shoes, Bags"})

    assert trigger_matches(runtime, config, "orders/create", {"line_items": [{"product_type": "Shoes"}]})
    assert trigger_matches(runtime, config, "orders/create", {"items": [{"productType": "Bags"}]})
    assert not trigger_matches(runtime, config, "orders/create", {"line_items": [{"productType": "Hats"}]})
    assert not trigger_matches(runtime, config, "orders/create", {})


def test_customer_tag_and_location_filters(runtime):
    config = TriggerConfig.model_validate(
        {"customerTags": ["vip"], "locationField": "country", "locationValue": "NG"}
    )
    lagos_vip = {"id": "c-1", "tags": "vip, early", "default_address": {"country": "ng"}}
    london_vip = {"id": "c-2", "tags": "vip", "default_address": {"country": "GB"}}
    lagos_regular = {"id": "c-3", "tags": "early", "default_address": {"country": "NG"}}

    assert trigger_matches(runtime, config, "orders/create", {}, customer=lagos_vip)
    assert not trigger_matches(runtime, config, "orders/create", {}, customer=london_vip)
    assert not trigger_matches(runtime, config, "orders/create", {}, customer=lagos_regular)
    assert not trigger_matches(runtime, config, "orders/create", {}, customer=None)


def test_trigger_conditions_use_order_payload(runtime):
    config = TriggerConfig.model_validate(
        {
            "conditions": [{"source": "order", "field": "currency", "operator": "equals", "value": "NGN"}],
            "conditionJoin": "AND",
        }
    )

    assert trigger_matches(runtime, config, "orders/create", {"currency": "NGN"})
    assert not trigger_matches(runtime, config, "orders/create", {"currency": "USD"})


def test_extract_primary_customer():
    nested = extract_primary_customer({"id": 77, "customer": {"id": 42, "email": "ada@example.com", "phone": ""}})
    assert nested == {
        "id": "42",
        "email": "ada@example.com",
        "phone": None,
        "first_name": None,
        "last_name": None,
    }

    flat = extract_primary_customer({"customer_id": "c-9", "contact_email": "x@example.com"})
    assert flat == {"id": "c-9", "email": "x@example.com", "phone": None}

    assert extract_primary_customer({"customer": {"email": "no-id@example.com"}}) is None
    assert extract_primary_customer(None) is None


def test_matching_event_starts_enrollment(runtime, create_journey, directory):
    directory.upsert_customer({"id": "c-1", "phone": "+2348000000001", "first_name": "Ada"})
    journey = _simple_journey(create_journey)

    summary = match_and_execute_journeys(runtime, "orders/create", payload=_order(), shop="demo.myshopify.com")

    assert summary.customer_id == "c-1"
    assert summary.matched_journey_ids == [journey.id]
    assert len(summary.started_enrollment_ids) == 1


def test_draft_journeys_are_ignored(runtime, create_journey):
    create_journey(
        [_trigger_node(webhookEvent="orders/create"), {"id": "goal-1", "type": "goal", "data": {}}],
        [{"id": "e1", "source": "trigger-1", "target": "goal-1"}],
        status="DRAFT",
    )

    summary = match_and_execute_journeys(runtime, "orders/create", payload=_order())

    assert summary.matched_journey_ids == []
    assert summary.started_enrollment_ids == []


def test_event_without_customer_starts_nothing(runtime, create_journey):
    _simple_journey(create_journey)

    summary = match_and_execute_journeys(runtime, "orders/create", payload={"total_price": "10"})

    assert summary.customer_id is None
    assert summary.started_enrollment_ids == []


def test_reentry_is_blocked_by_default(runtime, create_journey):
    _simple_journey(create_journey)

    first = match_and_execute_journeys(runtime, "orders/create", payload=_order())
    second = match_and_execute_journeys(runtime, "orders/create", payload=_order())

    assert len(first.started_enrollment_ids) == 1
    assert second.started_enrollment_ids == []
    assert second.skipped_ineligible == 1


def test_reentry_respects_cooldown(runtime, create_journey, clock):
    _simple_journey(create_journey, settings_json={"allowReentry": True, "reentryCooldownDays": 7})

    first = match_and_execute_journeys(runtime, "orders/create", payload=_order())
    clock.advance(days=3)
    during_cooldown = match_and_execute_journeys(runtime, "orders/create", payload=_order())
    clock.advance(days=5)
    after_cooldown = match_and_execute_journeys(runtime, "orders/create", payload=_order())

    assert len(first.started_enrollment_ids) == 1
    assert during_cooldown.skipped_ineligible == 1
    assert len(after_cooldown.started_enrollment_ids) == 1


def test_reentry_without_cooldown_always_allowed(runtime, create_journey):
    _simple_journey(create_journey, settings_json={"allow_reentry": True})

    for _ in range(3):
        summary = match_and_execute_journeys(runtime, "orders/create", payload=_order())
        assert len(summary.started_enrollment_ids) == 1


def test_invalid_trigger_config_is_skipped(runtime, create_journey):
    create_journey(
        [
            {"id": "trigger-1", "type": "trigger", "data": {"type": "webhook", "orderValueAmount": "lots"}},
            {"id": "goal-1", "type": "goal", "data": {}},
        ],
        [{"id": "e1", "source": "trigger-1", "target": "goal-1"}],
    )
    _simple_journey(create_journey)

    summary = match_and_execute_journeys(runtime, "orders/create", payload=_order())

    assert len(summary.started_enrollment_ids) == 1
