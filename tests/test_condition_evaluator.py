from journey_engine.services.condition_evaluator import evaluate_conditions, resolve_path
from journey_engine.services.customer_directory import InMemoryCustomerDirectory


def _rule(source, field, operator, value=None):
    return {"source": source, "field": field, "operator": operator, "value": value}


def test_empty_rule_list_passes():
    assert evaluate_conditions([], {}) is True
    assert evaluate_conditions(None, {"order": {"total_price": 1}}) is True


def test_string_operators_are_case_insensitive():
    context = {"customer": {"email": "Ada@Example.com", "tags": "VIP, early"}}

    assert evaluate_conditions([_rule("customer", "tags", "contains", "vip")], context)
    assert evaluate_conditions([_rule("customer", "email", "starts_with", "ada@")], context)
    assert evaluate_conditions([_rule("customer", "tags", "not_contains", "wholesale")], context)
    assert not evaluate_conditions([_rule("customer", "tags", "not_contains", "Early")], context)


def test_numeric_comparisons_coerce_strings():
    context = {"order": {"total_price": "150.50"}}

    assert evaluate_conditions([_rule("order", "total_price", "greater_than", 100)], context)
    assert evaluate_conditions([_rule("order", "total_price", "lt", "200")], context)
    assert evaluate_conditions([_rule("order", "total_price", "between", [100, 151])], context)
    assert not evaluate_conditions([_rule("order", "total_price", "between", [100])], context)
    assert not evaluate_conditions([_rule("order", "total_price", "gt", "lots")], context)


def test_missing_values_only_satisfy_is_not_set():
    context = {"customer": {"first_name": "Ada", "nickname": "  "}}

    assert evaluate_conditions([_rule("customer", "last_name", "is_not_set")], context)
    assert evaluate_conditions([_rule("customer", "nickname", "is_not_set")], context)
    assert not evaluate_conditions([_rule("customer", "last_name", "not_equals", "Lovelace")], context)
    assert not evaluate_conditions([_rule("customer", "last_name", "not_contains", "x")], context)
    assert evaluate_conditions([_rule("customer", "first_name", "is_set")], context)


def test_equals_does_not_coerce_booleans():
    context = {"customer": {"accepts_marketing": True}}

    assert evaluate_conditions([_rule("customer", "accepts_marketing", "equals", True)], context)
    assert not evaluate_conditions([_rule("customer", "accepts_marketing", "equals", "true")], context)


def test_any_logic_accepts_or_alias():
    context = {"order": {"currency": "NGN", "total_price": 10}}
    rules = [
        _rule("order", "currency", "equals", "USD"),
        _rule("order", "total_price", "equals", 10),
    ]

    assert evaluate_conditions(rules, context, "OR")
    assert evaluate_conditions(rules, context, "any")
    assert not evaluate_conditions(rules, context, "AND")


def test_unknown_operator_fails_the_rule():
    context = {"order": {"total_price": 10}}
    assert not evaluate_conditions([_rule("order", "total_price", "roughly", 10)], context)


def test_malformed_rules_are_ignored():
    context = {"order": {"total_price": 10}}
    rules = [{"source": "order", "operator": "equals", "value": 99}, "not-a-rule"]
    assert evaluate_conditions(rules, context)


def test_product_rules_fall_back_to_trigger_event():
    context = {"trigger_event": {"line_items": [{"sku": "TEE-01", "product_type": "Shirts"}]}}

    assert evaluate_conditions([_rule("product", "line_items.0.sku", "equals", "TEE-01")], context)
    assert not evaluate_conditions([_rule("product", "line_items.3.sku", "is_set")], context)


def test_customer_is_loaded_from_directory_when_missing():
    directory = InMemoryCustomerDirectory()
    directory.upsert_customer({"id": "c-1", "default_address": {"city": "Lagos"}})
    context = {"customer_id": "c-1"}

    assert evaluate_conditions(
        [_rule("customer", "default_address.city", "equals", "Lagos")],
        context,
        directory=directory,
    )


def test_resolve_path_handles_non_containers():
    assert resolve_path({"a": {"b": 3}}, "a.b") == 3
    assert resolve_path({"a": 3}, "a.b") is None
    assert resolve_path(None, "a") is None
    assert resolve_path({"a": 1}, "") is None
