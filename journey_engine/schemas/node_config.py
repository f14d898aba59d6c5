"""Typed configuration for each kind of journey node.

Node data arrives from the journey builder as a loose bag merged from
``data``, ``data.meta`` and ``data.config``. These models accept both the
builder's camelCase keys and snake_case field names, and keep unknown keys
so nothing the builder stores is lost on a round trip.
"""

from typing import Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from journey_engine.core.errors import NodeConfigError


DelayUnit = Literal["seconds", "minutes", "hours", "days", "weeks"]
RetryStrategy = Literal["exponential", "linear"]
ConditionSource = Literal["customer", "order", "product"]

_UNIT_SECONDS: dict[str, int] = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
    "weeks": 604800,
}


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


def _to_string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return [str(value)]


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def unit_to_seconds(amount: float, unit: str) -> float:
    return float(amount) * _UNIT_SECONDS[unit]


class NodeConfigBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)


class ConditionRule(BaseModel):
    source: str
    field: str
    operator: str
    value: Any | None = None

    model_config = ConfigDict(extra="ignore")


def _coerce_rules(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, dict):
        value = value.get("conditions")
    if not isinstance(value, list):
        return []
    rules: list[dict[str, Any]] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        if all(isinstance(item.get(key), str) for key in ("source", "field", "operator")):
            rules.append(item)
    return rules


def _normalize_logic(value: Any) -> str:
    text = str(value or "all").strip().lower()
    if text in {"any", "or"}:
        return "any"
    return "all"


class TriggerConfig(NodeConfigBase):
    kind: Literal["trigger"] = "trigger"
    type: str | None = None
    trigger_type: str | None = Field(default=None, validation_alias=_aliases("triggerType", "trigger_type"))
    webhook_event: str | None = Field(
        default=None,
        validation_alias=_aliases("webhookEvent", "webhook_event", "eventType", "event_type", "event"),
    )
    event_name: str | None = Field(default=None, validation_alias=_aliases("eventName", "event_name"))
    segment_id: str | None = Field(default=None, validation_alias=_aliases("segmentId", "segment_id", "segment"))
    hours: float | None = Field(default=None, validation_alias=_aliases("hours", "abandonedHours", "abandoned_hours"))
    order_value_operator: str | None = Field(
        default=None,
        validation_alias=_aliases("orderValueOperator", "order_value_operator"),
    )
    order_value_amount: float | None = Field(
        default=None,
        validation_alias=_aliases("orderValueAmount", "order_value_amount"),
    )
    product_categories: list[str] = Field(
        default_factory=list,
        validation_alias=_aliases("productCategories", "product_categories"),
    )
    customer_tags: list[str] = Field(default_factory=list, validation_alias=_aliases("customerTags", "customer_tags"))
    location_field: str | None = Field(default=None, validation_alias=_aliases("locationField", "location_field"))
    location_value: str | None = Field(default=None, validation_alias=_aliases("locationValue", "location_value"))
    conditions: list[ConditionRule] = Field(default_factory=list, validation_alias=_aliases("conditions", "args"))
    condition_logic: str = Field(
        default="all",
        validation_alias=_aliases("conditionJoin", "conditionLogic", "condition_logic"),
    )

    @field_validator("product_categories", "customer_tags", mode="before")
    @classmethod
    def coerce_string_lists(cls, value: Any) -> list[str]:
        return _to_string_list(value)

    @field_validator("conditions", mode="before")
    @classmethod
    def coerce_conditions(cls, value: Any) -> list[dict[str, Any]]:
        return _coerce_rules(value)

    @field_validator("condition_logic", mode="before")
    @classmethod
    def coerce_logic(cls, value: Any) -> str:
        return _normalize_logic(value)

    @field_validator(
        "type",
        "trigger_type",
        "webhook_event",
        "event_name",
        "segment_id",
        "order_value_operator",
        "location_field",
        "location_value",
        "order_value_amount",
        "hours",
        mode="before",
    )
    @classmethod
    def blank_strings_to_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @property
    def expected_event(self) -> str | None:
        return self.webhook_event or self.event_name or self.trigger_type or self.type

    @property
    def resolved_type(self) -> str | None:
        return self.type or self.trigger_type


class ActionConfig(NodeConfigBase):
    kind: Literal["action"] = "action"
    template_name: str | None = Field(default=None, validation_alias=_aliases("templateName", "template_name"))
    template_language: str = Field(
        default="en",
        validation_alias=_aliases("templateLanguage", "template_language", "language"),
    )
    components: list[dict[str, Any]] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    tag_name: str | None = Field(default=None, validation_alias=_aliases("tagName", "tag_name"))
    property_key: str | None = Field(default=None, validation_alias=_aliases("propertyKey", "property_key"))
    property_value: Any | None = Field(default=None, validation_alias=_aliases("propertyValue", "property_value"))
    retry_max_attempts: int | None = Field(
        default=None,
        validation_alias=_aliases("retryMaxAttempts", "maxAttempts", "retry_max_attempts", "max_attempts"),
    )
    retry_delay_ms: float | None = Field(default=None, validation_alias=_aliases("retryDelayMs", "retry_delay_ms"))
    retry_delay_minutes: float | None = Field(
        default=None,
        validation_alias=_aliases("retryDelayMinutes", "retry_delay_minutes"),
    )
    retry_max_delay_ms: float | None = Field(
        default=None,
        validation_alias=_aliases("retryMaxDelayMs", "retry_max_delay_ms"),
    )
    retry_strategy: RetryStrategy = Field(
        default="exponential",
        validation_alias=_aliases("retryStrategy", "retry_strategy"),
    )

    @field_validator("components", mode="before")
    @classmethod
    def keep_component_dicts(cls, value: Any) -> list[dict[str, Any]]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict) and isinstance(item.get("type"), str)]

    @field_validator("variables", mode="before")
    @classmethod
    def keep_variable_dict(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @field_validator(
        "template_name",
        "tag_name",
        "property_key",
        "retry_max_attempts",
        "retry_delay_ms",
        "retry_delay_minutes",
        "retry_max_delay_ms",
        mode="before",
    )
    @classmethod
    def blank_strings_to_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("template_language", mode="before")
    @classmethod
    def default_language(cls, value: Any) -> str:
        text = str(value or "").strip()
        return text or "en"

    @field_validator("retry_strategy", mode="before")
    @classmethod
    def default_strategy(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text or "exponential"


class DelayConfig(NodeConfigBase):
    kind: Literal["delay"] = "delay"
    delay_mode: str | None = Field(default=None, validation_alias=_aliases("delayMode", "delay_mode"))
    event_name: str | None = Field(default=None, validation_alias=_aliases("eventName", "event_name"))
    timeout_duration: float | None = Field(
        default=None,
        validation_alias=_aliases("timeoutDuration", "timeout_duration"),
    )
    timeout_unit: DelayUnit | None = Field(default=None, validation_alias=_aliases("timeoutUnit", "timeout_unit"))
    wait_until: str | None = Field(default=None, validation_alias=_aliases("waitUntil", "wait_until"))
    duration: float | None = Field(default=None, validation_alias=_aliases("duration", "value"))
    unit: DelayUnit | None = None

    @field_validator(
        "delay_mode",
        "event_name",
        "timeout_duration",
        "timeout_unit",
        "wait_until",
        "duration",
        "unit",
        mode="before",
    )
    @classmethod
    def blank_strings_to_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("timeout_unit", "unit", mode="before")
    @classmethod
    def lower_units(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def duration_seconds(self) -> float | None:
        if not self.duration or not self.unit:
            return None
        return unit_to_seconds(self.duration, self.unit)

    def timeout_seconds(self) -> float | None:
        if not self.timeout_duration or not self.timeout_unit:
            return None
        return unit_to_seconds(self.timeout_duration, self.timeout_unit)


class ConditionConfig(NodeConfigBase):
    kind: Literal["condition"] = "condition"
    conditions: list[ConditionRule] = Field(default_factory=list, validation_alias=_aliases("conditions", "args"))
    condition_logic: str = Field(
        default="all",
        validation_alias=_aliases("conditionJoin", "conditionLogic", "condition_logic"),
    )
    true_label: str = Field(default="Yes", validation_alias=_aliases("trueLabel", "true_label"))
    false_label: str = Field(default="No", validation_alias=_aliases("falseLabel", "false_label"))

    @field_validator("conditions", mode="before")
    @classmethod
    def coerce_conditions(cls, value: Any) -> list[dict[str, Any]]:
        return _coerce_rules(value)

    @field_validator("condition_logic", mode="before")
    @classmethod
    def coerce_logic(cls, value: Any) -> str:
        return _normalize_logic(value)

    @field_validator("true_label", "false_label", mode="before")
    @classmethod
    def blank_labels(cls, value: Any, info: ValidationInfo) -> Any:
        if _blank_to_none(value) is None:
            return "Yes" if info.field_name == "true_label" else "No"
        return str(value)


class ExperimentVariant(BaseModel):
    id: str | None = None
    label: str | None = None
    weight: float = 0.0

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", "label", mode="before")
    @classmethod
    def blank_strings_to_none(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        return None if value is None else str(value)

    @field_validator("weight", mode="before")
    @classmethod
    def clamp_weight(cls, value: Any) -> float:
        try:
            weight = float(value)
        except (TypeError, ValueError):
            return 0.0
        if weight != weight or weight in (float("inf"), float("-inf")):
            return 0.0
        return max(0.0, weight)


class ExperimentConfig(NodeConfigBase):
    kind: Literal["experiment"] = "experiment"
    variants: list[ExperimentVariant] = Field(default_factory=list)
    evaluation_metric: str | None = Field(
        default=None,
        validation_alias=_aliases("evaluationMetric", "evaluation_metric"),
    )
    guardrail_metric: str | None = Field(
        default=None,
        validation_alias=_aliases("guardrailMetric", "guardrail_metric"),
    )
    sample_size: int | None = Field(default=None, validation_alias=_aliases("sampleSize", "sample_size"))

    @field_validator("variants", mode="before")
    @classmethod
    def keep_variant_dicts(cls, value: Any) -> list[dict[str, Any]]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @field_validator("sample_size", mode="before")
    @classmethod
    def blank_sample_size(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @property
    def total_weight(self) -> float:
        return sum(variant.weight for variant in self.variants)


class GoalConfig(NodeConfigBase):
    kind: Literal["goal"] = "goal"
    goal_type: str = Field(default="order_any", validation_alias=_aliases("goalType", "goal_type"))
    order_threshold: float | None = Field(
        default=None,
        validation_alias=_aliases("orderThreshold", "minValue", "order_threshold", "min_value"),
    )
    product_id: str | None = Field(default=None, validation_alias=_aliases("productId", "product_id"))
    tag_name: str | None = Field(default=None, validation_alias=_aliases("tagName", "tag_name"))
    link_tracking: str | None = Field(default=None, validation_alias=_aliases("linkTracking", "link_tracking"))
    description: str | None = Field(
        default=None,
        validation_alias=_aliases("description", "goalDescription", "goal_description"),
    )

    @field_validator("goal_type", mode="before")
    @classmethod
    def default_goal_type(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text or "order_any"

    @field_validator("order_threshold", "product_id", "tag_name", "link_tracking", "description", mode="before")
    @classmethod
    def blank_strings_to_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


class PassThroughConfig(NodeConfigBase):
    kind: Literal["passthrough"] = "passthrough"


NodeConfig = Union[
    TriggerConfig,
    ActionConfig,
    DelayConfig,
    ConditionConfig,
    ExperimentConfig,
    GoalConfig,
    PassThroughConfig,
]

EXPERIMENT_SUBTYPES = {"ab_test", "experiment"}

_CONFIG_MODELS: dict[str, type[NodeConfigBase]] = {
    "trigger": TriggerConfig,
    "action": ActionConfig,
    "delay": DelayConfig,
    "condition": ConditionConfig,
    "goal": GoalConfig,
}


def config_model_for(node_type: str, subtype: str | None) -> type[NodeConfigBase]:
    if node_type == "condition" and (subtype or "") in EXPERIMENT_SUBTYPES:
        return ExperimentConfig
    return _CONFIG_MODELS.get(node_type, PassThroughConfig)


def parse_node_config(node_id: str, node_type: str, subtype: str | None, data: dict[str, Any]) -> NodeConfig:
    model = config_model_for(node_type, subtype)
    # The merged bag may carry its own "kind" key from the builder.
    payload = {key: value for key, value in data.items() if key != "kind"}
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ())) or 'config'}: {err.get('msg')}"
            for err in exc.errors()
        )
        raise NodeConfigError(node_id, problems) from exc
