from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from journey_engine.core.errors import NodeConfigError
from journey_engine.schemas.common import PaginationMeta
from journey_engine.services.journey_graph import normalize_node


JourneyStatus = Literal["DRAFT", "ACTIVE", "PAUSED", "ARCHIVED"]
EnrollmentStatus = Literal["active", "waiting", "completed", "exited", "failed"]
ManualExitReason = Literal["manual", "unsubscribed"]
ValidationSeverity = Literal["error", "warning"]
ValidationStatus = Literal["pass", "needs_attention", "fail"]


class JourneyCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=160)
    description: str | None = Field(default=None, max_length=500)
    status: Literal["DRAFT", "PAUSED"] = "DRAFT"
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)

    @field_validator("nodes")
    @classmethod
    def validate_nodes(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        seen: set[str] = set()
        for index, raw_node in enumerate(value):
            node = normalize_node(raw_node)
            if node is None:
                raise ValueError(f"Node {index} needs a non-empty id and type")
            if node.id in seen:
                raise ValueError(f"Duplicate node id '{node.id}'")
            seen.add(node.id)
            try:
                node.config()
            except NodeConfigError as exc:
                raise ValueError(str(exc)) from None
        return value

    @field_validator("edges")
    @classmethod
    def validate_edges(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for index, edge in enumerate(value):
            if not isinstance(edge.get("source"), str) or not isinstance(edge.get("target"), str):
                raise ValueError(f"Edge {index} needs string source and target")
        return value


class JourneyOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    status: str
    nodes: list[dict[str, Any]]
    edges: list[dict[str, Any]]
    settings: dict[str, Any]
    version: int
    activated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JourneyListOut(BaseModel):
    items: list[JourneyOut]
    pagination: PaginationMeta


class JourneyValidationIssueOut(BaseModel):
    id: str
    severity: ValidationSeverity
    title: str
    description: str | None = None
    suggestion: str | None = None
    node_id: str | None = None
    node_name: str | None = None


class JourneyValidationSummaryOut(BaseModel):
    evaluated_at: datetime
    trigger_count: int
    action_count: int
    goal_count: int
    node_count: int
    edge_count: int
    reachable_node_count: int
    unreachable_node_ids: list[str]


class JourneyValidationResult(BaseModel):
    journey_id: str
    status: ValidationStatus
    errors: list[JourneyValidationIssueOut]
    warnings: list[JourneyValidationIssueOut]
    summary: JourneyValidationSummaryOut


class JourneyActivationOut(BaseModel):
    journey: JourneyOut
    validation: JourneyValidationResult


class EnrollmentOut(BaseModel):
    id: str
    journey_id: str
    customer_id: str
    customer_email: str | None = None
    customer_phone: str | None = None
    status: str
    current_node_id: str | None = None
    completed_nodes: list[str]
    entered_at: datetime
    last_activity_at: datetime
    completed_at: datetime | None = None
    goal_achieved: bool
    conversion_value: float | None = None
    context: dict[str, Any]
    waiting_for_event: str | None = None
    waiting_for_event_timeout: datetime | None = None
    waiting_for_goal: bool
    goal_node_id: str | None = None
    exit_reason: str | None = None
    metadata: dict[str, Any]
    version: int


class EnrollmentListOut(BaseModel):
    items: list[EnrollmentOut]
    pagination: PaginationMeta


class ActivityOut(BaseModel):
    id: str
    enrollment_id: str
    sequence: int
    timestamp: datetime
    event_type: str
    data: dict[str, Any] | None = None


class ActivityListOut(BaseModel):
    items: list[ActivityOut]
    pagination: PaginationMeta


class JourneyEventIn(BaseModel):
    event_type: str = Field(min_length=1, max_length=120)
    payload: dict[str, Any] = Field(default_factory=dict)
    shop: str | None = Field(default=None, max_length=255)
    received_at: datetime | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "event_type": "orders/create",
                "shop": "demo.myshopify.com",
                "payload": {
                    "id": 1001,
                    "total_price": "1500.00",
                    "customer": {"id": 42, "phone": "+2348012345678"},
                },
            }
        }
    )

    @field_validator("event_type")
    @classmethod
    def strip_event_type(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("event_type cannot be blank")
        return value


class JourneyEventOut(BaseModel):
    event_type: str
    customer_id: str | None = None
    matched_journey_ids: list[str]
    started_enrollment_ids: list[str]
    resumed_enrollment_ids: list[str]
    goal_enrollment_ids: list[str]
    skipped_ineligible: int


class EnrollmentExitIn(BaseModel):
    reason: ManualExitReason = "manual"


class LinkClickIn(BaseModel):
    tracking: str = Field(min_length=1, max_length=255)
    url: str | None = Field(default=None, max_length=2048)


class LinkClickOut(BaseModel):
    enrollment: EnrollmentOut
    goal_achieved: bool


class SchedulerRunIn(BaseModel):
    now: datetime | None = None


class SchedulerRunOut(BaseModel):
    processed: int
    failed: int
    skipped: int
    conflicts: int


class JourneyOverviewOut(BaseModel):
    total_entered: int
    active: int
    completed: int
    dropped: int
    goal_conversion_rate: float
    total_conversion_value: float


class NodeReachOut(BaseModel):
    node_id: str
    node_name: str
    node_type: str
    reached: int


class ExperimentVariantMetricsOut(BaseModel):
    variant_id: str | None = None
    variant_label: str
    customers: int
    conversions: int
    conversion_rate: float


class ExperimentMetricsOut(BaseModel):
    node_id: str
    node_name: str
    variants: list[ExperimentVariantMetricsOut]


class JourneyAnalyticsOut(BaseModel):
    journey_id: str
    overview: JourneyOverviewOut
    nodes: list[NodeReachOut]
    experiments: list[ExperimentMetricsOut]