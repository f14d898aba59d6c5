from typing import Any

import networkx as nx

from journey_engine.core.errors import NodeConfigError
from journey_engine.core.time_utils import parse_timestamp, utcnow
from journey_engine.models.journey import Journey
from journey_engine.schemas.journey import (
    JourneyValidationIssueOut,
    JourneyValidationResult,
    JourneyValidationSummaryOut,
)
from journey_engine.schemas.node_config import (
    ActionConfig,
    ConditionConfig,
    DelayConfig,
    ExperimentConfig,
    GoalConfig,
    NodeConfig,
    TriggerConfig,
)
from journey_engine.services.journey_graph import JourneyGraph, JourneyNode
from journey_engine.services.messaging_provider import missing_whatsapp_credentials


_SEGMENT_TRIGGERS = {"segment", "segment_joined"}
_EVENT_TRIGGERS = {"webhook", "event_trigger"}
_ABANDONED_TRIGGERS = {"abandoned_cart", "cart_abandoned"}
_TERMINAL_NODE_TYPES = {"goal", "exit"}


def validate_journey(journey: Journey) -> JourneyValidationResult:
    """Static checks run before activation. Problems are reported, never raised."""
    graph = JourneyGraph.from_raw(journey.nodes_json, journey.edges_json)
    errors: list[JourneyValidationIssueOut] = []
    warnings: list[JourneyValidationIssueOut] = []

    def add(issue: JourneyValidationIssueOut) -> None:
        (errors if issue.severity == "error" else warnings).append(issue)

    triggers = graph.nodes_of_type("trigger")
    actions = graph.nodes_of_type("action")
    goals = graph.nodes_of_type("goal")

    if not triggers:
        add(
            JourneyValidationIssueOut(
                id="journey-missing-trigger",
                severity="error",
                title="Add at least one trigger",
                description="Journeys must start from a trigger node.",
            )
        )
    if not goals:
        add(
            JourneyValidationIssueOut(
                id="journey-missing-goal",
                severity="error",
                title="Add a goal node",
                description="Define what success looks like by adding a goal node to the journey.",
            )
        )

    reachable = _reachable_from_triggers(graph)
    unreachable = [node for node in graph.nodes if node.id not in reachable]
    for node in unreachable:
        add(
            _node_issue(
                node,
                f"node-{node.id}-unreachable",
                "error" if node.type in {"trigger", "goal"} else "warning",
                f"{node.name} is not connected",
                "This node cannot be reached from any trigger.",
                "Connect the node with edges starting from a trigger or reachable node.",
            )
        )

    if goals and not any(goal.id in reachable for goal in goals):
        add(
            JourneyValidationIssueOut(
                id="journey-goal-unreachable",
                severity="error",
                title="No goal is reachable",
                description="Ensure at least one goal node is connected downstream from a trigger.",
            )
        )

    for node in graph.nodes:
        try:
            config = node.config()
        except NodeConfigError as exc:
            add(
                _node_issue(
                    node,
                    f"node-{node.id}-invalid-config",
                    "error",
                    "Node configuration is invalid",
                    exc.message,
                    "Fix the highlighted fields in the node configuration.",
                )
            )
            continue
        for issue in _check_node(node, config):
            add(issue)

    for node in graph.nodes:
        if node.type in _TERMINAL_NODE_TYPES:
            continue
        if not graph.outgoing(node.id):
            add(
                _node_issue(
                    node,
                    f"node-{node.id}-no-outgoing",
                    "warning",
                    f"{node.name} has no outgoing path",
                    "Add at least one edge so customers know what happens next.",
                    "Connect this node to the next step in the journey.",
                )
            )

    for edge in graph.edges:
        if graph.node(edge.source) is None or graph.node(edge.target) is None:
            add(
                JourneyValidationIssueOut(
                    id=f"edge-{edge.id}-orphan",
                    severity="error",
                    title="Edge references missing nodes",
                    description=f"Connection {edge.id} points to a node that no longer exists.",
                )
            )

    if actions:
        missing = missing_whatsapp_credentials()
        if missing:
            add(
                JourneyValidationIssueOut(
                    id="whatsapp-misconfigured",
                    severity="warning",
                    title="WhatsApp credentials missing",
                    description="WhatsApp actions are present but credentials are not configured.",
                    suggestion=f"Set {', '.join(missing)} in your environment configuration.",
                )
            )

    if errors:
        status = "fail"
    elif warnings:
        status = "needs_attention"
    else:
        status = "pass"

    return JourneyValidationResult(
        journey_id=journey.id,
        status=status,
        errors=errors,
        warnings=warnings,
        summary=JourneyValidationSummaryOut(
            evaluated_at=utcnow(),
            trigger_count=len(triggers),
            action_count=len(actions),
            goal_count=len(goals),
            node_count=len(graph.nodes),
            edge_count=len(graph.edges),
            reachable_node_count=len(reachable),
            unreachable_node_ids=[node.id for node in unreachable],
        ),
    )


def _reachable_from_triggers(graph: JourneyGraph) -> set[str]:
    digraph: nx.DiGraph = nx.DiGraph()
    digraph.add_nodes_from(node.id for node in graph.nodes)
    digraph.add_edges_from((edge.source, edge.target) for edge in graph.edges)

    reachable: set[str] = set()
    for trigger in graph.nodes_of_type("trigger"):
        reachable.add(trigger.id)
        reachable.update(nx.descendants(digraph, trigger.id))
    # Orphan edge targets are reported separately.
    return {node_id for node_id in reachable if graph.node(node_id) is not None}


def _check_node(node: JourneyNode, config: NodeConfig) -> list[JourneyValidationIssueOut]:
    if isinstance(config, TriggerConfig):
        return _check_trigger(node, config)
    if isinstance(config, ActionConfig):
        return _check_action(node, config)
    if isinstance(config, DelayConfig):
        return _check_delay(node, config)
    if isinstance(config, ExperimentConfig):
        return _check_experiment(node, config)
    if isinstance(config, ConditionConfig):
        return _check_condition(node, config)
    if isinstance(config, GoalConfig):
        return _check_goal(node, config)
    return []


def _check_trigger(node: JourneyNode, config: TriggerConfig) -> list[JourneyValidationIssueOut]:
    if not config.resolved_type:
        return [
            _node_issue(
                node,
                f"trigger-{node.id}-missing-type",
                "error",
                "Trigger type incomplete",
                "Select a trigger type (segment, event, manual, etc.) before activation.",
                "Open the trigger configuration and choose how customers enter this journey.",
            )
        ]

    trigger_type = config.resolved_type
    if trigger_type in _SEGMENT_TRIGGERS and not config.segment_id:
        return [
            _node_issue(
                node,
                f"trigger-{node.id}-missing-segment",
                "error",
                "Segment trigger requires a segment",
                "Select which segment enrollment should start the journey.",
                "Pick an existing customer segment in the trigger configuration.",
            )
        ]
    if trigger_type in _EVENT_TRIGGERS and not (config.webhook_event or config.event_name):
        return [
            _node_issue(
                node,
                f"trigger-{node.id}-missing-event",
                "error",
                "Webhook trigger requires an event",
                "Choose the store event that should start this journey.",
                "Pick an event such as orders/create or customers/create.",
            )
        ]
    if trigger_type in _ABANDONED_TRIGGERS and (config.hours is None or config.hours <= 0):
        return [
            _node_issue(
                node,
                f"trigger-{node.id}-missing-hours",
                "warning",
                "Cart abandonment trigger missing delay window",
                "Define how many hours should elapse before someone is considered abandoned.",
                "Set the wait window (e.g. 4 hours) inside the trigger configuration.",
            )
        ]
    return []


def _check_action(node: JourneyNode, config: ActionConfig) -> list[JourneyValidationIssueOut]:
    issues: list[JourneyValidationIssueOut] = []
    if not config.template_name:
        issues.append(
            _node_issue(
                node,
                f"action-{node.id}-missing-template",
                "error",
                "WhatsApp template missing",
                "Select an approved WhatsApp template for this action.",
                "Open the action configuration and pick an approved template.",
            )
        )
    if any(_is_blank(value) for value in config.variables.values()):
        issues.append(
            _node_issue(
                node,
                f"action-{node.id}-empty-variables",
                "warning",
                "WhatsApp template variables are incomplete",
                "Map all template variables to customer, order, or custom values.",
                "Review the variable mapping in the action configuration.",
            )
        )
    return issues


def _check_delay(node: JourneyNode, config: DelayConfig) -> list[JourneyValidationIssueOut]:
    mode = (config.delay_mode or "").strip().lower()
    if mode == "event" and config.event_name:
        return []
    if mode == "until" and config.wait_until:
        if parse_timestamp(config.wait_until) is not None:
            return []
        return [
            _node_issue(
                node,
                f"delay-{node.id}-invalid-until",
                "error",
                "Wait-until time is not a valid timestamp",
                f"'{config.wait_until}' could not be read as an ISO-8601 date and time.",
                "Pick the date and time to wait until again, e.g. 2024-02-01T09:00:00Z.",
            )
        ]
    if config.duration is not None and config.duration > 0:
        return []
    return [
        _node_issue(
            node,
            f"delay-{node.id}-invalid-duration",
            "error",
            "Delay duration required",
            "Set a duration greater than zero for wait/delay nodes.",
            "Open the delay configuration and set how long to wait.",
        )
    ]


def _check_condition(node: JourneyNode, config: ConditionConfig) -> list[JourneyValidationIssueOut]:
    if config.conditions:
        return []
    return [
        _node_issue(
            node,
            f"condition-{node.id}-no-rules",
            "warning",
            "Condition node has no rules",
            "Add at least one rule to split customers into different paths.",
            "Use the condition builder to add comparison rules.",
        )
    ]


def _check_experiment(node: JourneyNode, config: ExperimentConfig) -> list[JourneyValidationIssueOut]:
    if len(config.variants) < 2:
        return [
            _node_issue(
                node,
                f"condition-{node.id}-abtest-variants",
                "error",
                "A/B test requires at least two variants",
                "Define at least two variants with traffic splits for an experiment node.",
                "Use the experiment configuration to add and balance variants.",
            )
        ]
    if config.total_weight <= 0:
        return [
            _node_issue(
                node,
                f"condition-{node.id}-abtest-weight",
                "error",
                "Experiment weights must be greater than zero",
                "Variant traffic weights should sum to a positive number.",
                "Adjust the weights so the total adds up (e.g. 50/50).",
            )
        ]
    return []


def _check_goal(node: JourneyNode, config: GoalConfig) -> list[JourneyValidationIssueOut]:
    if config.description:
        return []
    return [
        _node_issue(
            node,
            f"goal-{node.id}-missing-description",
            "warning",
            "Goal description recommended",
            "Add a goal description to make reporting clearer.",
            "Provide a short summary such as \"Customer places an order\".",
        )
    ]


def _node_issue(
    node: JourneyNode,
    issue_id: str,
    severity: str,
    title: str,
    description: str,
    suggestion: str,
) -> JourneyValidationIssueOut:
    return JourneyValidationIssueOut(
        id=issue_id,
        severity=severity,
        title=title,
        description=description,
        suggestion=suggestion,
        node_id=node.id,
        node_name=node.name,
    )


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())
