from collections import Counter, defaultdict

from sqlalchemy import select
from sqlalchemy.orm import Session

from journey_engine.models.journey import JourneyEnrollment
from journey_engine.schemas.journey import (
    ExperimentMetricsOut,
    ExperimentVariantMetricsOut,
    JourneyAnalyticsOut,
    JourneyOverviewOut,
    NodeReachOut,
)
from journey_engine.services.journey_graph import JourneyGraph
from journey_engine.services.journey_store import get_journey


def compute_journey_analytics(db: Session, journey_id: str) -> JourneyAnalyticsOut | None:
    journey = get_journey(db, journey_id)
    if journey is None:
        return None
    enrollments = db.execute(
        select(JourneyEnrollment).where(JourneyEnrollment.journey_id == journey.id)
    ).scalars().all()
    graph = JourneyGraph.from_raw(journey.nodes_json, journey.edges_json)

    total = len(enrollments)
    active = sum(1 for item in enrollments if item.status in {"active", "waiting"})
    completed = sum(1 for item in enrollments if item.status == "completed" or item.goal_achieved)
    dropped = sum(1 for item in enrollments if item.status in {"exited", "failed"})
    conversions = sum(1 for item in enrollments if item.goal_achieved)
    conversion_value = sum(item.conversion_value or 0.0 for item in enrollments if item.goal_achieved)

    reach: Counter[str] = Counter()
    for enrollment in enrollments:
        visited = set(enrollment.completed_nodes_json or [])
        if enrollment.current_node_id:
            visited.add(enrollment.current_node_id)
        reach.update(visited)

    nodes = [
        NodeReachOut(node_id=node.id, node_name=node.name, node_type=node.type, reached=reach.get(node.id, 0))
        for node in graph.nodes
    ]
    nodes.sort(key=lambda item: (-item.reached, item.node_id))

    return JourneyAnalyticsOut(
        journey_id=journey.id,
        overview=JourneyOverviewOut(
            total_entered=total,
            active=active,
            completed=completed,
            dropped=dropped,
            goal_conversion_rate=_rate(conversions, total),
            total_conversion_value=round(conversion_value, 2),
        ),
        nodes=nodes,
        experiments=_experiment_metrics(graph, enrollments),
    )


def _experiment_metrics(graph: JourneyGraph, enrollments: list[JourneyEnrollment]) -> list[ExperimentMetricsOut]:
    # node id -> (variant id, label) -> [customers, conversions]
    buckets: dict[str, dict[tuple[str | None, str], list[int]]] = defaultdict(dict)
    for enrollment in enrollments:
        experiments = (enrollment.metadata_json or {}).get("experiments") or {}
        if not isinstance(experiments, dict):
            continue
        for node_id, assignment in experiments.items():
            if not isinstance(assignment, dict):
                continue
            key = (assignment.get("variant_id"), str(assignment.get("variant_label") or "Variant"))
            counts = buckets[node_id].setdefault(key, [0, 0])
            counts[0] += 1
            if enrollment.goal_achieved:
                counts[1] += 1

    metrics: list[ExperimentMetricsOut] = []
    for node_id in sorted(buckets):
        node = graph.node(node_id)
        variants = [
            ExperimentVariantMetricsOut(
                variant_id=variant_id,
                variant_label=label,
                customers=customers,
                conversions=converted,
                conversion_rate=_rate(converted, customers),
            )
            for (variant_id, label), (customers, converted) in sorted(
                buckets[node_id].items(), key=lambda item: item[0][1]
            )
        ]
        metrics.append(
            ExperimentMetricsOut(node_id=node_id, node_name=node.name if node else node_id, variants=variants)
        )
    return metrics


def _rate(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)
