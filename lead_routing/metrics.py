"""
Business metrics for lead routing.

Scores, assignments, transitions and dispatch outcomes, exposed through
the API's /metrics endpoint.
"""

from prometheus_client import Counter, Histogram

LEAD_SCORE_HIST = Histogram(
    "lead_routing_lead_score",
    "Qualification total score distribution",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
)
CLASSIFICATION_COUNT = Counter(
    "lead_routing_classification_total",
    "Qualification classifications",
    ["classification"],
)
ASSIGNMENT_COUNT = Counter(
    "lead_routing_assignments_total",
    "Round-robin assignment attempts",
    ["outcome"],  # assigned, no_agent, conflict
)
TRANSITION_COUNT = Counter(
    "lead_routing_transitions_total",
    "Pipeline stage transitions",
    ["target_stage", "outcome"],  # ok, rejected, conflict
)
DISPATCH_COUNT = Counter(
    "lead_routing_dispatch_total",
    "Assignment notifications",
    ["outcome"],  # delivered, failed
)
DUPLICATE_LEADS = Counter(
    "lead_routing_duplicate_leads_total",
    "Lead creations rejected as duplicates",
    ["field"],
)


def record_qualification(total: int, classification: str):
    """Record one qualification record."""
    LEAD_SCORE_HIST.observe(total)
    CLASSIFICATION_COUNT.labels(classification=classification).inc()


def record_assignment(outcome: str):
    ASSIGNMENT_COUNT.labels(outcome=outcome).inc()


def record_transition(target_stage: str, outcome: str):
    TRANSITION_COUNT.labels(target_stage=target_stage, outcome=outcome).inc()


def record_dispatch(outcome: str):
    DISPATCH_COUNT.labels(outcome=outcome).inc()


def record_duplicate(field: str):
    DUPLICATE_LEADS.labels(field=field).inc()
