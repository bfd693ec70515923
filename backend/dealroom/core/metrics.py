"""
Prometheus metrics configuration
"""
import os

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from prometheus_client.multiprocess import MultiProcessCollector
from prometheus_client.registry import REGISTRY, CollectorRegistry

# Check if we're in multiprocess mode
if os.environ.get('PROMETHEUS_MULTIPROC_DIR'):
    _registry = CollectorRegistry()
    MultiProcessCollector(_registry)
else:
    _registry = REGISTRY

# ============================================================================
# HTTP Request Metrics
# ============================================================================

http_requests_total = Counter(
    'dealroom_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'dealroom_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# ============================================================================
# Database Metrics
# ============================================================================

db_queries_total = Counter(
    'dealroom_db_queries_total',
    'Total number of database queries',
    ['operation']
)

db_query_duration_seconds = Histogram(
    'dealroom_db_query_duration_seconds',
    'Database query duration in seconds',
    ['operation'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0)
)

# ============================================================================
# Governance Metrics
# ============================================================================

formulation_transitions_total = Counter(
    'dealroom_formulation_transitions_total',
    'Formulation lifecycle transitions',
    ['from_status', 'to_status']
)

proposal_votes_total = Counter(
    'dealroom_proposal_votes_total',
    'Votes cast on change proposals',
    ['vote']  # vote: 'approved', 'rejected'
)

proposals_resolved_total = Counter(
    'dealroom_proposals_resolved_total',
    'Change proposals reaching a terminal status',
    ['status', 'change_type']
)

concurrency_conflicts_total = Counter(
    'dealroom_concurrency_conflicts_total',
    'Optimistic version conflicts detected on aggregate writes',
    ['aggregate']
)

# ============================================================================
# Ledger and Settlement Metrics
# ============================================================================

usage_events_total = Counter(
    'dealroom_usage_events_total',
    'Usage events received by the ledger',
    ['result']  # result: 'recorded', 'duplicate'
)

settlement_executions_total = Counter(
    'dealroom_settlement_executions_total',
    'Settlement executions by terminal status',
    ['trigger_type', 'status']
)

settlement_distributed_amount_total = Counter(
    'dealroom_settlement_distributed_amount_total',
    'Sum of amounts written as settlement payouts',
    ['currency']
)

payout_calculation_duration_seconds = Histogram(
    'dealroom_payout_calculation_duration_seconds',
    'Payout calculation duration in seconds',
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5)
)


def get_metrics_response() -> tuple:
    """Return the exposition payload and its content type"""
    return generate_latest(_registry), CONTENT_TYPE_LATEST
