from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('task_queue_depth', 'Number of tasks per status', ['status'])
TASK_FAILURES = Counter('task_failures_total', 'Total failed task attempts', ['type']) # type=retryable|final
TASK_LEASE_DELAY = Histogram('task_start_delay_seconds', 'Time from created/eligible to lease', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])

TASK_DURATION = Histogram('task_duration_seconds', 'Time from lease to report', buckets=[1.0, 5.0, 10.0, 60.0, 120.0])

TASKS_INFLIGHT = Gauge(
    "tasks_inflight",
    "Number of tasks currently holding an unexpired lease"
)

TASK_LEASE_TOTAL = Counter(
    "task_lease_total",
    "Total number of leases handed to workers",
    ["kind"] # fresh vs reclaim
)

TASK_RETRIED_TOTAL = Counter(
    "task_retried_total",
    "Total number of tasks requeued with backoff"
)

DLQ_ROUTED_TOTAL = Counter(
    "dlq_routed_total",
    "Total number of tasks dead-lettered",
    ["reason"]
)

DLQ_REPLAYED_TOTAL = Counter(
    "dlq_replayed_total",
    "Total number of DLQ items replayed as new tasks"
)

DLQ_PURGED_TOTAL = Counter(
    "dlq_purged_total",
    "Total number of DLQ items purged"
)

PIPELINE_RUNS_TOTAL = Counter(
    "pipeline_runs_total",
    "Pipeline runs by final status",
    ["pipeline", "status"]
)

REAPER_RECOVERED_TASKS = Counter(
    "reaper_recovered_tasks_total",
    "Total number of expired leases dead-lettered by the reaper"
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
