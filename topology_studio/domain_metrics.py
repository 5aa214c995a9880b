from prometheus_client import Counter, Gauge, Histogram

RECONCILIATIONS = Counter(
    "topology_studio_reconciliations_total",
    "Number of mutations projected from one model onto the other",
    labelnames=("origin", "kind"),
)

RECONCILIATION_REJECTED = Counter(
    "topology_studio_reconciliation_rejected_total",
    "Number of mutation intents rejected because they would break an invariant",
    labelnames=("kind",),
)

JOB_SUBMISSIONS = Counter(
    "topology_studio_job_submissions_total",
    "Generation submissions by outcome (accepted, rejected before network, failed at initiate)",
    labelnames=("outcome",),
)

JOB_POLLS = Counter(
    "topology_studio_job_polls_total",
    "Status polls by observed status (or transport_error)",
    labelnames=("status",),
)

JOB_OUTCOMES = Counter(
    "topology_studio_job_outcomes_total",
    "Generation jobs reaching a terminal state",
    labelnames=("state",),
)

POLL_DELAY = Histogram(
    "topology_studio_poll_delay_seconds",
    "Backoff delay scheduled before each status poll",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600),
)

ARTIFACTS_WRITTEN = Counter(
    "topology_studio_artifacts_written_total",
    "Per-node artifacts written to the artifact store",
)

# Sampled when /metrics is scraped.
WORKSPACE_NODES = Gauge(
    "topology_studio_workspace_nodes",
    "Nodes in the open topology",
)

WORKSPACE_SHAPES = Gauge(
    "topology_studio_workspace_shapes",
    "Shapes on the canvas of the open topology",
)

ACTIVE_JOBS = Gauge(
    "topology_studio_active_jobs",
    "Generation jobs submitted or polling",
)
