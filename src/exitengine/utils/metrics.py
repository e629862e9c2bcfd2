from prometheus_client import Counter, Histogram, Gauge, start_http_server

# Positions evaluated per sweep
EXIT_EVALUATIONS = Counter(
    "exit_evaluations",
    "Total position evaluations performed by the exit engine",
)

# Positions skipped before evaluation (stale price, disabled, conflict...)
EXIT_SKIPS = Counter(
    "exit_skips",
    "Total position evaluations skipped",
    ["reason"],
)

# Triggers selected by the evaluator
TRIGGERS_FIRED = Counter(
    "exit_triggers_fired",
    "Total exit triggers fired",
    ["reason_code"],
)

# Intents created by the emitter
INTENTS_EMITTED = Counter(
    "exit_intents_emitted",
    "Total order intents emitted",
    ["reason_code", "status"],
)

# Triggers dropped because an active intent already existed
DUPLICATE_INTENTS = Counter(
    "exit_duplicate_intents",
    "Triggers dropped due to an existing active intent",
)

# State writes that failed after exhausting retries
PERSISTENCE_FAILURES = Counter(
    "exit_persistence_failures",
    "Position state writes discarded after retries",
)

# Intents cancelled by the reconciler
INTENTS_RECONCILED = Counter(
    "exit_intents_reconciled",
    "Intents cancelled during reconciliation",
    ["reason"],
)

# Current control mode (1 for the active mode label)
CONTROL_MODE = Gauge(
    "exit_control_mode",
    "Exit control governor mode",
    ["mode"],
)

# Open positions tracked by the state store
TRACKED_POSITIONS = Gauge(
    "exit_tracked_positions",
    "Positions with an open exit state",
)

# Duration of a full evaluation sweep
SWEEP_LATENCY = Histogram(
    "exit_sweep_latency_seconds",
    "Latency of an exit evaluation sweep in seconds",
)


def start_metrics_server(port: int) -> None:
    """Expose the default prometheus registry on ``port``."""
    start_http_server(port)
