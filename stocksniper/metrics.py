"""Prometheus metrics for Stock Sniper."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("stock_sniper", "Stock Sniper application info")
app_info.info({"version": "0.1.0", "name": "stock-sniper"})

# Resolver metrics
resolver_source_requests_total = Counter(
    "resolver_source_requests_total",
    "Structured/HTML source requests made by the resolver",
    ["retailer", "source", "status"],
)

resolver_resolutions_total = Counter(
    "resolver_resolutions_total",
    "Completed resolutions by the layer that decided availability",
    ["retailer", "layer"],
)

resolver_duration_seconds = Histogram(
    "resolver_duration_seconds",
    "Time spent resolving a product's stock state",
    ["retailer"],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 40.0],
)

# Cycle metrics
cycle_runs_total = Counter(
    "cycle_runs_total",
    "Stock-check cycles by outcome",
    ["trigger", "status"],
)

cycle_items_total = Counter(
    "cycle_items_total",
    "Watch items processed by outcome",
    ["outcome"],
)

cycle_duration_seconds = Histogram(
    "cycle_duration_seconds",
    "Wall-clock duration of a stock-check cycle",
    buckets=[1.0, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0],
)

cycle_last_run_timestamp = Gauge(
    "cycle_last_run_timestamp",
    "Timestamp of last completed stock-check cycle",
)

# Lock metrics
lock_acquisitions_total = Counter(
    "lock_acquisitions_total",
    "Lock acquisition attempts",
    ["scope", "status"],
)

# Dispatch metrics
dispatch_jobs_total = Counter(
    "dispatch_jobs_total",
    "Jobs handed to the purchase queue",
    ["kind", "status"],
)

dispatch_dead_letters_total = Counter(
    "dispatch_dead_letters_total",
    "Jobs moved to the dead-letter stream",
    ["reason"],
)

# Purchase metrics
purchase_results_total = Counter(
    "purchase_results_total",
    "Purchase executions by final status and path",
    ["retailer", "status", "path"],
)

purchase_duration_seconds = Histogram(
    "purchase_duration_seconds",
    "Time spent executing a purchase",
    ["path"],
    buckets=[5.0, 10.0, 20.0, 40.0, 60.0, 120.0, 240.0],
)

playbook_replays_total = Counter(
    "playbook_replays_total",
    "Playbook replays by outcome",
    ["retailer", "status"],
)

# Callback metrics
callbacks_total = Counter(
    "callbacks_total",
    "Worker status callbacks received",
    ["status"],
)

# Decryption metrics
decryption_failures_total = Counter(
    "decryption_failures_total",
    "Failed credential decryptions",
    ["exception_type"],
)


def record_source_request(retailer: str, source: str, status: str):
    """Record a single resolver source request."""
    resolver_source_requests_total.labels(retailer=retailer, source=source, status=status).inc()


def record_resolution(retailer: str, layer: str, duration: float):
    """Record a completed resolution."""
    resolver_resolutions_total.labels(retailer=retailer, layer=layer).inc()
    resolver_duration_seconds.labels(retailer=retailer).observe(duration)


def record_cycle(trigger: str, status: str, duration: float | None = None):
    """Record a stock-check cycle outcome."""
    cycle_runs_total.labels(trigger=trigger, status=status).inc()
    if duration is not None:
        cycle_duration_seconds.observe(duration)
        cycle_last_run_timestamp.set_to_current_time()


def record_cycle_item(outcome: str):
    """Record a processed watch item."""
    cycle_items_total.labels(outcome=outcome).inc()


def record_lock(scope: str, acquired: bool):
    """Record a lock acquisition attempt."""
    lock_acquisitions_total.labels(scope=scope, status="acquired" if acquired else "held").inc()


def record_dispatch(kind: str, status: str):
    """Record a queue publish."""
    dispatch_jobs_total.labels(kind=kind, status=status).inc()


def record_dead_letter(reason: str):
    """Record a dead-lettered job."""
    dispatch_dead_letters_total.labels(reason=reason).inc()


def record_purchase(retailer: str, status: str, path: str, duration: float):
    """Record a finished purchase execution."""
    purchase_results_total.labels(retailer=retailer, status=status, path=path).inc()
    purchase_duration_seconds.labels(path=path).observe(duration)


def record_playbook_replay(retailer: str, success: bool):
    """Record a playbook replay outcome."""
    playbook_replays_total.labels(
        retailer=retailer, status="success" if success else "failed"
    ).inc()


def record_callback(status: str):
    """Record a received worker callback."""
    callbacks_total.labels(status=status).inc()


def record_decryption_failure(exception_type: str):
    """Record a credential decryption failure."""
    decryption_failures_total.labels(exception_type=exception_type).inc()
