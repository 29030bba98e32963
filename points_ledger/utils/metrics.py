from prometheus_client import Counter, Histogram, Gauge

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests in progress",
)

LEDGER_OPERATIONS = Counter(
    "ledger_operations_total",
    "Ledger operations by outcome",
    ["operation", "outcome"],
)
LEDGER_LATENCY = Histogram(
    "ledger_operation_seconds",
    "Ledger operation latency",
    ["operation"],
)
NOTIFICATION_FAILURES = Counter(
    "ledger_notification_failures_total",
    "Notifications that could not be handed to the queue",
    ["type"],
)
RECONCILIATION_MISMATCHES = Gauge(
    "ledger_reconciliation_mismatches",
    "Enrollment/transaction pairs out of balance at the last reconciliation",
)


def get_route_name(scope: dict) -> str:
    route = scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return scope.get("path", "unknown")
