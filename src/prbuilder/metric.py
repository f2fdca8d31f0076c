import re

from prometheus_client import Counter, Gauge

from prbuilder.types import WatcherState

poll_counter = Counter(
    "prbuilder_num_polls",
    "Number of pull request listings per repository",
    labelnames=["repository", "result"],
)

decision_counter = Counter(
    "prbuilder_num_decisions",
    "Reconciliation decisions produced",
    labelnames=["repository", "action", "reason"],
)

trigger_counter = Counter(
    "prbuilder_num_triggers",
    "Build trigger attempts by outcome",
    labelnames=["repository", "outcome"],
)

retire_counter = Counter(
    "prbuilder_num_retired",
    "Number of pull request states retired",
    labelnames=["repository"],
)

status_refresh_counter = Counter(
    "prbuilder_num_status_refresh",
    "Build status refreshes by result",
    labelnames=["repository", "result"],
)

report_counter = Counter(
    "prbuilder_num_status_reports",
    "Build status reports posted to the source control host",
    labelnames=["repository", "result"],
)

api_call_count = Counter(
    "prbuilder_num_api_calls",
    "Total number of provider API calls",
    labelnames=["provider", "endpoint"],
)

error_counter = Counter(
    "prbuilder_error_counter", "Total number of errors", labelnames=["context"]
)

watcher_state = Gauge(
    "prbuilder_watcher_state",
    "Current state of each repository watcher (1 for the active state)",
    labelnames=["repository", "state"],
)

tracked_prs = Gauge(
    "prbuilder_tracked_prs",
    "Number of pull requests with tracked state",
    labelnames=["repository"],
)

_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")
_COMMIT_SEGMENT = re.compile(r"/[0-9a-f]{40}(?=/|$)")


def _normalize_api_endpoint(path: str) -> str:
    path = path.split("?", 1)[0]
    path = _COMMIT_SEGMENT.sub("/{commit}", path)
    return _NUMERIC_SEGMENT.sub("/{id}", path)


def record_api_call(provider: str, endpoint: str) -> None:
    api_call_count.labels(
        provider=provider, endpoint=_normalize_api_endpoint(endpoint)
    ).inc()


def set_watcher_state(repository: str, state: WatcherState) -> None:
    for candidate in WatcherState:
        watcher_state.labels(repository=repository, state=candidate.value).set(
            1 if candidate == state else 0
        )
