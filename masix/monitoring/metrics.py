from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

INBOUND_EVENTS = Counter("masix_inbound_events_total", "Inbound channel events", ["channel", "outcome"])
PROVIDER_ATTEMPTS = Counter(
    "masix_provider_attempts_total", "Provider call attempts", ["provider", "outcome"]
)
TOOL_CALLS = Counter("masix_tool_calls_total", "Tool executions requested by the model", ["tool", "outcome"])
CRON_FIRED = Counter("masix_cron_fired_total", "Cron job deliveries", ["outcome"])
TURN_LATENCY = Histogram("masix_turn_latency_seconds", "Latency of one conversational turn")
HTTP_LATENCY = Histogram("masix_http_request_latency_seconds", "HTTP request latency", ["path", "method"])


def metrics_response() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
