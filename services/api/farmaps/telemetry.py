"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics: network latency, upstream request/retry counters,
    geocode cache hit ratio, pins per response

Both are initialised once at startup and injected into FastAPI via middleware.
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from prometheus_client import Counter, Histogram

from farmaps.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
NETWORK_LATENCY = Histogram(
    "farmaps_network_latency_seconds",
    "End-to-end latency of a network aggregation",
    ["path"],  # 'score' or 'cities'
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

UPSTREAM_REQUESTS_TOTAL = Counter(
    "farmaps_upstream_requests_total",
    "Requests issued to upstream APIs",
    ["service", "outcome"],  # outcome: ok | retry | error
)

UPSTREAM_RETRIES_TOTAL = Counter(
    "farmaps_upstream_retries_total",
    "Upstream requests retried after backoff",
    ["service", "reason"],  # reason: rate_limited | server_error | network
)

GEOCODE_CACHE_TOTAL = Counter(
    "farmaps_geocode_cache_total",
    "Geocode lookups served from / missing the in-process cache",
    ["result"],  # 'hit' or 'miss'
)

PINS_RETURNED = Histogram(
    "farmaps_pins_returned",
    "Pins per network response",
    buckets=[0, 1, 5, 10, 50, 100, 500, 1000],
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing() -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    # Hub, Neynar and Nominatim calls all go through httpx
    HTTPXClientInstrumentor().instrument()
    RedisInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)
