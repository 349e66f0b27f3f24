"""
Far Maps Network API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Build the Redis cache handle if REDIS_URL is set (connects on first use)
  3. Build Hub, Neynar and Nominatim HTTP clients (fails fast on missing config)
  4. Wire them into the NetworkAggregator on app.state
  5. Expose Prometheus /metrics endpoint
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from starlette.exceptions import HTTPException as StarletteHTTPException

from farmaps.aggregator import NetworkAggregator
from farmaps.clients.geocode_client import GeocodeClient
from farmaps.clients.hub_client import HubClient
from farmaps.clients.neynar_client import NeynarClient
from farmaps.clients.redis_client import RedisCache
from farmaps.config import settings
from farmaps.errors import FarMapsError, UpstreamFailure
from farmaps.routers import network
from farmaps.telemetry import instrument_app, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build upstream clients once and close them on shutdown."""
    logger.info("Starting Far Maps API (env=%s)", settings.environment)

    cache = RedisCache(settings.redis_url) if settings.redis_url else None
    hub = HubClient.from_settings(cache=cache)
    neynar = NeynarClient.from_settings()
    geocoder = GeocodeClient.from_settings()
    app.state.aggregator = NetworkAggregator(hub, neynar, geocoder)

    logger.info("Upstream clients ready (redis cache %s)", "on" if cache else "off")
    yield

    logger.info("Shutting down...")
    await hub.stop()
    await neynar.stop()
    await geocoder.stop()
    if cache is not None:
        await cache.close()


app = FastAPI(
    title="Far Maps API",
    description="Map a Farcaster user's followers and following as geo pins.",
    version="1.0.0",
    lifespan=lifespan,
)


# ── Error mapping ──────────────────────────────────────────────────────────
@app.exception_handler(FarMapsError)
async def farmaps_error_handler(request: Request, exc: FarMapsError):
    body = {"error": str(exc)}
    if isinstance(exc, UpstreamFailure):
        logger.error("Upstream %s failed (status=%s): %s", exc.service, exc.status, exc)
        if exc.excerpt:
            body["detail"] = exc.excerpt
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(
        str(err["loc"][-1]) for err in exc.errors() if err.get("loc")
    )
    return JSONResponse(
        status_code=400,
        content={"error": f"Missing or invalid parameter: {fields}" if fields else "Invalid request"},
    )


# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(network.router, prefix="/api/network", tags=["Network"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
