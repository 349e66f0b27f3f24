"""
Network aggregation: fid → follow graph → hydrated profiles → map pins.

  Stage 1 │ Link resolution
  ────────┼──────────────────────────────────────────────────────────────
          │  Hub followers / following for the root fid (capped, paced).
          │  Candidates = {root} ∪ followers ∪ following, deduplicated.

  Stage 2 │ Hydration
  ────────┼──────────────────────────────────────────────────────────────
          │  Neynar /user/bulk in chunks of 100, bounded concurrency.

  Stage 3 │ Filtering
  ────────┼──────────────────────────────────────────────────────────────
          │  Keep score > min_score (strict) with both coordinates.

  Stage 4 │ Pinning
  ────────┼──────────────────────────────────────────────────────────────
          │  Group by exact (lat, lng), bucket by count, sort ascending by
          │  count so dense pins draw last (on top).

The legacy path (build_city_network) swaps stages 1–2 for Neynar's
followers/following pages plus Nominatim city geocoding and groups by city.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional

from opentelemetry import trace

from farmaps.clients.geocode_client import GeocodeClient
from farmaps.clients.http import gather_or_cancel
from farmaps.clients.hub_client import HubClient
from farmaps.clients.neynar_client import NeynarClient
from farmaps.errors import ConfigurationError, InvalidRequestError
from farmaps.limits import Bounded, HubPacing, Limit, clamp
from farmaps.profiles import as_fid, parse_profile
from farmaps.schemas import Bounds, Legend, Mode, NetworkCounts, Pin, Profile
from farmaps.telemetry import NETWORK_LATENCY, PINS_RETURNED

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

GroupBy = Literal["coords", "city"]

# (min count, legend key, label); fixed display constants
BUCKETS = (
    (8, "b8", "8+ users"),
    (4, "b4", "4–7 users"),
    (2, "b2", "2–3 users"),
    (1, "b1", "1 user"),
)

WORLD_MIN_LAT = -85.0511
WORLD_MAX_LAT = 85.0511
WORLD_MIN_LNG = -180.0
WORLD_MAX_LNG = 180.0
SINGLE_POINT_PAD = 0.25


def _bucket(count: int) -> tuple[int, str, str]:
    for bucket in BUCKETS:
        if count >= bucket[0]:
            return bucket
    return BUCKETS[-1]


def bucket_key(count: int) -> str:
    return _bucket(count)[1]


def bucket_label(count: int) -> str:
    return _bucket(count)[2]


@dataclass
class FilterResult:
    kept: list[Profile] = field(default_factory=list)
    missing_score: int = 0
    below_score: int = 0
    missing_location: int = 0


def filter_profiles(profiles: Iterable[Profile], min_score: float) -> FilterResult:
    """Each rejected profile is tallied under the first rule it fails."""
    result = FilterResult()
    for p in profiles:
        if p.score is None:
            result.missing_score += 1
        elif not p.score > min_score:
            result.below_score += 1
        elif not p.located:
            result.missing_location += 1
        else:
            result.kept.append(p)
    return result


def dedupe_by_fid(profiles: Iterable[Profile]) -> list[Profile]:
    seen: dict[int, Profile] = {}
    for p in profiles:
        seen.setdefault(p.fid, p)
    return list(seen.values())


def _pin_key(p: Profile, by: GroupBy):
    if by == "city":
        return (p.city or "").strip().lower()
    return (p.lat, p.lng)


def group_pins(profiles: Iterable[Profile], by: GroupBy = "coords") -> list[Pin]:
    """Profiles must already be located; see filter_profiles."""
    groups: dict[object, list[Profile]] = {}
    for p in profiles:
        groups.setdefault(_pin_key(p, by), []).append(p)

    pins = []
    for users in groups.values():
        users.sort(key=lambda u: (-(u.score or 0.0), u.username))
        head = users[0]
        city = next((u.city for u in users if u.city), None)
        pins.append(
            Pin(
                lat=head.lat,
                lng=head.lng,
                city=city or f"{head.lat:.2f}, {head.lng:.2f}",
                count=len(users),
                bucket=bucket_label(len(users)),
                users=users,
            )
        )

    # small first, big last
    pins.sort(key=lambda pin: (pin.count, pin.lat, pin.lng))
    return pins


def build_legend(pins: list[Pin]) -> Legend:
    legend = Legend(pins=len(pins), users=sum(len(p.users) for p in pins))
    for pin in pins:
        key = bucket_key(pin.count)
        setattr(legend, key, getattr(legend, key) + 1)
    return legend


def normalize_lng(lng: float) -> float:
    x = lng
    while x > 180:
        x -= 360
    while x < -180:
        x += 360
    return x


def compute_bounds(pins: list[Pin]) -> Optional[Bounds]:
    if not pins:
        return None

    lats = [clamp(p.lat, WORLD_MIN_LAT, WORLD_MAX_LAT) for p in pins]
    lngs = [normalize_lng(p.lng) for p in pins]
    min_lat, max_lat = min(lats), max(lats)
    min_lng, max_lng = min(lngs), max(lngs)

    if min_lat == max_lat:
        min_lat = clamp(min_lat - SINGLE_POINT_PAD, WORLD_MIN_LAT, WORLD_MAX_LAT)
        max_lat = clamp(max_lat + SINGLE_POINT_PAD, WORLD_MIN_LAT, WORLD_MAX_LAT)
    if min_lng == max_lng:
        min_lng = clamp(min_lng - SINGLE_POINT_PAD, WORLD_MIN_LNG, WORLD_MAX_LNG)
        max_lng = clamp(max_lng + SINGLE_POINT_PAD, WORLD_MIN_LNG, WORLD_MAX_LNG)

    return Bounds(
        sw=(round(min_lat, 2), round(min_lng, 2)),
        ne=(round(max_lat, 2), round(max_lng, 2)),
    )


@dataclass
class NetworkResult:
    counts: NetworkCounts
    legend: Legend
    bounds: Optional[Bounds]
    points: list[Pin]


def summarize(
    profiles: list[Profile],
    min_score: float,
    counts: NetworkCounts,
    by: GroupBy = "coords",
) -> NetworkResult:
    filtered = filter_profiles(profiles, min_score)
    pins = group_pins(filtered.kept, by)

    counts.hydrated = len(profiles)
    counts.missing_score = filtered.missing_score
    counts.below_score = filtered.below_score
    counts.missing_location += filtered.missing_location
    counts.included = len(filtered.kept)
    counts.pins = len(pins)

    return NetworkResult(
        counts=counts,
        legend=build_legend(pins),
        bounds=compute_bounds(pins),
        points=pins,
    )


def _require_fid(fid: int) -> int:
    if as_fid(fid) is None:
        raise InvalidRequestError("Missing or invalid fid")
    return fid


class NetworkAggregator:
    def __init__(
        self,
        hub: HubClient,
        neynar: NeynarClient,
        geocoder: Optional[GeocodeClient] = None,
    ) -> None:
        self.hub = hub
        self.neynar = neynar
        self.geocoder = geocoder

    async def build_network(
        self,
        fid: int,
        *,
        mode: Mode = "both",
        min_score: float = 0.8,
        limit: Limit = Bounded(800),
        pacing: HubPacing = HubPacing(),
        concurrency: int = 4,
    ) -> NetworkResult:
        _require_fid(fid)
        start = time.perf_counter()

        with tracer.start_as_current_span("build_network") as span:
            span.set_attribute("farcaster.fid", fid)
            span.set_attribute("network.mode", mode)

            with tracer.start_as_current_span("resolve_links"):
                links = await self.hub.get_network_fids(
                    fid,
                    include_followers=mode in ("followers", "both"),
                    include_following=mode in ("following", "both"),
                    limit=limit,
                    pacing=pacing,
                )

            # root first so the caller can find themselves on the map
            candidates = list(dict.fromkeys([fid, *links.followers, *links.following]))
            span.set_attribute("network.candidates", len(candidates))

            with tracer.start_as_current_span("hydrate_profiles"):
                hydrated = await self.neynar.fetch_bulk(candidates, concurrency)

            wanted = set(candidates)
            profiles = dedupe_by_fid(p for p in hydrated if p.fid in wanted)

            counts = NetworkCounts(
                followers=len(links.followers),
                following=len(links.following),
                candidates=len(candidates),
            )
            result = summarize(profiles, min_score, counts, by="coords")
            span.set_attribute("network.pins", len(result.points))

        NETWORK_LATENCY.labels(path="score").observe(time.perf_counter() - start)
        PINS_RETURNED.observe(len(result.points))
        logger.info(
            "Network fid=%s mode=%s: %d candidates → %d included in %d pins",
            fid, mode, counts.candidates, counts.included, counts.pins,
        )
        return result

    async def build_city_network(
        self,
        fid: int,
        *,
        min_score: float = 0.8,
        pages: int = 1,
    ) -> NetworkResult:
        """Legacy path: Neynar relation pages + free-text city geocoding."""
        _require_fid(fid)
        if self.geocoder is None:
            raise ConfigurationError("Geocoder not configured")
        start = time.perf_counter()

        with tracer.start_as_current_span("build_city_network") as span:
            span.set_attribute("farcaster.fid", fid)

            followers, following = await gather_or_cancel(
                self.neynar.fetch_relations("followers", fid, max_pages=pages),
                self.neynar.fetch_relations("following", fid, max_pages=pages),
            )

            parsed = (parse_profile(u) for u in [*followers, *following])
            merged = dedupe_by_fid(p for p in parsed if p is not None)

            counts = NetworkCounts(
                followers=len(followers),
                following=len(following),
                candidates=len(merged),
            )

            profiles: list[Profile] = []
            with tracer.start_as_current_span("geocode_cities"):
                for p in merged:
                    geo = await self.geocoder.geocode_city(p.city) if p.city else None
                    if geo is None:
                        profiles.append(p.model_copy(update={"lat": None, "lng": None}))
                    else:
                        profiles.append(p.model_copy(update={"lat": geo.lat, "lng": geo.lng}))

            result = summarize(profiles, min_score, counts, by="city")
            span.set_attribute("network.pins", len(result.points))

        NETWORK_LATENCY.labels(path="cities").observe(time.perf_counter() - start)
        PINS_RETURNED.observe(len(result.points))
        return result
