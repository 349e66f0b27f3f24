"""
Farcaster Hub client: resolves a fid's one-hop follow graph.

  following: GET /v1/linksByFid?fid=…            (fid is the link source)
             each message → data.linkBody.targetFid
  followers: GET /v1/linksByTargetFid?target_fid=… (fid is the link target)
             each message → data.fid

Both endpoints page with nextPageToken. A side stops at the first of: no
token, `limit.cap` unique fids, or `pacing.max_pages` pages. Hitting the page
ceiling truncates silently. Between pages we sleep `pacing.page_delay_ms`
to keep the sustained request rate down; that pause is separate from the
retry backoff in clients.http.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from farmaps.clients.http import RetryPolicy, Sleep, gather_or_cancel, request_json
from farmaps.clients.redis_client import RedisCache
from farmaps.config import settings
from farmaps.errors import ConfigurationError, InvalidRequestError, MalformedResponse
from farmaps.limits import Bounded, HubPacing, Limit
from farmaps.profiles import as_fid, path

logger = logging.getLogger(__name__)

SIDES = {
    "following": ("/v1/linksByFid", "fid", path("data", "linkBody", "targetFid")),
    "followers": ("/v1/linksByTargetFid", "target_fid", path("data", "fid")),
}


@dataclass
class NetworkFids:
    followers: list[int] = field(default_factory=list)
    following: list[int] = field(default_factory=list)


class HubClient:
    service = "hub"

    def __init__(
        self,
        base_url: str,
        *,
        policy: Optional[RetryPolicy] = None,
        cache: Optional[RedisCache] = None,
        cache_ttl: int = 600,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not base_url:
            raise ConfigurationError("Missing env var: FARCASTER_HUB_URL")
        self.base_url = base_url.rstrip("/")
        self.policy = policy or RetryPolicy()
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, cache: Optional[RedisCache] = None) -> "HubClient":
        return cls(
            settings.require("farcaster_hub_url"),
            policy=RetryPolicy.clamped(
                settings.hub_max_attempts,
                settings.hub_backoff_base_ms,
                settings.hub_backoff_max_ms,
            ),
            cache=cache,
            cache_ttl=settings.hub_cache_ttl,
            timeout=settings.hub_timeout_s,
        )

    async def stop(self) -> None:
        await self._http.aclose()

    async def get_network_fids(
        self,
        fid: int,
        *,
        include_followers: bool = True,
        include_following: bool = True,
        limit: Limit = Bounded(500),
        pacing: HubPacing = HubPacing(),
    ) -> NetworkFids:
        """Followers and following of `fid`, each deduplicated and capped."""
        if as_fid(fid) is None:
            raise InvalidRequestError(f"Invalid fid: {fid!r}")

        async def side(name: str, wanted: bool) -> list[int]:
            if not wanted:
                return []
            return await self._cached_side(name, fid, limit, pacing)

        followers, following = await gather_or_cancel(
            side("followers", include_followers),
            side("following", include_following),
        )
        return NetworkFids(followers=followers, following=following)

    async def _cached_side(
        self, side: str, fid: int, limit: Limit, pacing: HubPacing
    ) -> list[int]:
        if self._cache is None:
            return await self._collect_side(side, fid, limit, pacing)

        key = f"hub:{side}:{fid}:{limit.key}:{pacing.max_pages}"
        try:
            cached = await self._cache.get_json(key)
        except Exception as exc:
            logger.warning("Hub cache read failed (%s): %s", key, exc)
            cached = None
        if isinstance(cached, list):
            return cached

        fids = await self._collect_side(side, fid, limit, pacing)
        try:
            await self._cache.set_json(key, fids, self._cache_ttl)
        except Exception as exc:
            logger.warning("Hub cache write failed (%s): %s", key, exc)
        return fids

    async def _collect_side(
        self, side: str, fid: int, limit: Limit, pacing: HubPacing
    ) -> list[int]:
        endpoint, fid_param, extract = SIDES[side]
        seen: dict[int, None] = {}  # insertion-ordered set
        token: Optional[str] = None

        for page in range(pacing.max_pages):
            if page:
                await self._sleep(pacing.page_delay_ms / 1000)

            params = {fid_param: fid, "link_type": "follow", "pageSize": pacing.page_size}
            if token:
                params["pageToken"] = token

            body = await request_json(
                self._http,
                endpoint,
                service=self.service,
                policy=self.policy,
                params=params,
                sleep=self._sleep,
            )
            if not isinstance(body, dict):
                raise MalformedResponse(self.service, "Hub returned unexpected JSON shape")

            messages = body.get("messages")
            if not isinstance(messages, list):
                raise MalformedResponse(self.service, "Hub page missing messages")
            for msg in messages:
                other = as_fid(extract(msg))
                if other is None:
                    continue
                seen[other] = None
                if len(seen) >= limit.cap:
                    return list(seen)

            token = body.get("nextPageToken")
            if not isinstance(token, str) or not token:
                break
        else:
            logger.info(
                "Hub %s for fid=%s stopped at page ceiling (%d pages, %d fids)",
                side, fid, pacing.max_pages, len(seen),
            )

        return list(seen)
