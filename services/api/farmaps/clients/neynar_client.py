"""
Neynar v2 client for profile hydration.

  GET /user/bulk?fids=1,2,3         (≤ hydration_batch_size fids per call)
  GET /user/{followers|following}   (legacy, cursor-paged)

Every call carries the `api_key` header. Bulk hydration chunks the fid list
and runs up to `concurrency` chunks at once. Any failing chunk fails the
whole hydration; there is no partial result.
"""
import asyncio
import logging
from typing import Literal, Optional

import httpx

from farmaps.clients.http import RetryPolicy, Sleep, gather_or_cancel, request_json
from farmaps.config import settings
from farmaps.errors import ConfigurationError, MalformedResponse
from farmaps.limits import clamp
from farmaps.profiles import parse_profiles
from farmaps.schemas import Profile

logger = logging.getLogger(__name__)

RelationKind = Literal["followers", "following"]

LEGACY_MAX_PAGES = 5


def chunked(items: list[int], size: int) -> list[list[int]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class NeynarClient:
    service = "neynar"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.neynar.com/v2/farcaster",
        batch_size: int = 100,
        policy: Optional[RetryPolicy] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Missing env var: NEYNAR_API_KEY")
        self.batch_size = clamp(batch_size, 1, 100)
        self.policy = policy or RetryPolicy(max_attempts=3)
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"accept": "application/json", "api_key": api_key},
        )

    @classmethod
    def from_settings(cls) -> "NeynarClient":
        return cls(
            settings.require("neynar_api_key"),
            base_url=settings.neynar_base_url,
            batch_size=settings.hydration_batch_size,
            policy=RetryPolicy.clamped(
                settings.hydration_max_attempts,
                settings.hub_backoff_base_ms,
                settings.hub_backoff_max_ms,
            ),
            timeout=settings.neynar_timeout_s,
        )

    async def stop(self) -> None:
        await self._http.aclose()

    async def _get(self, url: str, params: dict) -> dict:
        body = await request_json(
            self._http,
            url,
            service=self.service,
            policy=self.policy,
            params=params,
            sleep=self._sleep,
        )
        if not isinstance(body, dict):
            raise MalformedResponse(self.service, "Neynar returned unexpected JSON shape")
        return body

    async def fetch_bulk(self, fids: list[int], concurrency: int = 4) -> list[Profile]:
        """
        Hydrate `fids`. Unknown fids are simply absent from the result, and
        result order across chunks is not the input order.
        """
        if not fids:
            return []

        sem = asyncio.Semaphore(clamp(concurrency, 1, 10))

        async def one(chunk: list[int]) -> list[Profile]:
            async with sem:
                body = await self._get("/user/bulk", {"fids": ",".join(map(str, chunk))})
            users = body.get("users")
            if not isinstance(users, list):
                raise MalformedResponse(self.service, "Neynar bulk response missing users")
            return parse_profiles(users)

        chunks = chunked(fids, self.batch_size)
        results = await gather_or_cancel(*(one(c) for c in chunks))
        profiles = [p for batch in results for p in batch]
        logger.debug(
            "Hydrated %d/%d fids in %d chunks", len(profiles), len(fids), len(chunks)
        )
        return profiles

    async def fetch_relations(
        self,
        kind: RelationKind,
        fid: int,
        limit: int = 100,
        max_pages: int = 1,
    ) -> list[dict]:
        """Raw user objects from the cursor-paged followers/following endpoints."""
        out: list[dict] = []
        cursor: Optional[str] = None

        for _ in range(clamp(max_pages, 1, LEGACY_MAX_PAGES)):
            params = {"fid": fid, "limit": limit}
            if cursor:
                params["cursor"] = cursor
            body = await self._get(f"/user/{kind}", params)

            users = body.get("users")
            if not isinstance(users, list):
                raise MalformedResponse(self.service, f"Neynar {kind} response missing users")
            # newer responses wrap each entry as {"user": {...}}
            out.extend(u.get("user", u) for u in users if isinstance(u, dict))

            nxt = body.get("next")
            cursor = nxt.get("cursor") if isinstance(nxt, dict) else None
            if not cursor:
                break

        return out
