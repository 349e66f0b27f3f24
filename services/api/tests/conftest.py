import os

# No span export while testing
os.environ.setdefault("OTEL_SDK_DISABLED", "true")

from typing import Optional

import httpx
import pytest

from farmaps.clients.geocode_client import GeocodeClient
from farmaps.clients.hub_client import HubClient
from farmaps.clients.neynar_client import NeynarClient

ROOT_FID = 100


class RecordingSleep:
    """Stands in for asyncio.sleep; records each requested delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def following_msg(target, source=ROOT_FID) -> dict:
    return {"data": {"fid": source, "linkBody": {"type": "follow", "targetFid": target}}}


def follower_msg(source, target=ROOT_FID) -> dict:
    return {"data": {"fid": source, "linkBody": {"type": "follow", "targetFid": target}}}


class FakeHub:
    """
    Serves pre-baked pages per endpoint. pageToken is the index of the
    next page, so every page but the last carries a nextPageToken.
    """

    def __init__(self, following: Optional[list] = None, followers: Optional[list] = None):
        self.pages = {
            "/v1/linksByFid": following or [[]],
            "/v1/linksByTargetFid": followers or [[]],
        }
        self.requests: list[httpx.Request] = []

    def calls_to(self, endpoint: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == endpoint]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        pages = self.pages[request.url.path]
        token = request.url.params.get("pageToken")
        idx = int(token) if token else 0
        body = {"messages": pages[idx]}
        if idx + 1 < len(pages):
            body["nextPageToken"] = str(idx + 1)
        return httpx.Response(200, json=body)


def neynar_user(
    fid: int,
    score: Optional[float] = None,
    loc: Optional[tuple] = None,
    city: Optional[str] = None,
    username: Optional[str] = None,
) -> dict:
    user = {
        "fid": fid,
        "username": username or f"user{fid}",
        "display_name": f"User {fid}",
        "pfp_url": f"https://img.test/{fid}.png",
    }
    if score is not None:
        user["score"] = score
    location: dict = {}
    if loc is not None:
        location["latitude"], location["longitude"] = loc
    if city is not None:
        location["address"] = {"city": city}
    if location:
        user["profile"] = {"location": location}
    return user


class FakeNeynar:
    def __init__(self, users: Optional[list[dict]] = None, relations: Optional[dict] = None):
        self.users = {u["fid"]: u for u in users or []}
        self.relations = relations or {}
        self.requests: list[httpx.Request] = []

    @property
    def bulk_calls(self) -> list[list[int]]:
        return [
            [int(f) for f in r.url.params["fids"].split(",")]
            for r in self.requests
            if r.url.path.endswith("/user/bulk")
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/user/bulk"):
            fids = [int(f) for f in request.url.params["fids"].split(",")]
            return httpx.Response(
                200, json={"users": [self.users[f] for f in fids if f in self.users]}
            )
        kind = path.rsplit("/", 1)[-1]
        pages = self.relations.get(kind, [[]])
        cursor = request.url.params.get("cursor")
        idx = int(cursor) if cursor else 0
        body = {"users": pages[idx], "next": {"cursor": None}}
        if idx + 1 < len(pages):
            body["next"] = {"cursor": str(idx + 1)}
        return httpx.Response(200, json=body)


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_hub(sleeps):
    def factory(handler, **kwargs) -> HubClient:
        return HubClient(
            "https://hub.test/",
            transport=httpx.MockTransport(handler),
            sleep=sleeps,
            **kwargs,
        )
    return factory


@pytest.fixture
def make_neynar(sleeps):
    def factory(handler, **kwargs) -> NeynarClient:
        return NeynarClient(
            "test-key",
            base_url="https://neynar.test/v2/farcaster",
            transport=httpx.MockTransport(handler),
            sleep=sleeps,
            **kwargs,
        )
    return factory


@pytest.fixture
def make_geocoder():
    def factory(handler, **kwargs) -> GeocodeClient:
        return GeocodeClient(
            base_url="https://geo.test",
            transport=httpx.MockTransport(handler),
            **kwargs,
        )
    return factory
