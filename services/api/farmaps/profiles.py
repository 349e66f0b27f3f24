"""
Neynar user → Profile parsing.

Neynar's user object has moved fields around between API versions, so
every attribute is read through an ordered list of extraction strategies;
the first one yielding a well-typed value wins.

  score        score → experimental.neynar_user_score
  username     username → fname → "fid:<fid>"
  display_name display_name → displayName
  pfp_url      pfp_url → pfp.url
  lat / lng    profile.location.latitude / .longitude (both or neither)
  city         profile.location.address.{city,state,country}
               → profile.location.name → location (str)
               → location.description → location.name
"""
import math
from typing import Any, Callable, Iterable, Optional

from farmaps.schemas import Profile

Strategy = Callable[[Any], Any]


def path(*keys: str) -> Strategy:
    def get(raw: Any) -> Any:
        cur = raw
        for k in keys:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(k)
        return cur
    return get


def as_number(v: Any) -> Optional[float]:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    f = float(v)
    return f if math.isfinite(f) else None


def as_text(v: Any) -> Optional[str]:
    if isinstance(v, str) and v.strip():
        return v.strip()
    return None


def as_fid(v: Any) -> Optional[int]:
    if isinstance(v, bool) or not isinstance(v, int):
        return None
    return v if v > 0 else None


def _address(raw: Any) -> Optional[str]:
    addr = path("profile", "location", "address")(raw)
    if not isinstance(addr, dict):
        return None
    parts = [as_text(addr.get(k)) for k in ("city", "state", "country")]
    joined = ", ".join(p for p in parts if p)
    return joined or None


SCORE = [path("score"), path("experimental", "neynar_user_score")]
USERNAME = [path("username"), path("fname")]
DISPLAY_NAME = [path("display_name"), path("displayName")]
PFP_URL = [path("pfp_url"), path("pfp", "url")]
LATITUDE = [path("profile", "location", "latitude")]
LONGITUDE = [path("profile", "location", "longitude")]
CITY = [
    _address,
    path("profile", "location", "name"),
    path("location"),
    path("location", "description"),
    path("location", "name"),
]


def first_of(raw: Any, strategies: Iterable[Strategy], coerce: Callable[[Any], Any]) -> Any:
    for strategy in strategies:
        value = coerce(strategy(raw))
        if value is not None:
            return value
    return None


def extract_city(raw: Any) -> Optional[str]:
    return first_of(raw, CITY, as_text)


def parse_profile(raw: Any) -> Optional[Profile]:
    """Return None for records without a usable fid."""
    if not isinstance(raw, dict):
        return None
    fid = as_fid(raw.get("fid"))
    if fid is None:
        return None

    lat = first_of(raw, LATITUDE, as_number)
    lng = first_of(raw, LONGITUDE, as_number)
    if lat is None or lng is None:
        lat = lng = None

    return Profile(
        fid=fid,
        username=first_of(raw, USERNAME, as_text) or f"fid:{fid}",
        display_name=first_of(raw, DISPLAY_NAME, as_text),
        pfp_url=first_of(raw, PFP_URL, as_text),
        score=first_of(raw, SCORE, as_number),
        lat=lat,
        lng=lng,
        city=extract_city(raw),
    )


def parse_profiles(users: Any) -> list[Profile]:
    if not isinstance(users, list):
        return []
    return [p for p in (parse_profile(u) for u in users) if p is not None]
