"""
Per-side caps and hub pacing knobs, parsed from query parameters.

A cap is either Bounded(n), which stops after n unique fids per side, or
Unbounded(ceiling), which follows pagination up to a safety ceiling.
"""
from dataclasses import dataclass
from typing import Optional, Union

from farmaps.errors import InvalidRequestError

MAX_EACH_CEILING = 50_000

PAGE_SIZE_MAX = 1000
PAGE_DELAY_MAX_MS = 2000
MAX_PAGES_CEILING = 2000


def clamp(n, lo, hi):
    return min(hi, max(lo, n))


@dataclass(frozen=True)
class Bounded:
    n: int

    @property
    def cap(self) -> int:
        return self.n

    @property
    def key(self) -> str:
        return str(self.n)


@dataclass(frozen=True)
class Unbounded:
    ceiling: int

    @property
    def cap(self) -> int:
        return self.ceiling

    @property
    def key(self) -> str:
        return f"all-{self.ceiling}"


Limit = Union[Bounded, Unbounded]


def parse_limit(limit_each: Optional[str], max_each: int, default: int) -> Limit:
    """
    "all" or a non-positive number → Unbounded(max_each);
    a positive integer → Bounded(min(n, max_each)).
    """
    ceiling = clamp(int(max_each), 1, MAX_EACH_CEILING)
    if limit_each is None or limit_each.strip() == "":
        return Bounded(min(default, ceiling))

    raw = limit_each.strip().lower()
    if raw == "all":
        return Unbounded(ceiling)
    try:
        n = int(raw)
    except ValueError:
        raise InvalidRequestError(f"Invalid limitEach: {limit_each!r}") from None
    if n <= 0:
        return Unbounded(ceiling)
    return Bounded(min(n, ceiling))


@dataclass(frozen=True)
class HubPacing:
    page_size: int = 50
    page_delay_ms: int = 125
    max_pages: int = 200

    @classmethod
    def clamped(cls, page_size: int, page_delay_ms: int, max_pages: int) -> "HubPacing":
        return cls(
            page_size=clamp(int(page_size), 1, PAGE_SIZE_MAX),
            page_delay_ms=clamp(int(page_delay_ms), 0, PAGE_DELAY_MAX_MS),
            max_pages=clamp(int(max_pages), 1, MAX_PAGES_CEILING),
        )
