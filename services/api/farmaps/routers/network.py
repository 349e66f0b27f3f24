"""
Network endpoints:
  GET /api/network         — score-filtered pins from hub links + Neynar bulk
  GET /api/network/cities  — legacy pins from Neynar pages + city geocoding
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from farmaps.aggregator import NetworkAggregator, NetworkResult
from farmaps.config import settings
from farmaps.limits import HubPacing, clamp, parse_limit
from farmaps.schemas import Mode, NetworkResponse

logger = logging.getLogger(__name__)
router = APIRouter()


def get_aggregator(request: Request) -> NetworkAggregator:
    """FastAPI dependency: the aggregator built once in the app lifespan."""
    return request.app.state.aggregator


async def _bounded(coro):
    # wait_for cancels the in-flight upstream calls when the deadline passes
    try:
        return await asyncio.wait_for(coro, timeout=settings.network_timeout_s)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="Network aggregation timed out") from None


def _response(fid: int, mode: Mode, min_score: float, result: NetworkResult) -> NetworkResponse:
    return NetworkResponse(
        fid=fid,
        mode=mode,
        min_score=min_score,
        counts=result.counts,
        legend=result.legend,
        bounds=result.bounds,
        points=result.points,
    )


@router.get("", response_model=NetworkResponse)
async def get_network(
    fid: int = Query(..., gt=0, description="Root Farcaster ID"),
    mode: Mode = Query("both"),
    min_score: float = Query(settings.default_min_score, alias="minScore"),
    limit_each: Optional[str] = Query(
        None, alias="limitEach", description='Per-side cap; "all" follows pagination up to maxEach'
    ),
    max_each: int = Query(settings.default_max_each, alias="maxEach"),
    concurrency: int = Query(settings.hydration_concurrency),
    hub_page_size: int = Query(settings.hub_page_size, alias="hubPageSize"),
    hub_delay_ms: int = Query(settings.hub_page_delay_ms, alias="hubDelayMs"),
    hub_max_pages: int = Query(settings.hub_max_pages, alias="hubMaxPages"),
    aggregator: NetworkAggregator = Depends(get_aggregator),
):
    min_score = clamp(min_score, 0.0, 1.0)
    limit = parse_limit(limit_each, max_each, settings.default_limit_each)
    pacing = HubPacing.clamped(hub_page_size, hub_delay_ms, hub_max_pages)

    result = await _bounded(
        aggregator.build_network(
            fid,
            mode=mode,
            min_score=min_score,
            limit=limit,
            pacing=pacing,
            concurrency=clamp(concurrency, 1, 10),
        )
    )
    return _response(fid, mode, min_score, result)


@router.get("/cities", response_model=NetworkResponse)
async def get_city_network(
    fid: int = Query(..., gt=0, description="Root Farcaster ID"),
    pages: int = Query(1, description="Neynar pages per side (1–5)"),
    min_score: float = Query(settings.default_min_score, alias="minScore"),
    aggregator: NetworkAggregator = Depends(get_aggregator),
):
    min_score = clamp(min_score, 0.0, 1.0)
    result = await _bounded(
        aggregator.build_city_network(fid, min_score=min_score, pages=clamp(pages, 1, 5))
    )
    return _response(fid, "both", min_score, result)
