"""HTTP route definitions for the status API."""

from __future__ import annotations

from typing import Mapping

from fastapi import APIRouter, Depends, Request, status

from app.schemas import CounterSnapshotModel, StatsResponse
from models.records import Counters

router = APIRouter()


def get_counters(request: Request) -> Mapping[str, Counters]:
    return request.app.state.counters


@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Counter totals for every component of this process.",
)
async def get_stats(
    counters: Mapping[str, Counters] = Depends(get_counters),
) -> StatsResponse:
    return StatsResponse(
        counters={
            label: CounterSnapshotModel.from_snapshot(item.snapshot())
            for label, item in counters.items()
        }
    )


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
