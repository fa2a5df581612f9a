"""Pydantic schemas for the status API."""

from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, Field

from models.records import CounterSnapshot


class CounterSnapshotModel(BaseModel):
    """Totals of one counter set since process start."""

    sent: int = Field(0, ge=0)
    success: int = Field(0, ge=0)
    failure: int = Field(0, ge=0)
    processed: int = Field(0, ge=0)

    @classmethod
    def from_snapshot(cls, snapshot: CounterSnapshot) -> "CounterSnapshotModel":
        return cls(
            sent=snapshot.sent,
            success=snapshot.success,
            failure=snapshot.failure,
            processed=snapshot.processed,
        )


class StatsResponse(BaseModel):
    counters: Dict[str, CounterSnapshotModel] = Field(
        default_factory=dict, description="Counter totals keyed by component label."
    )
