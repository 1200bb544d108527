"""
Result models for marker statistics.
"""

from pydantic import BaseModel, Field


class BreakdownResult(BaseModel):
    """Bucket map of breakdown key to the number of items with that key."""
    breakdown: dict[int, int] = Field(default_factory=dict)


class ShowBreakdownTree(BaseModel):
    show_id: int
    show: dict[int, int] = Field(default_factory=dict)
    seasons: dict[int, dict[int, int]] = Field(default_factory=dict)
