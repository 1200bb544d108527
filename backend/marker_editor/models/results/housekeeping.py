"""
Result model for best-effort secondary writes.
"""

from pydantic import BaseModel, Field


class HousekeepingResult(BaseModel):
    """Outcome of a write that must never fail the primary operation."""
    success: bool = True
    attempted: int = 0
    failures: list[str] = Field(default_factory=list)

    @classmethod
    def failed(cls, attempted: int, reason: str) -> "HousekeepingResult":
        return cls(success=False, attempted=attempted, failures=[reason])

    def merge(self, other: "HousekeepingResult") -> "HousekeepingResult":
        return HousekeepingResult(
            success=self.success and other.success,
            attempted=self.attempted + other.attempted,
            failures=self.failures + other.failures,
        )
