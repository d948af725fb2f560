"""Bounded exponential backoff for transient dispatch failures."""

from pydantic import BaseModel, Field


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based): base, 2*base, 4*base..."""

        return self.base_delay_seconds * 2 ** (attempt - 1)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts
