from pydantic import BaseModel, Field


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int = Field(ge=0)
    reset_ms: int = Field(ge=0)  # time until a slot frees up
