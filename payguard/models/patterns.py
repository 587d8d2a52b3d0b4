from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class PatternCondition(BaseModel):
    field: str
    operator: Literal["eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in"]
    value: Any = None
    value_field: Optional[str] = None


class PatternRequest(BaseModel):
    name: str
    description: str | None = None
    conditions: list[PatternCondition] = Field(min_length=1)
    priority: int = Field(default=0, ge=0)


class PatternResponse(PatternRequest):
    id: str
    is_active: bool
    created_at: datetime
