"""Action-item API schemas."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class ActionItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    analysis_id: str
    section: str
    step_index: int
    step_text: str
    completed: bool
    completed_at: Optional[datetime] = None


class ActionItemList(BaseModel):
    """Checklist of one analysis with its completion summary."""

    items: list[ActionItemResponse]
    section_completion: dict[str, int] = Field(description="Percent complete per section")
    overall_completion: int = Field(ge=0, le=100)


class ActionItemToggle(BaseModel):
    completed: bool
    user_id: Optional[str] = None
