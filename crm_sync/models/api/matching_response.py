"""
What-if scoring response models.
"""

from pydantic import BaseModel, Field


class RequirementScore(BaseModel):
    requirement_id: str
    score: int
    breakdown: dict = Field(default_factory=dict, description="Per-component points")


class ScoreEmailResponse(BaseModel):
    requirement_id: str | None = Field(None, description="Best requirement, if any scored")
    score: int = 0
    should_link: bool = False
    needs_confirmation: bool = False
    match_status: str | None = None
    matched_keywords: list[str] = Field(default_factory=list)
    reason: str = ""
    scores: list[RequirementScore] = Field(default_factory=list)
