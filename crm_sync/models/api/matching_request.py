"""
What-if scoring request models.
"""

from pydantic import BaseModel, Field

from crm_sync.features.matching.models import ConfidenceTier, RequirementStatus

MAX_SUBJECT_LENGTH = 1_000
MAX_BODY_LENGTH = 100_000
MAX_REQUIREMENTS = 200


class RequirementInput(BaseModel):
    id: str = Field(..., description="Requirement id")
    title: str = Field(..., max_length=500, description="Requirement title")
    description: str = Field(default="", max_length=10_000, description="Requirement description (skills)")
    status: RequirementStatus = Field(default=RequirementStatus.OPEN)


class EmailInput(BaseModel):
    subject: str = Field(default="", max_length=MAX_SUBJECT_LENGTH, description="Email subject")
    body: str = Field(default="", max_length=MAX_BODY_LENGTH, description="Plain text body")
    recipient: str = Field(default="", max_length=320, description="Primary recipient address")


class ScoreEmailRequest(BaseModel):
    """Score one email against a set of requirements without storing anything."""

    email: EmailInput
    requirements: list[RequirementInput] = Field(default_factory=list, max_length=MAX_REQUIREMENTS)
    confidence_level: ConfidenceTier = Field(default=ConfidenceTier.MEDIUM)
