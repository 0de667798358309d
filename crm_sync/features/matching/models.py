"""
Domain models for email-to-requirement matching.

Plain dataclasses shared by the scorer, the resolver, the ingestion job and
the what-if scoring API.
"""

from dataclasses import dataclass, field
from enum import Enum


class RequirementStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class ConfidenceTier(str, Enum):
    """User-selected auto-link tier stored on the mailbox connection."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def threshold(self) -> int:
        return TIER_THRESHOLDS[self]

    @classmethod
    def parse(cls, value: "str | ConfidenceTier | None") -> "ConfidenceTier":
        """Parse a stored tier value, defaulting to medium."""
        if isinstance(value, ConfidenceTier):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.MEDIUM


TIER_THRESHOLDS = {
    ConfidenceTier.HIGH: 95,
    ConfidenceTier.MEDIUM: 70,
    ConfidenceTier.LOW: 50,
}


@dataclass(slots=True, frozen=True)
class Requirement:
    """Read-only view of a job requirement used as matching input."""

    id: str
    title: str
    description: str = ""
    status: RequirementStatus = RequirementStatus.OPEN

    @property
    def is_open(self) -> bool:
        return self.status == RequirementStatus.OPEN


@dataclass(slots=True, frozen=True)
class EmailCandidate:
    """The parts of an email the scorer looks at."""

    subject: str
    body: str
    recipient: str = ""


@dataclass(slots=True, frozen=True)
class ScoreBreakdown:
    """Per-component contributions of one requirement/email score."""

    subject_points: float
    body_points: float
    title_points: float
    domain_points: float
    score: int
    subject_matches: tuple[str, ...] = field(default_factory=tuple)
    body_matches: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "subject_points": round(self.subject_points, 2),
            "body_points": round(self.body_points, 2),
            "title_points": round(self.title_points, 2),
            "domain_points": round(self.domain_points, 2),
            "score": self.score,
            "subject_matches": list(self.subject_matches),
            "body_matches": list(self.body_matches),
        }


@dataclass(slots=True, frozen=True)
class MatchResult:
    """Outcome of resolving one email against a set of requirements."""

    requirement: Requirement | None
    score: int
    should_link: bool
    needs_confirmation: bool
    matched_keywords: tuple[str, ...] = field(default_factory=tuple)
    reason: str = ""

    @property
    def match_status(self) -> str | None:
        """Status a stored match record should get, or None when nothing is recorded."""
        if not self.should_link:
            return None
        return "pending_confirmation" if self.needs_confirmation else "linked"
