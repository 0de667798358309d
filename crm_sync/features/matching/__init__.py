"""
Email-to-requirement matching.

Pure, side-effect free scoring used by the Gmail sync job and by the
what-if scoring endpoint.
"""

from crm_sync.features.matching.keywords import extract_keywords, find_matches, similarity
from crm_sync.features.matching.models import (
    ConfidenceTier,
    EmailCandidate,
    MatchResult,
    Requirement,
    RequirementStatus,
    ScoreBreakdown,
)
from crm_sync.features.matching.resolver import (
    LINK_FLOOR,
    pick_match,
    resolve_match,
    score_open_requirements,
)
from crm_sync.features.matching.scoring import calculate_match_confidence, score_breakdown

__all__ = [
    "ConfidenceTier",
    "EmailCandidate",
    "LINK_FLOOR",
    "MatchResult",
    "Requirement",
    "RequirementStatus",
    "ScoreBreakdown",
    "calculate_match_confidence",
    "extract_keywords",
    "find_matches",
    "pick_match",
    "resolve_match",
    "score_breakdown",
    "score_open_requirements",
    "similarity",
]
