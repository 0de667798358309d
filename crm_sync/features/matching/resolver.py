"""
Match resolver - picks the best requirement for an inbound email and
decides whether to auto-link, flag for confirmation, or ignore.
"""

from collections.abc import Iterable

from crm_sync.features.matching.models import (
    ConfidenceTier,
    EmailCandidate,
    MatchResult,
    Requirement,
    ScoreBreakdown,
)
from crm_sync.features.matching.scoring import score_breakdown

# Below this score a match is never recorded, whatever the tier
LINK_FLOOR = 50


def describe_match(score: int, keywords: Iterable[str]) -> str:
    """Human-readable reason shown next to a suggested link."""
    found = ", ".join(list(keywords)[:3])
    if score >= 95:
        return f"Very high confidence match ({score}%). Keywords found: {found}"
    if score >= 80:
        return f"High confidence match ({score}%). Keywords found: {found}"
    if score >= 70:
        return f"Good confidence match ({score}%). Keywords found: {found}"
    if score >= LINK_FLOOR:
        return f"Moderate confidence match ({score}%). Please verify."
    return f"Low confidence match ({score}%). Manual review recommended."


def classify(score: int, tier: ConfidenceTier) -> tuple[bool, bool]:
    """Return (should_link, needs_confirmation) for a score under a tier."""
    should_link = score >= LINK_FLOOR
    needs_confirmation = should_link and score < tier.threshold
    return should_link, needs_confirmation


def pick_match(
    scored: Iterable[tuple[Requirement, ScoreBreakdown]],
    tier: ConfidenceTier | str = ConfidenceTier.MEDIUM,
) -> MatchResult:
    """
    Classify the best of already scored requirements.

    The first requirement to reach the highest score wins; a requirement
    must score above zero to be reported at all.
    """
    tier = ConfidenceTier.parse(tier)

    best: Requirement | None = None
    best_breakdown: ScoreBreakdown | None = None
    for requirement, breakdown in scored:
        if breakdown.score > (best_breakdown.score if best_breakdown else 0):
            best = requirement
            best_breakdown = breakdown

    if best is None:
        return MatchResult(
            requirement=None,
            score=0,
            should_link=False,
            needs_confirmation=False,
            reason=describe_match(0, []),
        )

    should_link, needs_confirmation = classify(best_breakdown.score, tier)
    return MatchResult(
        requirement=best,
        score=best_breakdown.score,
        should_link=should_link,
        needs_confirmation=needs_confirmation,
        matched_keywords=best_breakdown.subject_matches,
        reason=describe_match(best_breakdown.score, best_breakdown.subject_matches),
    )


def score_open_requirements(
    requirements: Iterable[Requirement], email: EmailCandidate
) -> list[tuple[Requirement, ScoreBreakdown]]:
    return [(r, score_breakdown(r, email)) for r in requirements if r.is_open]


def resolve_match(
    requirements: Iterable[Requirement],
    email: EmailCandidate,
    tier: ConfidenceTier | str = ConfidenceTier.MEDIUM,
) -> MatchResult:
    """Score the email against every open requirement and classify the best one."""
    return pick_match(score_open_requirements(requirements, email), tier)
