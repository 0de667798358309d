"""
Confidence scoring for one requirement against one email.

A transparent linear model so every point can be traced to a component:

    subject keyword hits   40
    body keyword hits      30
    title/subject shape    20
    recipient domain       10
"""

from crm_sync.features.matching.keywords import (
    extract_domain,
    extract_keywords,
    find_matches,
    round_half_up,
    similarity,
)
from crm_sync.features.matching.models import EmailCandidate, Requirement, ScoreBreakdown
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SUBJECT_WEIGHT = 40
BODY_WEIGHT = 30
TITLE_WEIGHT = 20
DOMAIN_WEIGHT = 10

SUBJECT_THRESHOLD = 70
BODY_THRESHOLD = 80  # body text is noisier

# Denominator caps so long keyword lists do not dilute the signal
SUBJECT_KEYWORD_CAP = 5
BODY_KEYWORD_CAP = 10


def requirement_keywords(requirement: Requirement) -> list[str]:
    return extract_keywords(f"{requirement.title} {requirement.description or ''}")


def _recipient_domain(recipient: str) -> str | None:
    if "@" not in recipient:
        return None
    domain = recipient.rsplit("@", 1)[1].strip().lower()
    return domain or None


def _domain_points(requirement: Requirement, recipient: str) -> float:
    email_domain = _recipient_domain(recipient or "")
    if not email_domain:
        return 0.0

    title_domain = extract_domain(requirement.title)
    candidates = [title_domain] if title_domain else extract_keywords(requirement.title)

    for candidate in candidates:
        if candidate in email_domain or email_domain in candidate:
            return float(DOMAIN_WEIGHT)
    return 0.0


def score_breakdown(requirement: Requirement, email: EmailCandidate) -> ScoreBreakdown:
    """Score an email against a requirement and keep each component's contribution."""
    keywords = requirement_keywords(requirement)
    if not keywords:
        return ScoreBreakdown(0.0, 0.0, 0.0, 0.0, 0)

    subject = email.subject or ""
    body = email.body or ""

    subject_matches = find_matches(keywords, subject, SUBJECT_THRESHOLD)
    subject_points = len(subject_matches) / min(len(keywords), SUBJECT_KEYWORD_CAP) * SUBJECT_WEIGHT

    body_matches = find_matches(keywords, body, BODY_THRESHOLD)
    body_points = len(body_matches) / min(len(keywords), BODY_KEYWORD_CAP) * BODY_WEIGHT

    title_points = similarity(requirement.title or "", subject) / 100 * TITLE_WEIGHT
    domain_points = _domain_points(requirement, email.recipient)

    total = subject_points + body_points + title_points + domain_points
    score = max(0, min(100, round_half_up(total)))

    breakdown = ScoreBreakdown(
        subject_points=subject_points,
        body_points=body_points,
        title_points=title_points,
        domain_points=domain_points,
        score=score,
        subject_matches=tuple(subject_matches),
        body_matches=tuple(body_matches),
    )
    logger.debug("Match confidence computed", requirement_id=requirement.id, **breakdown.to_dict())
    return breakdown


def calculate_match_confidence(requirement: Requirement, email: EmailCandidate) -> int:
    """Integer confidence 0..100 that the email concerns the requirement."""
    return score_breakdown(requirement, email).score
