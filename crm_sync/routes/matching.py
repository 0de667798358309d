"""
What-if scoring of one email against a set of requirements.

Pure: nothing is read from or written to the database.
"""

import asyncio

from fastapi import APIRouter

from crm_sync.features.matching import (
    ConfidenceTier,
    EmailCandidate,
    MatchResult,
    Requirement,
    ScoreBreakdown,
    pick_match,
    score_open_requirements,
)
from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.models.api.matching_request import ScoreEmailRequest
from crm_sync.models.api.matching_response import RequirementScore, ScoreEmailResponse

router = APIRouter(prefix="/matching", tags=["matching"])
logger = get_logger(__name__)


def _score(
    requirements: list[Requirement], email: EmailCandidate, tier: ConfidenceTier
) -> tuple[MatchResult, list[tuple[Requirement, ScoreBreakdown]]]:
    scored = score_open_requirements(requirements, email)
    return pick_match(scored, tier), scored


@router.post("/score", response_model=ScoreEmailResponse)
async def score_email(request: ScoreEmailRequest):
    email = EmailCandidate(
        subject=request.email.subject,
        body=request.email.body,
        recipient=request.email.recipient,
    )
    requirements = [
        Requirement(id=r.id, title=r.title, description=r.description, status=r.status)
        for r in request.requirements
    ]

    # Scoring is CPU bound; keep it off the event loop
    result, scored = await asyncio.to_thread(_score, requirements, email, request.confidence_level)

    logger.info(
        "What-if match scored",
        requirement_count=len(requirements),
        best_requirement_id=result.requirement.id if result.requirement else None,
        score=result.score,
    )

    return ScoreEmailResponse(
        requirement_id=result.requirement.id if result.requirement else None,
        score=result.score,
        should_link=result.should_link,
        needs_confirmation=result.needs_confirmation,
        match_status=result.match_status,
        matched_keywords=list(result.matched_keywords),
        reason=result.reason,
        scores=[
            RequirementScore(requirement_id=r.id, score=b.score, breakdown=b.to_dict())
            for r, b in scored
        ],
    )
