import time

from crm_sync.features.matching import (
    ConfidenceTier,
    EmailCandidate,
    Requirement,
    RequirementStatus,
    pick_match,
    resolve_match,
    score_breakdown,
)
from crm_sync.features.matching.resolver import classify, describe_match

REACT_ROLE = Requirement(id="req-1", title="Senior React Developer", description="React, Redux")
FULL_EMAIL = EmailCandidate(
    subject="Senior React Developer",
    body="Hi Jane, sharing a Senior React Developer opening. Strong React and Redux skills required.",
    recipient="jane@acme.com",
)


def test_medium_tier_auto_links_score_80():
    result = resolve_match([REACT_ROLE], FULL_EMAIL, ConfidenceTier.MEDIUM)

    assert result.requirement == REACT_ROLE
    assert result.score == 80
    assert result.should_link is True
    assert result.needs_confirmation is False
    assert result.match_status == "linked"
    assert result.reason.startswith("High confidence match (80%)")


def test_high_tier_flags_same_score_for_confirmation():
    result = resolve_match([REACT_ROLE], FULL_EMAIL, "high")

    assert result.should_link is True
    assert result.needs_confirmation is True
    assert result.match_status == "pending_confirmation"


def test_score_at_floor_links_with_confirmation():
    email = EmailCandidate(subject="Senior React Developer", body="")

    result = resolve_match([REACT_ROLE], email, ConfidenceTier.LOW)

    assert result.score == 50
    assert result.should_link is True
    assert result.needs_confirmation is False


def test_tie_goes_to_first_requirement():
    twin = Requirement(id="req-twin", title=REACT_ROLE.title, description=REACT_ROLE.description)

    result = resolve_match([REACT_ROLE, twin], FULL_EMAIL)

    assert result.requirement.id == "req-1"


def test_closed_requirements_are_ignored():
    closed = Requirement(
        id="req-closed", title=REACT_ROLE.title, description=REACT_ROLE.description, status=RequirementStatus.CLOSED
    )

    result = resolve_match([closed], FULL_EMAIL)

    assert result.requirement is None
    assert result.should_link is False


def test_all_zero_scores_report_no_requirement():
    result = resolve_match([REACT_ROLE], EmailCandidate(subject="", body=""))

    assert result.requirement is None
    assert result.score == 0
    assert result.match_status is None


def test_classify_thresholds():
    assert classify(49, ConfidenceTier.LOW) == (False, False)
    assert classify(50, ConfidenceTier.MEDIUM) == (True, True)
    assert classify(70, ConfidenceTier.MEDIUM) == (True, False)
    assert classify(94, ConfidenceTier.HIGH) == (True, True)
    assert classify(95, ConfidenceTier.HIGH) == (True, False)


def test_confidence_tier_parse_defaults_to_medium():
    assert ConfidenceTier.parse("HIGH") is ConfidenceTier.HIGH
    assert ConfidenceTier.parse(None) is ConfidenceTier.MEDIUM
    assert ConfidenceTier.parse("bogus") is ConfidenceTier.MEDIUM


def test_describe_match_bands():
    assert describe_match(96, ["react"]).startswith("Very high confidence match (96%)")
    assert describe_match(60, ["react"]) == "Moderate confidence match (60%). Please verify."
    assert describe_match(10, []) == "Low confidence match (10%). Manual review recommended."


def test_pick_match_reuses_given_breakdowns():
    scored = [(REACT_ROLE, score_breakdown(REACT_ROLE, FULL_EMAIL))]

    assert pick_match(scored, "medium") == resolve_match([REACT_ROLE], FULL_EMAIL, "medium")


def test_many_requirements_against_long_body_score_quickly():
    requirements = [
        Requirement(id=f"req-{n}", title=f"Platform Engineer {n}", description="Kubernetes, Terraform, Golang")
        for n in range(30)
    ]
    email = EmailCandidate(
        subject="Weekly newsletter",
        body="Notes from the team offsite, travel plans and lunch options. " * 100,
        recipient="all@agency.com",
    )

    started = time.perf_counter()
    result = resolve_match(requirements, email)
    elapsed = time.perf_counter() - started

    assert result.should_link is False
    assert elapsed < 0.5
