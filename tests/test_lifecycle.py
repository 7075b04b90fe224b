import pytest

from pureflow.lifecycle import (
    InvalidTransitionError,
    JobStatus,
    LinkStatus,
    ensure_job_transition,
    ensure_link_transition,
)


@pytest.mark.parametrize(
    "current,target",
    [
        ("scheduled", "generating"),
        ("generating", "published"),
        ("generating", "failed"),
        ("generating", "scheduled"),
    ],
)
def test_allowed_job_transitions(current, target):
    assert ensure_job_transition(current, target) == JobStatus(target)


@pytest.mark.parametrize(
    "current,target",
    [
        ("published", "generating"),
        ("published", "scheduled"),
        ("failed", "scheduled"),
        ("failed", "generating"),
        ("scheduled", "published"),
    ],
)
def test_illegal_job_transitions(current, target):
    with pytest.raises(InvalidTransitionError):
        ensure_job_transition(current, target)


def test_failed_to_scheduled_requires_manual():
    assert ensure_job_transition(JobStatus.FAILED, JobStatus.SCHEDULED, manual=True) == JobStatus.SCHEDULED
    with pytest.raises(InvalidTransitionError):
        ensure_job_transition(JobStatus.PUBLISHED, JobStatus.SCHEDULED, manual=True)


def test_terminal_statuses():
    assert JobStatus.PUBLISHED.is_terminal
    assert JobStatus.FAILED.is_terminal
    assert not JobStatus.GENERATING.is_terminal


def test_link_reactivation_is_manual_only():
    assert ensure_link_transition(LinkStatus.ACTIVE, LinkStatus.INACTIVE) == LinkStatus.INACTIVE
    with pytest.raises(InvalidTransitionError):
        ensure_link_transition(LinkStatus.INACTIVE, LinkStatus.ACTIVE)
    assert ensure_link_transition("inactive", "active", manual=True) == LinkStatus.ACTIVE
    assert LinkStatus.from_flag(False) == LinkStatus.INACTIVE


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        ensure_job_transition("scheduled", "running")
