"""Job and link state machines.

Status values are persisted as their lowercase string value. Every status
write in ``storage`` goes through ``ensure_job_transition`` or
``ensure_link_transition`` first and is then applied as a conditional
update on the expected current status.
"""

from __future__ import annotations

from enum import Enum


class InvalidTransitionError(ValueError):
    pass


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    GENERATING = "generating"
    PUBLISHED = "published"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


class LinkStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

    @classmethod
    def from_flag(cls, is_active: bool) -> "LinkStatus":
        return cls.ACTIVE if is_active else cls.INACTIVE


TERMINAL_JOB_STATUSES = frozenset({JobStatus.PUBLISHED, JobStatus.FAILED})

# generating -> scheduled only happens when a retry strategy reschedules a failed stage.
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.SCHEDULED: frozenset({JobStatus.GENERATING}),
    JobStatus.GENERATING: frozenset(
        {JobStatus.PUBLISHED, JobStatus.FAILED, JobStatus.SCHEDULED}
    ),
    JobStatus.PUBLISHED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

MANUAL_JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.FAILED: frozenset({JobStatus.SCHEDULED}),
}

LINK_TRANSITIONS: dict[LinkStatus, frozenset[LinkStatus]] = {
    LinkStatus.ACTIVE: frozenset({LinkStatus.INACTIVE}),
    LinkStatus.INACTIVE: frozenset(),
}

MANUAL_LINK_TRANSITIONS: dict[LinkStatus, frozenset[LinkStatus]] = {
    LinkStatus.INACTIVE: frozenset({LinkStatus.ACTIVE}),
}


def ensure_job_transition(
    current: JobStatus | str, target: JobStatus | str, *, manual: bool = False
) -> JobStatus:
    current_status = JobStatus(current)
    target_status = JobStatus(target)
    allowed = JOB_TRANSITIONS[current_status]
    if manual:
        allowed = allowed | MANUAL_JOB_TRANSITIONS.get(current_status, frozenset())
    if target_status not in allowed:
        raise InvalidTransitionError(
            f"illegal job transition {current_status.value} -> {target_status.value}"
        )
    return target_status


def ensure_link_transition(
    current: LinkStatus | str, target: LinkStatus | str, *, manual: bool = False
) -> LinkStatus:
    current_status = LinkStatus(current)
    target_status = LinkStatus(target)
    allowed = LINK_TRANSITIONS[current_status]
    if manual:
        allowed = allowed | MANUAL_LINK_TRANSITIONS.get(current_status, frozenset())
    if target_status not in allowed:
        raise InvalidTransitionError(
            f"illegal link transition {current_status.value} -> {target_status.value}"
        )
    return target_status
