"""Display state of a submission, derived from its stored fields and the clock."""

import math
from datetime import datetime
from enum import Enum
from typing import Optional

from core.models import Assignment, Submission


class SubmissionState(str, Enum):
    PENDING = "pending"
    GRADED = "graded"
    CONTENT_MISMATCHED = "content_mismatched"
    OVERDUE = "overdue"


def parse_when(value: Optional[str]) -> Optional[datetime]:
    """Parses an ISO date or timestamp into a naive local datetime.

    Returns None for missing or unparseable values.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _local_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now()
    if now.tzinfo is not None:
        return now.astimezone().replace(tzinfo=None)
    return now


def is_overdue_by_date(assignment: Optional[Assignment], now: Optional[datetime] = None) -> bool:
    """True once the calendar day is past the due date; time of day is ignored."""
    due = parse_when(assignment.due_date) if assignment else None
    if due is None:
        return False
    return _local_now(now).date() > due.date()


def is_overdue_by_datetime(assignment: Optional[Assignment], now: Optional[datetime] = None) -> bool:
    """True once the current instant is past the due instant (midnight for date-only due dates)."""
    due = parse_when(assignment.due_date) if assignment else None
    if due is None:
        return False
    return _local_now(now) > due


def is_graded(submission: Submission) -> bool:
    return (
        submission.status == "graded"
        and isinstance(submission.score, (int, float))
        and math.isfinite(submission.score)
    )


def can_auto_grade(submission: Submission) -> bool:
    """Pending, not flagged off-topic, and with a transcript to grade."""
    return (
        submission.status == "pending"
        and not submission.content_mismatched
        and not is_graded(submission)
        and bool(submission.transcript)
    )


def derive_status(
    submission: Submission,
    assignment: Optional[Assignment],
    now: Optional[datetime] = None,
    date_only: bool = True,
) -> SubmissionState:
    """Computes what a submission should be shown as.

    Args:
        submission: The stored submission.
        assignment: Its assignment, or None when it no longer exists.
        now: Reference time; defaults to the current local time.
        date_only: Use the calendar-day overdue check (grading screen) instead of
            the exact-instant check (submission screen).
    """
    if is_graded(submission):
        return SubmissionState.GRADED
    if submission.content_mismatched:
        return SubmissionState.CONTENT_MISMATCHED
    overdue = is_overdue_by_date(assignment, now) if date_only else is_overdue_by_datetime(assignment, now)
    if overdue:
        return SubmissionState.OVERDUE
    return SubmissionState.PENDING
