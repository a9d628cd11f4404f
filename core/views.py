"""Filtering, sorting and paging of the teacher's submission list and related lists."""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional, Sequence

import config
from core.models import Assignment, ClassGroup, Submission
from core.status import parse_when

SortKey = Literal["newest", "oldest", "dueDate"]
StatusFilter = Literal["all", "pending", "graded"]

ALL = "all"


@dataclass(frozen=True)
class SubmissionQuery:
    search_text: str = ""
    class_id: Optional[str] = None
    status: StatusFilter = "all"
    sort_key: SortKey = "newest"


@dataclass(frozen=True)
class SubmissionRow:
    """A submission joined with the assignment and class it belongs to."""

    submission: Submission
    assignment: Assignment
    class_group: ClassGroup


@dataclass(frozen=True)
class SubmissionPage:
    items: list[SubmissionRow]
    total_pages: int
    page: int
    total_items: int


def _date_key(value: Optional[str], descending: bool = False) -> tuple[int, float]:
    # Unknown dates always sort after known ones
    when: Optional[datetime] = parse_when(value)
    if when is None:
        return (1, 0.0)
    stamp = when.timestamp()
    return (0, -stamp if descending else stamp)


def filter_submissions(
    submissions: Sequence[Submission],
    assignments: Sequence[Assignment],
    query: SubmissionQuery,
) -> list[Submission]:
    """Applies the class, status and search filters, then sorts stably."""
    by_id = {a.id: a for a in assignments}
    items = list(submissions)

    if query.class_id and query.class_id != ALL:
        items = [s for s in items if s.class_id == query.class_id]
    if query.status != ALL:
        items = [s for s in items if s.status == query.status]

    needle = query.search_text.strip().lower()
    if needle:
        def matches(s: Submission) -> bool:
            assignment = by_id.get(s.assignment_id)
            return (
                needle in s.student_name.lower()
                or needle in s.submission_file_name.lower()
                or (assignment is not None and needle in assignment.title.lower())
            )
        items = [s for s in items if matches(s)]

    def sort_key(s: Submission) -> tuple:
        assignment = by_id.get(s.assignment_id)
        if query.sort_key == "dueDate":
            return _date_key(assignment.due_date if assignment else None)
        if query.sort_key == "oldest":
            return _date_key(assignment.assigned_date if assignment else None)
        pending_rank = 0 if s.status == "pending" else 1
        return (pending_rank, *_date_key(assignment.assigned_date if assignment else None, descending=True))

    # list.sort is stable, so ties keep their original order
    items.sort(key=sort_key)
    return items


def clamp_page(page: int, total_pages: int) -> int:
    return min(max(page, 1), max(total_pages, 1))


def view(
    submissions: Sequence[Submission],
    assignments: Sequence[Assignment],
    classes: Sequence[ClassGroup],
    query: SubmissionQuery,
    page: int = 1,
    page_size: int = config.SUBMISSIONS_PER_PAGE,
) -> SubmissionPage:
    """Returns one page of the filtered, sorted submission list.

    The page number is clamped into the valid range. Rows whose assignment or
    class no longer exists are left out of the page but still counted.
    """
    if page_size < 1:
        raise ValueError("page_size must be positive")
    filtered = filter_submissions(submissions, assignments, query)
    total_items = len(filtered)
    total_pages = math.ceil(total_items / page_size)
    page = clamp_page(page, total_pages)

    assignments_by_id = {a.id: a for a in assignments}
    classes_by_id = {c.id: c for c in classes}
    start = (page - 1) * page_size
    rows = []
    for submission in filtered[start:start + page_size]:
        assignment = assignments_by_id.get(submission.assignment_id)
        class_group = classes_by_id.get(submission.class_id)
        if assignment is None or class_group is None:
            continue
        rows.append(SubmissionRow(submission, assignment, class_group))
    return SubmissionPage(items=rows, total_pages=total_pages, page=page, total_items=total_items)


def filter_assignments(assignments: Sequence[Assignment], search_text: str = "") -> list[Assignment]:
    """Teacher's assignment list: title search, newest assigned first."""
    needle = search_text.strip().lower()
    items = [a for a in assignments if needle in a.title.lower()] if needle else list(assignments)
    items.sort(key=lambda a: _date_key(a.assigned_date, descending=True))
    return items


def student_submissions(
    submissions: Sequence[Submission],
    assignments: Sequence[Assignment],
    student_name: str,
) -> list[Submission]:
    """A student's own submissions (name match ignores case), newest assignment first."""
    name = student_name.strip().lower()
    if not name:
        return []
    by_id = {a.id: a for a in assignments}
    items = [s for s in submissions if s.student_name.strip().lower() == name]
    items.sort(key=lambda s: _date_key(by_id[s.assignment_id].assigned_date if s.assignment_id in by_id else None,
                                       descending=True))
    return items
