"""Per-class statistics shown on the teacher dashboard."""

from dataclasses import dataclass
from typing import Sequence

from core.models import Submission
from core.status import is_graded


@dataclass(frozen=True)
class ScoreBucket:
    label: str
    low: float
    high: float
    count: int


@dataclass(frozen=True)
class DashboardStats:
    total: int
    num_graded: int
    num_pending: int
    average_score: float
    histogram: list[ScoreBucket]

    @property
    def has_graded(self) -> bool:
        return self.num_graded > 0


# (label, low, high); a score lands in the first bucket whose high bound it does not exceed
SCORE_BUCKETS: tuple[tuple[str, float, float], ...] = (
    ("Weak (0-4.9)", 0.0, 4.9),
    ("Average (5.0-6.4)", 5.0, 6.4),
    ("Fair (6.5-7.9)", 6.5, 7.9),
    ("Good (8.0-8.9)", 8.0, 8.9),
    ("Excellent (9.0-10)", 9.0, 10.0),
)


def bucket_index(score: float) -> int:
    for index, (_, _, high) in enumerate(SCORE_BUCKETS[:-1]):
        if score <= high:
            return index
    return len(SCORE_BUCKETS) - 1


def aggregate(submissions: Sequence[Submission], class_id: str) -> DashboardStats:
    """Counts, average score and score histogram for one class."""
    class_subs = [s for s in submissions if s.class_id == class_id]
    graded = [s for s in class_subs if is_graded(s)]
    num_graded = len(graded)
    average = sum(s.score for s in graded) / num_graded if num_graded else 0.0

    counts = [0] * len(SCORE_BUCKETS)
    for s in graded:
        counts[bucket_index(s.score)] += 1
    histogram = [
        ScoreBucket(label, low, high, count)
        for (label, low, high), count in zip(SCORE_BUCKETS, counts)
        if count > 0
    ]
    return DashboardStats(
        total=len(class_subs),
        num_graded=num_graded,
        num_pending=len(class_subs) - num_graded,
        average_score=average,
        histogram=histogram,
    )
