# ranking.py
# -----------------------------------------------------------------------------
# Rank / percentile over the submitted attempts of one exam.
# - Full re-sort on every submission; no incremental standings
# - Order: highest total_score first, earlier submitted_at wins ties,
#   attempt id only when the timestamps are identical
# - Concurrent submissions may persist a rank that is already stale; the
#   rerank endpoint is the out-of-band fix-up
# -----------------------------------------------------------------------------
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from attempt_engine import ExamAttempt, round_half_up
from errors import AttemptNotFound


@dataclass(frozen=True)
class RankResult:
    rank: int
    percentile: int
    population: int


def ranking_key(attempt: ExamAttempt):
    return (-attempt.total_score, attempt.submitted_at, attempt.id)


def percentile_for(rank: int, population: int) -> int:
    return round_half_up((population - rank + 1) / population * 100)


class RankingAggregator:
    def __init__(self, store):
        self.store = store

    def _ordered(self, exam_id: Any) -> List[ExamAttempt]:
        return sorted(self.store.list_submitted(str(exam_id)), key=ranking_key)

    def compute_rank_and_percentile(self, exam_id: Any, attempt_id: Any) -> RankResult:
        ordered = self._ordered(exam_id)
        n = len(ordered)
        for pos, attempt in enumerate(ordered, start=1):
            if attempt.id == str(attempt_id):
                return RankResult(rank=pos, percentile=percentile_for(pos, n), population=n)
        raise AttemptNotFound(f"attempt {attempt_id} is not a submitted attempt of exam {exam_id}")

    def leaderboard(self, exam_id: Any, limit: Optional[int] = 50) -> List[Dict[str, Any]]:
        ordered = self._ordered(exam_id)
        if limit is not None:
            ordered = ordered[:max(0, int(limit))]
        return [
            {
                "rank": pos,
                "attempt_id": a.id,
                "user_id": a.user_id,
                "total_score": a.total_score,
                "max_score": a.max_score,
                "percentage": a.percentage,
                "submitted_at": a.submitted_at.isoformat() if a.submitted_at else None,
            }
            for pos, a in enumerate(ordered, start=1)
        ]

    def rerank_exam(self, exam_id: Any) -> int:
        """Recompute and persist rank/percentile for every submitted attempt of the exam."""
        ordered = self._ordered(exam_id)
        n = len(ordered)
        for pos, attempt in enumerate(ordered, start=1):
            self.store.update_rank(attempt.id, pos, percentile_for(pos, n))
        print(f"[rank] exam {exam_id}: re-ranked {n} attempt(s)")
        return n
