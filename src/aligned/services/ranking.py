"""Similar-user and recommended-question ranking.

Everything here is pure over already-fetched rows. The caps bound how many
per-candidate reads the aggregator issues, and the order is always
cap -> filter -> sort -> truncate, so a final list may come back short even
when better candidates exist past the cap.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from ..config import RankingCaps
from ..domain.assistant_models import RecommendedQuestion, SimilarUser, VoteStats
from ..domain.poll_models import CompatibilityScore, Question


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def vote_stats(votes: Iterable[str]) -> VoteStats:
    """Tally a tri-state vote distribution; an empty distribution is all zeros."""

    yes = no = unsure = 0
    for vote in votes:
        if vote == "YES":
            yes += 1
        elif vote == "NO":
            no += 1
        elif vote == "UNSURE":
            unsure += 1
    total = yes + no + unsure
    if total == 0:
        return VoteStats()
    return VoteStats(
        total_votes=total,
        yes_count=yes,
        no_count=no,
        unsure_count=unsure,
        yes_percent=round_half_up(yes / total * 100),
        no_percent=round_half_up(no / total * 100),
        unsure_percent=round_half_up(unsure / total * 100),
    )


def top_categories(counts: Mapping[str, int], limit: int = 5) -> List[str]:
    ordered = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [category for category, _ in ordered[:limit]]


class RecommendationRanker:
    def __init__(self, caps: Optional[RankingCaps] = None) -> None:
        self.caps = caps or RankingCaps()

    # ------------------------------------------------------------------
    # Similar users
    # ------------------------------------------------------------------
    def similar_user_candidates(self, co_voter_ids: Sequence[str], requester_id: str) -> List[str]:
        seen: set[str] = set()
        discovered: List[str] = []
        for uid in co_voter_ids:
            if uid == requester_id or uid in seen:
                continue
            seen.add(uid)
            discovered.append(uid)
        discovered = discovered[: self.caps.similar_discovered]
        return discovered[: self.caps.similar_evaluated]

    def rank_similar_users(
        self,
        scored: Iterable[Tuple[Optional[str], Optional[CompatibilityScore]]],
    ) -> List[SimilarUser]:
        """Rank ``(username, score)`` pairs; absent scores and thin overlaps are dropped."""

        kept: List[SimilarUser] = []
        for username, score in scored:
            if score is None or score.common_questions < self.caps.min_common_questions:
                continue
            if not username:
                continue
            kept.append(
                SimilarUser(
                    username=username,
                    compatibility=score.compatibility_score,
                    agreements=score.agreements,
                    disagreements=score.disagreements,
                )
            )
        kept.sort(key=lambda u: u.compatibility, reverse=True)
        return kept[: self.caps.top_n]

    # ------------------------------------------------------------------
    # Recommended questions
    # ------------------------------------------------------------------
    def question_candidates(self, recent: Sequence[Question], voted_ids: Iterable[str]) -> List[Question]:
        excluded = set(voted_ids)
        unanswered = [q for q in recent if q.question_id not in excluded]
        unanswered = unanswered[: self.caps.recent_questions]
        return unanswered[: self.caps.questions_evaluated]

    def rank_recommended_questions(
        self,
        candidates: Iterable[Tuple[Question, VoteStats]],
        user_top_categories: Sequence[str],
    ) -> List[RecommendedQuestion]:
        preferred = set(user_top_categories)
        kept: List[RecommendedQuestion] = []
        for question, stats in candidates:
            if stats.total_votes < 1:
                continue
            kept.append(
                RecommendedQuestion(
                    question_id=question.question_id,
                    content=question.content,
                    category=question.category or "Other",
                    total_votes=stats.total_votes,
                    yes_percent=stats.yes_percent,
                    no_percent=stats.no_percent,
                )
            )
        kept.sort(key=lambda q: (q.category in preferred, q.total_votes), reverse=True)
        return kept[: self.caps.top_n]

