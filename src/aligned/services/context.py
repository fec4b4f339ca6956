"""Grounding context assembly.

``ContextAggregator.build`` issues a fixed set of reads against the poll store
and freezes them into a :class:`ContextSnapshot`. Reads run sequentially; an
empty read simply leaves its part of the snapshot empty.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from ..config import RankingCaps
from ..domain.assistant_models import (
    ContextSnapshot,
    PageContext,
    ProfilePageData,
    QuestionPageData,
    RecommendedQuestion,
    SimilarUser,
    VoteStats,
)
from ..domain.poll_models import Question
from ..infrastructure.poll_store import PollStore
from .ranking import RecommendationRanker, top_categories, vote_stats

logger = logging.getLogger(__name__)

RECENT_VOTED_LIMIT = 10
RECENT_QUESTIONS_SHOWN = 5
PAGE_COMMENTS_LIMIT = 5
AI_PROFILE_ID = "ai"


class ContextAggregator:
    def __init__(self, store: PollStore, ranker: Optional[RecommendationRanker] = None) -> None:
        self._store = store
        self._ranker = ranker or RecommendationRanker()

    @property
    def caps(self) -> RankingCaps:
        return self._ranker.caps

    def build(self, user_id: str, page: PageContext) -> ContextSnapshot:
        user_name = self._store.get_username(user_id) or "User"
        stats = vote_stats(v.vote for v in self._store.list_user_votes(user_id))
        recent = [q.content for q in self._store.recent_voted_questions(user_id, RECENT_VOTED_LIMIT) if q.content]
        categories = top_categories(self._store.category_vote_counts(user_id), self.caps.top_n)
        similar = self._similar_users(user_id)
        recommended = self._recommended_questions(user_id, categories)

        question_data = None
        if page.page == "question" and page.question_id:
            question_data = self._question_page(user_id, page.question_id)

        profile_data = None
        if page.page == "profile" and page.profile_id and page.profile_id != AI_PROFILE_ID:
            profile_data = self._profile_page(user_id, page.profile_id)

        logger.debug(
            "context_built",
            extra={
                "user_id": user_id,
                "page": page.page,
                "total_votes": stats.total_votes,
                "similar_users": len(similar),
                "recommended": len(recommended),
            },
        )
        return ContextSnapshot(
            user_name=user_name,
            user_stats=stats,
            page=page,
            recent_questions=tuple(recent[:RECENT_QUESTIONS_SHOWN]),
            top_categories=tuple(categories),
            similar_users=tuple(similar),
            recommended_questions=tuple(recommended),
            question_data=question_data,
            profile_data=profile_data,
        )

    def _similar_users(self, user_id: str) -> List[SimilarUser]:
        question_ids = self._store.voted_question_ids(user_id)
        if not question_ids:
            return []
        co_voters = self._store.co_voter_ids(question_ids, user_id)
        scored = []
        for other_id in self._ranker.similar_user_candidates(co_voters, user_id):
            score = self._store.compatibility(user_id, other_id)
            username = self._store.get_username(other_id) if score is not None else None
            scored.append((username, score))
        return self._ranker.rank_similar_users(scored)

    def _recommended_questions(self, user_id: str, categories: List[str]) -> List[RecommendedQuestion]:
        voted = self._store.voted_question_ids(user_id)
        recent = self._store.recent_questions(self.caps.recent_questions, exclude_ids=voted)
        candidates: List[Tuple[Question, VoteStats]] = []
        for question in self._ranker.question_candidates(recent, voted):
            tally = vote_stats(v.vote for v in self._store.question_votes(question.question_id))
            candidates.append((question, tally))
        return self._ranker.rank_recommended_questions(candidates, categories)

    def _question_page(self, user_id: str, question_id: str) -> QuestionPageData:
        question = self._store.get_question(question_id)
        tally = vote_stats(v.vote for v in self._store.question_votes(question_id))
        user_vote = self._store.get_user_vote(question_id, user_id)
        comments = []
        for comment in self._store.recent_comments(question_id, PAGE_COMMENTS_LIMIT):
            author = self._store.get_username(comment.user_id) or "Anonymous"
            comments.append(f'{author}: "{comment.content}"')
        return QuestionPageData(
            content=question.content if question else "",
            stats=tally,
            user_vote=user_vote.vote if user_vote else None,
            top_comments=tuple(comments),
        )

    def _profile_page(self, user_id: str, profile_id: str) -> ProfilePageData:
        username = self._store.get_username(profile_id) or "This user"
        score = self._store.compatibility(user_id, profile_id)
        if score is None:
            return ProfilePageData(username=username)
        return ProfilePageData(
            username=username,
            compatibility=score.compatibility_score,
            agreements=score.agreements,
            disagreements=score.disagreements,
            common_questions=score.common_questions,
        )
