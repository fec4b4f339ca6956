from __future__ import annotations

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from threading import RLock
from typing import Dict, List, Optional, Protocol, Sequence
import os
import uuid

from ..domain.poll_models import Comment, CompatibilityScore, Question, UserProfile, Vote

MIN_COMMON_QUESTIONS = 3


def _percent(part: int, whole: int) -> float:
    # one decimal, ties away from zero (SQL ROUND)
    exact = Decimal(part * 100) / Decimal(whole)
    return float(exact.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class PollStore(Protocol):
    def get_username(self, user_id: str) -> Optional[str]: ...

    def any_user_id(self) -> Optional[str]: ...

    def list_user_votes(self, user_id: str) -> List[Vote]: ...

    def recent_voted_questions(self, user_id: str, limit: int = 10) -> List[Question]: ...

    def category_vote_counts(self, user_id: str) -> Dict[str, int]: ...

    def voted_question_ids(self, user_id: str) -> List[str]: ...

    def co_voter_ids(self, question_ids: Sequence[str], exclude_user_id: str) -> List[str]: ...

    def compatibility(self, user_a: str, user_b: str) -> Optional[CompatibilityScore]: ...

    def recent_questions(self, limit: int = 50, exclude_ids: Sequence[str] = ()) -> List[Question]: ...

    def get_question(self, question_id: str) -> Optional[Question]: ...

    def question_votes(self, question_id: str) -> List[Vote]: ...

    def get_user_vote(self, question_id: str, user_id: str) -> Optional[Vote]: ...

    def get_ai_vote(self, question_id: str) -> Optional[Vote]: ...

    def recent_comments(self, question_id: str, limit: int = 5, include_ai: bool = False) -> List[Comment]: ...

    def add_user(self, username: str, user_id: Optional[str] = None) -> UserProfile: ...

    def add_question(
        self,
        content: str,
        category: Optional[str] = None,
        author_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Question: ...

    def add_vote(
        self,
        user_id: str,
        question_id: str,
        vote: str,
        *,
        is_ai: bool = False,
        is_anonymous: bool = False,
        ai_reasoning: Optional[str] = None,
        ai_model: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Vote: ...

    def add_comment(
        self,
        question_id: str,
        user_id: str,
        content: str,
        *,
        is_ai: bool = False,
        ai_model: Optional[str] = None,
        mentions: Optional[List[str]] = None,
    ) -> Comment: ...


class InMemoryPollStore:
    """Thread-safe in-memory poll data for dev/test.

    Mirrors the relational schema (profiles, questions, responses, comments) and
    the stored ``calculate_compatibility`` procedure.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserProfile] = {}
        self._questions: Dict[str, Question] = {}
        self._votes: List[Vote] = []
        self._comments: List[Comment] = []
        self._lock = RLock()

    def _now(self) -> datetime:
        return datetime.now(UTC)

    def _human_votes(self, user_id: str) -> List[Vote]:
        return [v for v in self._votes if v.user_id == user_id and not v.is_ai]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_username(self, user_id: str) -> Optional[str]:
        with self._lock:
            user = self._users.get(user_id)
            return user.username if user else None

    def any_user_id(self) -> Optional[str]:
        with self._lock:
            return next(iter(self._users), None)

    def list_user_votes(self, user_id: str) -> List[Vote]:
        with self._lock:
            votes = self._human_votes(user_id)
            return sorted(votes, key=lambda v: v.created_at, reverse=True)

    def recent_voted_questions(self, user_id: str, limit: int = 10) -> List[Question]:
        with self._lock:
            out: List[Question] = []
            for vote in self.list_user_votes(user_id)[: max(0, limit)]:
                question = self._questions.get(vote.question_id)
                if question:
                    out.append(question)
            return out

    def category_vote_counts(self, user_id: str) -> Dict[str, int]:
        with self._lock:
            counts: Dict[str, int] = {}
            for vote in self._human_votes(user_id):
                question = self._questions.get(vote.question_id)
                if question and question.category:
                    counts[question.category] = counts.get(question.category, 0) + 1
            return counts

    def voted_question_ids(self, user_id: str) -> List[str]:
        with self._lock:
            return [v.question_id for v in self._human_votes(user_id)]

    def co_voter_ids(self, question_ids: Sequence[str], exclude_user_id: str) -> List[str]:
        wanted = set(question_ids)
        if not wanted:
            return []
        with self._lock:
            return [
                v.user_id
                for v in self._votes
                if v.question_id in wanted and v.user_id != exclude_user_id and not v.is_ai
            ]

    def compatibility(self, user_a: str, user_b: str) -> Optional[CompatibilityScore]:
        with self._lock:
            mine = {
                v.question_id: v.vote
                for v in self._votes
                if v.user_id == user_a and not v.is_ai and not v.is_anonymous
            }
            agreements = 0
            disagreements = 0
            for v in self._votes:
                if v.user_id != user_b or v.is_ai or v.is_anonymous:
                    continue
                other = mine.get(v.question_id)
                if other is None:
                    continue
                # an UNSURE against a YES/NO is not comparable
                if (other == "UNSURE") != (v.vote == "UNSURE"):
                    continue
                if other == v.vote:
                    agreements += 1
                else:
                    disagreements += 1
        common = agreements + disagreements
        if common < MIN_COMMON_QUESTIONS:
            return None
        return CompatibilityScore(
            compatibility_score=_percent(agreements, common),
            common_questions=common,
            agreements=agreements,
            disagreements=disagreements,
        )

    def recent_questions(self, limit: int = 50, exclude_ids: Sequence[str] = ()) -> List[Question]:
        excluded = set(exclude_ids)
        with self._lock:
            # insertion order breaks timestamp ties
            ordered = [q for q in self._questions.values() if q.question_id not in excluded]
            ranked = sorted(enumerate(ordered), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
            return [q for _, q in ranked][: max(0, limit)]

    def get_question(self, question_id: str) -> Optional[Question]:
        with self._lock:
            return self._questions.get(question_id)

    def question_votes(self, question_id: str) -> List[Vote]:
        with self._lock:
            return [v for v in self._votes if v.question_id == question_id]

    def get_user_vote(self, question_id: str, user_id: str) -> Optional[Vote]:
        with self._lock:
            for v in self._votes:
                if v.question_id == question_id and v.user_id == user_id and not v.is_ai:
                    return v
            return None

    def get_ai_vote(self, question_id: str) -> Optional[Vote]:
        with self._lock:
            for v in self._votes:
                if v.question_id == question_id and v.is_ai:
                    return v
            return None

    def recent_comments(self, question_id: str, limit: int = 5, include_ai: bool = False) -> List[Comment]:
        with self._lock:
            comments = [
                c for c in self._comments if c.question_id == question_id and (include_ai or not c.is_ai)
            ]
            ranked = sorted(enumerate(comments), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
            return [c for _, c in ranked][: max(0, limit)]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def add_user(self, username: str, user_id: Optional[str] = None) -> UserProfile:
        with self._lock:
            user = UserProfile(user_id=user_id or uuid.uuid4().hex, username=username)
            self._users[user.user_id] = user
            return user

    def add_question(
        self,
        content: str,
        category: Optional[str] = None,
        author_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Question:
        with self._lock:
            question = Question(
                question_id=uuid.uuid4().hex,
                content=content,
                category=category,
                created_at=created_at or self._now(),
                author_id=author_id,
            )
            self._questions[question.question_id] = question
            return question

    def add_vote(
        self,
        user_id: str,
        question_id: str,
        vote: str,
        *,
        is_ai: bool = False,
        is_anonymous: bool = False,
        ai_reasoning: Optional[str] = None,
        ai_model: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Vote:
        with self._lock:
            if question_id not in self._questions:
                raise KeyError("Question not found")
            # one human vote per (user, question); re-voting replaces it
            self._votes = [
                v
                for v in self._votes
                if not (v.user_id == user_id and v.question_id == question_id and v.is_ai == is_ai)
            ]
            record = Vote(
                vote_id=uuid.uuid4().hex,
                user_id=user_id,
                question_id=question_id,
                vote=vote,  # type: ignore[arg-type]
                created_at=created_at or self._now(),
                is_ai=is_ai,
                is_anonymous=is_anonymous,
                ai_reasoning=ai_reasoning,
                ai_model=ai_model,
            )
            self._votes.append(record)
            return record

    def add_comment(
        self,
        question_id: str,
        user_id: str,
        content: str,
        *,
        is_ai: bool = False,
        ai_model: Optional[str] = None,
        mentions: Optional[List[str]] = None,
    ) -> Comment:
        with self._lock:
            if question_id not in self._questions:
                raise KeyError("Question not found")
            comment = Comment(
                comment_id=uuid.uuid4().hex,
                question_id=question_id,
                user_id=user_id,
                content=content,
                created_at=self._now(),
                is_ai=is_ai,
                ai_model=ai_model,
                mentions=list(mentions or []),
            )
            self._comments.append(comment)
            return comment


_store: PollStore | None = None


def get_poll_store() -> PollStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("ALIGNED_POLL_STORE_IMPL", "memory").lower()
    if impl != "memory":
        raise RuntimeError(f"Unsupported poll store implementation: {impl}")
    _store = InMemoryPollStore()
    return _store
