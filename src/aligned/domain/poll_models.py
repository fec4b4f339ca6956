from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field


VoteType = Literal["YES", "NO", "UNSURE"]
VOTE_TYPES: tuple[str, ...] = ("YES", "NO", "UNSURE")


class UserProfile(BaseModel):
    user_id: str
    username: str


class Question(BaseModel):
    question_id: str
    content: str
    category: Optional[str] = None
    created_at: datetime
    author_id: Optional[str] = None


class Vote(BaseModel):
    vote_id: str
    user_id: str
    question_id: str
    vote: VoteType
    created_at: datetime
    is_ai: bool = False
    is_anonymous: bool = False
    ai_reasoning: Optional[str] = None
    ai_model: Optional[str] = None


class Comment(BaseModel):
    comment_id: str
    question_id: str
    user_id: str
    content: str
    created_at: datetime
    is_ai: bool = False
    ai_model: Optional[str] = None
    mentions: List[str] = Field(default_factory=list)


class CompatibilityScore(BaseModel):
    compatibility_score: float
    common_questions: int
    agreements: int
    disagreements: int
