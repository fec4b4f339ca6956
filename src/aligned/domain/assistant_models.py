from __future__ import annotations

from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


Page = Literal["feed", "question", "profile", "other"]
Role = Literal["user", "assistant"]


class PageContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    page: Page = "other"
    question_id: Optional[str] = Field(default=None, alias="questionId")
    profile_id: Optional[str] = Field(default=None, alias="profileId")


class HistoryTurn(BaseModel):
    role: Role
    content: str


class AssistantRequest(BaseModel):
    # message is optional here so an empty/missing value maps to a 400, not a 422
    message: Optional[str] = None
    context: PageContext = Field(default_factory=PageContext)
    history: List[HistoryTurn] = Field(default_factory=list)


class VoteStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_votes: int = 0
    yes_count: int = 0
    no_count: int = 0
    unsure_count: int = 0
    yes_percent: int = 0
    no_percent: int = 0
    unsure_percent: int = 0


class SimilarUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    compatibility: float
    agreements: int
    disagreements: int


class RecommendedQuestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    content: str
    category: str
    total_votes: int
    yes_percent: int
    no_percent: int


class QuestionPageData(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str
    stats: VoteStats
    user_vote: Optional[str] = None
    top_comments: tuple[str, ...] = ()


class ProfilePageData(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    compatibility: Optional[float] = None
    agreements: Optional[int] = None
    disagreements: Optional[int] = None
    common_questions: Optional[int] = None


class ContextSnapshot(BaseModel):
    """Grounding facts for one assistant request; never persisted."""

    model_config = ConfigDict(frozen=True)

    user_name: str
    user_stats: VoteStats
    page: PageContext
    recent_questions: tuple[str, ...] = ()
    top_categories: tuple[str, ...] = ()
    similar_users: tuple[SimilarUser, ...] = ()
    recommended_questions: tuple[RecommendedQuestion, ...] = ()
    question_data: Optional[QuestionPageData] = None
    profile_data: Optional[ProfilePageData] = None


class InsightRequest(BaseModel):
    context: PageContext = Field(default_factory=PageContext)


class InsightResponse(BaseModel):
    insight: str


class AIVoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_id: str = Field(alias="questionId")


class AIVoteResponse(BaseModel):
    vote: str
    reason: Optional[str] = None
    created: bool = True
