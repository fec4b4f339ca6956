from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

from src.aligned.domain.assistant_models import PageContext
from src.aligned.services.insight import FALLBACK_INSIGHT, InsightService, current_streak

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _service(store, seed: int = 0) -> InsightService:
    return InsightService(store, rng=random.Random(seed), clock=lambda: NOW)


def _vote_daily(store, user_id: str, days: int, vote: str = "YES") -> None:
    for i in range(days):
        q = store.add_question(f"Day {i}?", "Life")
        store.add_vote(user_id, q.question_id, vote, created_at=NOW - timedelta(days=i))


def test_welcome_for_new_user(store):
    store.add_user("sam", user_id="sam")
    insight = _service(store).insight("sam", PageContext())
    assert insight.startswith("Hey sam! 👋 Welcome to Aligned")


def test_welcome_without_profile_uses_generic_name(store):
    candidates = _service(store).candidates("ghost", PageContext())
    assert candidates[0].startswith("Hey there!")


def test_week_long_streak_and_optimist(store):
    store.add_user("sam", user_id="sam")
    _vote_daily(store, "sam", 7)
    candidates = _service(store).candidates("sam", PageContext())
    assert any("7-day voting streak" in c for c in candidates)
    assert any("optimist" in c and "100%" in c for c in candidates)


def test_skeptic_and_page_prompts(store):
    store.add_user("sam", user_id="sam")
    _vote_daily(store, "sam", 1, vote="NO")
    page = PageContext(page="question", questionId="q1")
    candidates = _service(store).candidates("sam", page)
    assert any("skeptic" in c for c in candidates)
    assert any("explain why people voted" in c for c in candidates)


def test_balanced_voter(store):
    store.add_user("sam", user_id="sam")
    for i, vote in enumerate(["YES", "NO"]):
        q = store.add_question(f"Q{i}?")
        store.add_vote("sam", q.question_id, vote, created_at=NOW - timedelta(days=30))
    candidates = _service(store).candidates("sam", PageContext())
    assert candidates == ["⚖️ Perfectly balanced voting at 50% Yes / 50% No. Impressive!"]


def test_generic_pick_is_seeded(store):
    store.add_user("sam", user_id="sam")
    # 60/20/20: neither lopsided nor balanced
    votes = ["YES", "YES", "YES", "NO", "UNSURE"]
    for i, vote in enumerate(votes):
        q = store.add_question(f"Q{i}?")
        store.add_vote("sam", q.question_id, vote, created_at=NOW - timedelta(days=30))
    first = _service(store, seed=3).insight("sam", PageContext())
    second = _service(store, seed=3).insight("sam", PageContext())
    assert first == second
    assert "sam" in first
    assert first != FALLBACK_INSIGHT


def test_current_streak_edges():
    assert current_streak([], NOW) == 0
    assert current_streak([NOW - timedelta(days=1), NOW - timedelta(days=2)], NOW) == 2
    # broken before yesterday
    assert current_streak([NOW - timedelta(days=2), NOW - timedelta(days=3)], NOW) == 0
    # same-day duplicates count once, gap ends the run
    created = [NOW, NOW - timedelta(hours=1), NOW - timedelta(days=1), NOW - timedelta(days=3)]
    assert current_streak(created, NOW) == 2
