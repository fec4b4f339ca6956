"""Proactive one-line insight shown when the assistant panel opens.

Deterministic apart from the final pick, which uses an injectable RNG. No
model call and no quota.
"""

from __future__ import annotations

import logging
import random
from datetime import UTC, datetime, timedelta
from typing import Callable, Iterable, List, Optional

from ..domain.assistant_models import PageContext
from ..domain.poll_models import Vote
from ..infrastructure.poll_store import PollStore
from ..security.rate_limit import local_day_start
from .context import AI_PROFILE_ID
from .ranking import vote_stats

logger = logging.getLogger(__name__)

FALLBACK_INSIGHT = "Hey! 👋 Ask me anything about your voting patterns or this app!"
MILESTONES = (100, 250, 500, 1000)


def current_streak(created: Iterable[datetime], now: datetime) -> int:
    """Consecutive UTC days with at least one vote, ending today or yesterday."""

    days = sorted({c.astimezone(UTC).date() for c in created}, reverse=True)
    if not days:
        return 0
    today = now.astimezone(UTC).date()
    if days[0] not in (today, today - timedelta(days=1)):
        return 0
    streak = 1
    for prev, cur in zip(days, days[1:]):
        if (prev - cur).days != 1:
            break
        streak += 1
    return streak


class InsightService:
    def __init__(
        self,
        store: PollStore,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = lambda: datetime.now().astimezone(),
    ) -> None:
        self._store = store
        self._rng = rng or random.Random()
        self._clock = clock

    def candidates(self, user_id: str, page: PageContext) -> List[str]:
        name = self._store.get_username(user_id) or "there"
        votes: List[Vote] = self._store.list_user_votes(user_id)
        total = len(votes)
        if total == 0:
            return [
                f"Hey {name}! 👋 Welcome to Aligned. Start voting on some questions and I'll learn your "
                "patterns and find people who think like you!"
            ]

        now = self._clock()
        today_start = local_day_start(now.date(), now.tzinfo)
        week_start = today_start - timedelta(days=7)
        today_count = sum(1 for v in votes if v.created_at >= today_start)
        week_count = sum(1 for v in votes if v.created_at >= week_start)
        streak = current_streak((v.created_at for v in votes), now)
        stats = vote_stats(v.vote for v in votes)

        out: List[str] = []
        if streak >= 7:
            out.append(f"🔥 Wow, {name}! You're on a {streak}-day voting streak! That's impressive dedication.")
        elif streak >= 3:
            out.append(f"🔥 Nice! You're on a {streak}-day streak. Keep it going!")

        if today_count >= 10:
            out.append(f"⚡ You've cast {today_count} votes today! Someone's on a roll.")
        elif today_count >= 5:
            out.append(f"👍 Nice activity today - {today_count} votes and counting!")
        if week_count >= 50:
            out.append(f"📊 {week_count} votes this week! You're one of the most active users.")

        if stats.yes_percent >= 70:
            out.append(f"☀️ You're quite the optimist - voting Yes {stats.yes_percent}% of the time!")
        elif stats.no_percent >= 70:
            out.append(f"🤔 You're a skeptic at heart - voting No {stats.no_percent}% of the time!")
        elif abs(stats.yes_percent - 50) <= 5:
            out.append(
                f"⚖️ Perfectly balanced voting at {stats.yes_percent}% Yes / {stats.no_percent}% No. Impressive!"
            )

        if total in MILESTONES:
            out.append(f"🎉 Milestone alert! You just hit {total} total votes!")
        elif 100 <= total < 150:
            out.append("💯 You've crossed 100 votes! I'm starting to really understand your perspective.")

        if page.page == "question" and page.question_id:
            out.append("💭 Want me to explain why people voted the way they did on this question?")
        if page.page == "profile" and page.profile_id and page.profile_id != AI_PROFILE_ID:
            out.append("👀 I can tell you how you compare with this person - want to see where you agree and differ?")

        if not out:
            out.append(
                self._rng.choice(
                    [
                        f"Hey {name}! 👋 Ask me about your voting patterns, or who thinks like you!",
                        f"Hi {name}! With {total} votes, I've got some insights about your opinions. Ask away!",
                        f"Hey {name}! Want to know your most controversial votes, or find users who think like you?",
                    ]
                )
            )
        return out

    def insight(self, user_id: str, page: PageContext) -> str:
        options = self.candidates(user_id, page)
        choice = self._rng.choice(options)
        logger.debug("insight_selected", extra={"user_id": user_id, "candidates": len(options)})
        return choice
