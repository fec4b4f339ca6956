"""Prompt construction for the assistant, comment-mention and vote flows.

Every fact the model may cite (usernames, percentages, question texts) is
enumerated in the prompt. Builders are pure: same inputs, same messages.
"""

from __future__ import annotations

from typing import Dict, List, Sequence

from ..domain.assistant_models import ContextSnapshot, HistoryTurn, VoteStats

NO_CATEGORIES = "Not enough data yet"
NO_RECENT_VOTES = "No recent votes"
NO_SIMILAR_USERS = "Not enough shared votes with other users yet to find matches."
NO_RECOMMENDED_QUESTIONS = "No unanswered questions found."
EMPTY_SIMILAR_USERS_RULE = (
    "The SIMILAR USERS list is empty: if asked who thinks like them, say there is not enough "
    "shared voting data yet. Do NOT invent usernames."
)
EMPTY_RECOMMENDED_RULE = (
    "The RECOMMENDED QUESTIONS list is empty: if asked for recommendations, say there are no "
    "unanswered questions right now. Do NOT invent questions."
)

_CRITICAL_RULES = [
    "CRITICAL RULES - YOU MUST FOLLOW THESE:",
    '1. NEVER invent or make up usernames. Only mention users listed in "SIMILAR USERS" below.',
    "2. NEVER fabricate statistics, percentages, or vote counts. Only use numbers provided in this prompt.",
    "3. NEVER invent question content. Only reference questions listed in this prompt.",
    "4. If asked about something you don't have data for, honestly say \"I don't have that information\" and suggest what you CAN help with.",
    '5. When recommending questions, ONLY suggest questions from "RECOMMENDED QUESTIONS" below.',
    '6. When discussing similar users, ONLY mention users from "SIMILAR USERS" below.',
]

_PERSONALITY = [
    "Your personality:",
    "- Friendly, casual, and slightly witty",
    "- Insightful but not preachy",
    "- Speak conversationally, like a thoughtful friend",
    "- Keep responses concise (2-4 sentences usually)",
    "- Use data to back up insights when relevant",
    "- Be encouraging and curious",
]

_CLOSING_RULES = [
    "REMEMBER - CRITICAL:",
    "- When asked \"who thinks like me\" or about similar users, ONLY mention users from SIMILAR USERS above. If the list is empty, say you need more shared votes to find matches.",
    "- When asked to recommend questions, ONLY suggest from RECOMMENDED QUESTIONS above. If empty, say there are no unanswered questions.",
    "- Use EXACT usernames with @ prefix (e.g., @username) when mentioning users.",
    "- If asked about something not in this prompt, say \"I don't have that data yet\" rather than making it up.",
    "- If they ask to argue the other side, take the opposite position playfully.",
    "- Keep it fun and engaging!",
]


def _fmt_percent(value: float) -> str:
    return f"{value:g}%"


def _tally_line(stats: VoteStats) -> str:
    return (
        f"{stats.yes_percent}% Yes, {stats.no_percent}% No, {stats.unsure_percent}% Not Sure "
        f"({stats.total_votes} total votes)"
    )


class PromptBuilder:
    def __init__(self, history_window: int = 10) -> None:
        self.history_window = history_window

    def system_prompt(self, data: ContextSnapshot) -> str:
        name = data.user_name
        stats = data.user_stats
        lines: List[str] = [
            "You are the AI Assistant for Aligned, a polling app where users vote Yes, No, or Not Sure on "
            "questions to discover opinions and find common ground with others.",
            "",
            *_CRITICAL_RULES,
            "",
            *_PERSONALITY,
            "",
            f"About the current user ({name}):",
            f"- They've cast {stats.total_votes} votes total",
            f"- Voting pattern: {stats.yes_percent}% Yes, {stats.no_percent}% No, {stats.unsure_percent}% Not Sure",
            f"- Top categories they engage with: {', '.join(data.top_categories) or NO_CATEGORIES}",
            "",
            "Recent questions they've voted on:",
        ]
        if data.recent_questions:
            lines.extend(f'- "{q}"' for q in data.recent_questions)
        else:
            lines.append(NO_RECENT_VOTES)

        lines.append("")
        lines.append(f"SIMILAR USERS (users who think like {name}):")
        if data.similar_users:
            lines.extend(
                f"- @{u.username}: {_fmt_percent(u.compatibility)} compatible "
                f"({u.agreements} agreements, {u.disagreements} disagreements)"
                for u in data.similar_users
            )
        else:
            lines.append(NO_SIMILAR_USERS)
            lines.append(EMPTY_SIMILAR_USERS_RULE)

        lines.append("")
        lines.append(f"RECOMMENDED QUESTIONS (unanswered questions {name} might like):")
        if data.recommended_questions:
            lines.extend(
                f'- "{q.content}" [{q.category}] - {q.total_votes} votes, {q.yes_percent}% Yes / {q.no_percent}% No'
                for q in data.recommended_questions
            )
        else:
            lines.append(NO_RECOMMENDED_QUESTIONS)
            lines.append(EMPTY_RECOMMENDED_RULE)

        lines.extend(self._page_block(data))
        lines.append("")
        lines.extend(_CLOSING_RULES)
        return "\n".join(lines)

    def _page_block(self, data: ContextSnapshot) -> List[str]:
        page = data.page.page
        if page == "question" and data.question_data:
            q = data.question_data
            block = [
                "",
                "CURRENT CONTEXT: The user is viewing a specific question.",
                f'Question: "{q.content}"',
                f"Current results: {_tally_line(q.stats)}",
                f"User's vote: {q.user_vote or 'Has not voted yet'}",
                "",
                "Recent comments on this question:",
            ]
            block.extend(q.top_comments or ["No comments yet"])
            block.append("")
            block.append('When the user asks about "this question" or "the debate", refer to this specific question.')
            return block
        if page == "profile" and data.profile_data:
            p = data.profile_data
            compat = _fmt_percent(p.compatibility) if p.compatibility is not None else "Not enough shared votes"
            return [
                "",
                "CURRENT CONTEXT: The user is viewing someone else's profile.",
                f"Profile they're viewing: {p.username}",
                f"Compatibility score: {compat}",
                f"Questions in common: {p.common_questions or 0}",
                f"Agreements: {p.agreements or 0}",
                f"Disagreements: {p.disagreements or 0}",
                "",
                f'When the user asks about "this person" or "we", refer to their comparison with {p.username}.',
            ]
        if page == "feed":
            return [
                "",
                "CURRENT CONTEXT: The user is browsing the main feed.",
                "Help them discover interesting questions, understand their voting patterns, or find like-minded users.",
            ]
        return []

    def build(self, data: ContextSnapshot, history: Sequence[HistoryTurn], message: str) -> List[Dict[str, str]]:
        msgs = [{"role": "system", "content": self.system_prompt(data)}]
        window = list(history)[-self.history_window :] if self.history_window > 0 else []
        for turn in window:
            msgs.append({"role": turn.role, "content": turn.content})
        msgs.append({"role": "user", "content": message})
        return msgs


COMMENT_SYSTEM_PROMPT = "\n".join(
    [
        "You are a thoughtful AI assistant on a polling app called Aligned. Users ask yes/no questions and vote on them.",
        "",
        "Your style:",
        "- Be conversational and engaging, like a thoughtful friend",
        "- Share a perspective with nuance - don't be preachy or lecture",
        "- Acknowledge complexity when it exists",
        "- Be witty when appropriate, but not forced",
        "- Keep responses to 1-2 sentences max",
        "- Sometimes end with a thought-provoking question",
        "- Reference the vote split if it's interesting",
        "- Match the tone of the question (serious for serious, playful for playful)",
        "",
        "Only cite the vote numbers and comments given to you; never invent other users or statistics.",
        "Important: Never refuse to engage. This is a casual polling app, not a serious advice platform. Have fun with it.",
    ]
)


def strip_ai_mention(text: str) -> str:
    return text.replace("@AI", "").strip()


def build_comment_messages(
    question: str,
    stats: VoteStats,
    comments: Sequence[str],
    user_query: str,
) -> List[Dict[str, str]]:
    """Messages for an @AI mention inside a question's comment thread.

    ``comments`` are pre-rendered ``- author: "text"`` lines, oldest first.
    """

    user_prompt = "\n".join(
        [
            f'Question: "{question}"',
            "",
            f"Current votes ({stats.total_votes} total):",
            f"- Yes: {stats.yes_percent}%",
            f"- No: {stats.no_percent}%",
            f"- Not Sure: {stats.unsure_percent}%",
            "",
            "Recent comments:",
            "\n".join(comments) if comments else "No comments yet.",
            "",
            f'User asks: "{strip_ai_mention(user_query)}"',
            "",
            "Respond thoughtfully in 1-2 sentences.",
        ]
    )
    return [
        {"role": "system", "content": COMMENT_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def build_vote_messages(question: str) -> List[Dict[str, str]]:
    prompt = "\n".join(
        [
            "Vote on this yes/no poll question.",
            'Reply with a JSON object {"vote": "YES" | "NO" | "UNSURE", "reason": "<one sentence, under 25 words>"}.',
            "If you cannot produce JSON, respond with EXACTLY two lines:",
            "",
            "Line 1: VOTE: followed by YES, NO, or UNSURE",
            "Line 2: REASON: followed by a one-sentence explanation (under 25 words)",
            "",
            f'Question: "{question}"',
        ]
    )
    return [{"role": "user", "content": prompt}]
