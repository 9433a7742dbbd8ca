"""Group-chat policy: who the bot answers, and what it says when things fail."""

from __future__ import annotations

import re
from typing import Iterable

GREETING_PROMPT = (
    "User just added you to a new group chat. Please introduce yourself briefly "
    "and explain that in group chats you only respond when people reply to your "
    "messages. Keep it friendly and concise."
)
FALLBACK_GREETING = (
    "👋 Hello! I'm your A0x agent. In group chats, I only respond when you reply "
    "to my messages. Reply to this message to start interacting with me!"
)

TEXT_APOLOGY = "Sorry, I encountered an error processing your message. Please try again."
REPLY_APOLOGY = "Sorry, I encountered an error processing your reply. Please try again."
BATCH_APOLOGY = "Sorry, I had trouble processing that. Please try again."
ATTACHMENT_APOLOGY = "Sorry, I couldn't process that attachment. Please try again."

QUOTE_LIMIT = 200

# History windows read from the message store.
GREETING_HISTORY_LIMIT = 50
REPLY_CONTEXT_HISTORY_LIMIT = 100
REPLY_TARGET_HISTORY_LIMIT = 300


class MentionFilter:
    """Case-insensitive match against any of the configured mention tokens."""

    def __init__(self, mentions: Iterable[str]) -> None:
        self.mentions = [m for m in mentions if m]
        pattern = "|".join(re.escape(m) for m in self.mentions)
        self._regex = re.compile(pattern, re.IGNORECASE) if pattern else None

    def matches(self, text: str | None) -> bool:
        if not text or self._regex is None:
            return False
        return self._regex.search(text) is not None


def format_reply_context(quoted: str | None, reply: str) -> str:
    """Prefix *reply* with the message it quotes, cut to ``QUOTE_LIMIT`` chars."""
    if not quoted:
        return reply
    if len(quoted) > QUOTE_LIMIT:
        quoted = quoted[:QUOTE_LIMIT] + "..."
    return f'[Immediate parent message]: "{quoted}"\n\n{reply}'


def strip_bold(text: str) -> str:
    """Remove markdown bold markers, which XMTP clients render literally."""
    return text.replace("**", "")
