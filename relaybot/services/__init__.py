"""Application services used by the HTTP surface."""

from relaybot.services.reply import ReplyResult, ReplyService

__all__ = ["ReplyResult", "ReplyService"]
