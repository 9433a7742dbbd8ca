"""Thread -> conversation routing state."""

from relaybot.session.mappings import ConversationMapping, MappingStats, MappingStore

__all__ = ["ConversationMapping", "MappingStats", "MappingStore"]
