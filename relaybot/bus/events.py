"""Event types emitted by the messaging client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from relaybot.channels.base import Conversation


class EventKind(str, Enum):
    TEXT = "text"
    REPLY = "reply"
    ATTACHMENT = "attachment"
    CONVERSATION = "conversation"  # new DM or group
    GROUP_UPDATE = "group_update"  # membership / metadata change
    UNKNOWN = "unknown"
    UNHANDLED_ERROR = "unhandled_error"
    START = "start"
    STOP = "stop"


# Content type ids as reported by the protocol codecs.
CONTENT_TEXT = "text"
CONTENT_REPLY = "reply"
CONTENT_REMOTE_ATTACHMENT = "remoteStaticAttachment"
CONTENT_GROUP_UPDATED = "group_updated"


@dataclass
class ReplyContent:
    """A reply to an earlier message."""

    reference: str  # id of the message being replied to
    content: Any  # usually the reply text
    reference_inbox_id: str | None = None  # inbox of the referenced message's sender


@dataclass
class RemoteAttachment:
    """Encrypted attachment pointer; the payload lives at ``url``."""

    url: str
    content_digest: str = ""
    secret: bytes = b""
    salt: bytes = b""
    nonce: bytes = b""
    scheme: str = "https://"
    content_length: int | None = None
    filename: str | None = None


@dataclass
class Attachment:
    """A downloaded and decrypted attachment."""

    filename: str
    mime_type: str
    data: bytes


@dataclass
class GroupUpdate:
    initiated_by_inbox_id: str = ""
    added_inbox_ids: list[str] = field(default_factory=list)
    removed_inbox_ids: list[str] = field(default_factory=list)
    metadata_field_changes: list[str] = field(default_factory=list)  # changed field names


@dataclass
class InboundMessage:
    """A message as delivered by the messaging client."""

    id: str
    sender_inbox_id: str
    content: Any  # str | ReplyContent | RemoteAttachment | GroupUpdate | other
    content_type: str = CONTENT_TEXT
    sent_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def has_content(self) -> bool:
        return self.content is not None and self.content != ""

    @property
    def text(self) -> str:
        """Plain text for text messages and replies; empty otherwise."""
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, ReplyContent) and isinstance(self.content.content, str):
            return self.content.content
        return ""


@dataclass
class InboundEvent:
    kind: EventKind
    conversation: Conversation | None = None
    message: InboundMessage | None = None
    error: BaseException | None = None

    @property
    def message_id(self) -> str | None:
        return self.message.id if self.message else None

    @property
    def conversation_id(self) -> str | None:
        return self.conversation.id if self.conversation else None
