"""Exception types shared across relaybot."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relaybot errors."""


class BackendError(RelayError):
    """The backend agent API failed, timed out, or returned an unsuccessful body."""


class AttachmentError(RelayError):
    """A remote attachment could not be downloaded or decrypted."""


class ClientFactoryError(RelayError):
    """The configured messaging client factory could not be loaded."""


class StoreResetRequired(RelayError):
    """The local message store looks stuck; the process must restart."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"message store stuck for conversation {conversation_id}")
        self.conversation_id = conversation_id
