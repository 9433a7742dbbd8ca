"""Messaging client interface and loader."""

from relaybot.channels.base import Conversation, MessagingClient, load_client_factory

__all__ = ["Conversation", "MessagingClient", "load_client_factory"]
