"""Core in-memory primitives shared by the dispatcher."""

from relaybot.core.dedup import DedupLedger

__all__ = ["DedupLedger"]
