"""Message-store health checks."""

from relaybot.health.staleness import REPEAT_THRESHOLD, StalenessDetector, StoreRecovery

__all__ = ["REPEAT_THRESHOLD", "StalenessDetector", "StoreRecovery"]
