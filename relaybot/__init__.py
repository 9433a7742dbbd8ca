"""relaybot - XMTP front end for a backend agent service."""

__version__ = "0.1.0"
__logo__ = "📨"
