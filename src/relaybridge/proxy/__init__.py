"""Relay proxy exposing a chat-completion style API atop a single duplex worker.

Requests are correlated over one WebSocket channel; credentials rotate on
upstream failure.
"""

__all__ = []
