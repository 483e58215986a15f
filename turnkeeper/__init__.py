"""Turnkeeper — turn coordination for voice conversations.

The server side (``coordinator``) serialises listen → process → speak turns
for each WebSocket session; the client side (``client``) wraps speech capture
and audio playback so each turn yields exactly one utterance and one spoken
reply.
"""

__version__ = "0.1.0"
