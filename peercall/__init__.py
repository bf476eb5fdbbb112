"""Two-party WebRTC calls: a room signaling relay and a client negotiation engine."""

__version__ = "0.1.0"
