"""Client-side failures surfaced by the call engine."""
from __future__ import annotations


class CallError(RuntimeError):
    """Base class for call client errors."""


class MediaAcquisitionError(CallError):
    """Raised when the camera or microphone cannot be opened."""


class TransportError(CallError):
    """Raised when the signaling connection cannot be used."""
