"""Call client: signaling transport, media handles and the negotiation engine."""
from .engine import CallPhase, NegotiationEngine, PeerSession
from .errors import CallError, MediaAcquisitionError, TransportError
from .media import DeviceMediaSource, MediaHandle
from .peer import AiortcPeerConnection
from .transport import SignalingClient

__all__ = [
    "AiortcPeerConnection",
    "CallError",
    "CallPhase",
    "DeviceMediaSource",
    "MediaAcquisitionError",
    "MediaHandle",
    "NegotiationEngine",
    "PeerSession",
    "SignalingClient",
    "TransportError",
]
