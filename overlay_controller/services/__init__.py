from .event_client import EXPLANATION_CHANNEL, OCR_CHANNEL, HostEventClient, SubscriptionHandle
from .host_bridge import HostBridge, HostCommandService, read_port

__all__ = [
    "EXPLANATION_CHANNEL",
    "OCR_CHANNEL",
    "HostBridge",
    "HostCommandService",
    "HostEventClient",
    "SubscriptionHandle",
    "read_port",
]
