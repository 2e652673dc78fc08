"""Two-party room calls: websocket signaling relay and aiortc negotiation client."""

__version__ = "0.1.0"
