"""Failures a call can run into, from device access to routing."""


class CallError(Exception):
    """Base class for every roomcall failure."""


class MediaAcquisitionError(CallError):
    """Local camera/microphone could not be opened (denied or missing)."""


class RoomFullError(CallError):
    def __init__(self, room):
        super().__init__(f"room '{room}' is full")
        self.room = room


class StaleRouteError(CallError):
    """A message was addressed to an identity that is no longer in the sender's room."""

    def __init__(self, sender, to):
        super().__init__(f"no route from {sender} to {to}")
        self.sender = sender
        self.to = to


class NegotiationConflictError(CallError):
    """An offer arrived, or was requested, while another one is outstanding."""


class TransportError(CallError):
    """The peer connection failed or cannot perform the requested step."""


class SignalingProtocolError(CallError):
    """A relay frame could not be decoded."""
