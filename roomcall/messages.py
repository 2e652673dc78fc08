"""
Signaling messages exchanged through the relay.

Each message is a small dataclass; the relay frame on the wire is
``{"event": <name>, "data": {...}}`` using the field names the browser
client speaks (``from``, ``to``, ``offer``, ``ans``). Messages addressed to
a peer carry ``to`` when sent by a client and ``sender`` (wire ``from``)
once the relay has stamped them.
"""
import json
from dataclasses import dataclass, fields
from typing import ClassVar, Optional

from .errors import SignalingProtocolError

ROOM_JOIN = "room:join"
ROOM_LEAVE = "room:leave"
ROOM_FULL = "room:full"
USER_JOINED = "user:joined"
USER_CALL = "user:call"
INCOMING_CALL = "incomming:call"
CALL_ACCEPTED = "call:accepted"
CALL_BUSY = "call:busy"
NEGO_NEEDED = "peer:nego:needed"
NEGO_DONE = "peer:nego:done"
NEGO_FINAL = "peer:nego:final"
PEER_LEFT = "peer:left"
ERROR = "error"

# attribute name -> key used in the JSON payload
_WIRE_KEYS = {"sender": "from", "answer": "ans"}


@dataclass
class Join:
    EVENT: ClassVar[str] = ROOM_JOIN
    email: str
    room: str


@dataclass
class Joined:
    EVENT: ClassVar[str] = ROOM_JOIN
    room: str


@dataclass
class Leave:
    EVENT: ClassVar[str] = ROOM_LEAVE


@dataclass
class UserJoined:
    EVENT: ClassVar[str] = USER_JOINED
    email: str
    id: str


@dataclass
class CallOffer:
    EVENT: ClassVar[str] = USER_CALL
    to: str
    offer: dict


@dataclass
class IncomingCall:
    EVENT: ClassVar[str] = INCOMING_CALL
    sender: str
    offer: dict


@dataclass
class CallAccepted:
    EVENT: ClassVar[str] = CALL_ACCEPTED
    answer: dict
    to: Optional[str] = None
    sender: Optional[str] = None


@dataclass
class NegotiationOffer:
    EVENT: ClassVar[str] = NEGO_NEEDED
    offer: dict
    to: Optional[str] = None
    sender: Optional[str] = None


@dataclass
class NegotiationAnswer:
    # peer:nego:done on the way in, peer:nego:final on the way out
    EVENT: ClassVar[str] = NEGO_DONE
    answer: dict
    to: Optional[str] = None
    sender: Optional[str] = None


@dataclass
class Busy:
    EVENT: ClassVar[str] = CALL_BUSY
    to: Optional[str] = None
    sender: Optional[str] = None


@dataclass
class PeerLeft:
    EVENT: ClassVar[str] = PEER_LEFT
    id: str


@dataclass
class RoomFull:
    EVENT: ClassVar[str] = ROOM_FULL
    room: str


@dataclass
class ProtocolError:
    EVENT: ClassVar[str] = ERROR
    message: str


_BY_EVENT = {
    USER_JOINED: UserJoined,
    USER_CALL: CallOffer,
    INCOMING_CALL: IncomingCall,
    CALL_ACCEPTED: CallAccepted,
    CALL_BUSY: Busy,
    NEGO_NEEDED: NegotiationOffer,
    NEGO_DONE: NegotiationAnswer,
    NEGO_FINAL: NegotiationAnswer,
    ROOM_LEAVE: Leave,
    ROOM_FULL: RoomFull,
    PEER_LEFT: PeerLeft,
    ERROR: ProtocolError,
}

# messages a client may send; everything else is relay-originated
CLIENT_MESSAGES = (Join, Leave, CallOffer, CallAccepted, NegotiationOffer, NegotiationAnswer, Busy)


def event_of(message) -> str:
    if isinstance(message, NegotiationAnswer) and message.to is None:
        return NEGO_FINAL
    return message.EVENT


def to_frame(message) -> dict:
    data = {}
    for f in fields(message):
        value = getattr(message, f.name)
        if value is not None:
            data[_WIRE_KEYS.get(f.name, f.name)] = value
    return {"event": event_of(message), "data": data}


def from_frame(frame) -> object:
    """Build the message a decoded relay frame describes.

    Raises SignalingProtocolError for unknown events or missing fields.
    """
    if not isinstance(frame, dict):
        raise SignalingProtocolError("relay frame must be a JSON object")
    event = frame.get("event")
    data = frame.get("data") or {}
    if not isinstance(data, dict):
        raise SignalingProtocolError(f"payload of '{event}' must be a JSON object")

    if event == ROOM_JOIN:
        cls = Join if "email" in data else Joined
    else:
        cls = _BY_EVENT.get(event)
    if cls is None:
        raise SignalingProtocolError(f"unknown event '{event}'")

    kwargs = {}
    for f in fields(cls):
        key = _WIRE_KEYS.get(f.name, f.name)
        if key in data:
            kwargs[f.name] = data[key]
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise SignalingProtocolError(f"malformed '{event}' payload: {e}") from e


def encode(message) -> str:
    return json.dumps(to_frame(message))


def decode(raw) -> object:
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise SignalingProtocolError(f"relay frame is not JSON: {e}") from e
    return from_frame(frame)
