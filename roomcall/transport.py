# transport.py
# --------------------------------------------------------------------
# The media-transport endpoint a NegotiationSession drives: a thin
# wrapper around aiortc's RTCPeerConnection that speaks plain dict
# session descriptions and emits the events the session listens to:
#   "negotiationneeded"          a track was added after the handshake
#   "track" (MediaStream)        remote media arrived
#   "connectionstatechange" (str)
# --------------------------------------------------------------------

import logging

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter

from . import config
from .errors import TransportError
from .media import MediaStream

logger = logging.getLogger(__name__)

_FAILURES = (InvalidAccessError, InvalidStateError, ValueError)


def _as_dict(description):
    return {"sdp": description.sdp, "type": description.type}


class AiortcTransport(AsyncIOEventEmitter):
    def __init__(self, configuration=None):
        super().__init__()
        self.pc = RTCPeerConnection(configuration or config.rtc_configuration())
        self._senders = {}
        self._remote = MediaStream()

        @self.pc.on("track")
        def _on_track(track):
            logger.info("Remote %s track %s arrived", track.kind, track.id)
            self._remote.add_track(track)
            self.emit("track", self._remote)

        @self.pc.on("connectionstatechange")
        def _on_state():
            logger.info("Peer connection state: %s", self.pc.connectionState)
            self.emit("connectionstatechange", self.pc.connectionState)

    @property
    def signaling_state(self):
        return self.pc.signalingState

    @property
    def track_count(self):
        return len(self._senders)

    def has_track(self, track):
        return track in self._senders

    def add_track(self, track, stream=None):
        """Bind ``track`` for sending. Returns False if it is already bound."""
        if track in self._senders:
            return False
        try:
            self._senders[track] = self.pc.addTrack(track)
        except _FAILURES as e:
            raise TransportError(f"cannot add {track.kind} track: {e}") from e
        # aiortc has no negotiationneeded event of its own
        if self.pc.signalingState == "stable" and self.pc.remoteDescription is not None:
            self.emit("negotiationneeded")
        return True

    async def create_offer(self):
        try:
            await self.pc.setLocalDescription(await self.pc.createOffer())
        except _FAILURES as e:
            raise TransportError(f"cannot create offer: {e}") from e
        return _as_dict(self.pc.localDescription)

    async def create_answer(self, offer):
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(**offer))
            await self.pc.setLocalDescription(await self.pc.createAnswer())
        except (TypeError, *_FAILURES) as e:
            raise TransportError(f"cannot answer offer: {e}") from e
        return _as_dict(self.pc.localDescription)

    async def set_remote_description(self, description):
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(**description))
        except (TypeError, *_FAILURES) as e:
            raise TransportError(f"cannot apply remote description: {e}") from e

    async def rollback(self):
        # TODO: switch to setLocalDescription(type="rollback") once aiortc implements it
        raise TransportError("aiortc cannot roll back a pending local offer")

    async def close(self):
        self.remove_all_listeners()
        await self.pc.close()
