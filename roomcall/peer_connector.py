# peer_connector.py
# --------------------------------------------------------------------
# Client side of a room call: reads relay messages, keeps one
# NegotiationSession per remote participant and forwards each message
# to the session it concerns.
# --------------------------------------------------------------------

import logging

import websockets
from websockets.exceptions import ConnectionClosed

from . import config
from . import messages as m
from .errors import CallError, RoomFullError, SignalingProtocolError
from .media import acquire_local_media, acquire_screen
from .negotiation import NegotiationSession, Phase
from .transport import AiortcTransport

logger = logging.getLogger(__name__)


class WebSocketRelay:
    """Relay channel over a single websocket to the signaling server."""

    def __init__(self, url=None):
        self.url = url or config.SIGNAL_URL
        self.ws = None

    async def connect(self):
        self.ws = await websockets.connect(self.url)
        logger.info("Connected to signalling server %s", self.url)
        return self

    async def send(self, message):
        if self.ws is None:
            raise ConnectionError("relay is not connected")
        await self.ws.send(m.encode(message))

    async def __aiter__(self):
        async for raw in self.ws:
            try:
                yield m.decode(raw)
            except SignalingProtocolError as e:
                logger.warning("Skipping bad relay frame: %s", e)

    async def close(self):
        if self.ws is not None:
            await self.ws.close()
        self.ws = None


class PeerConnector:
    def __init__(self, relay, email, gui_q=None, transport_factory=AiortcTransport,
                 acquire_media=acquire_local_media, **session_options):
        self.relay = relay
        self.email = email
        self.gui_q = gui_q
        self.room = None
        self.joined = False
        self.subscribed = False
        self.remote_id = None
        self.remote_email = None
        self.sessions = {}
        self._transport_factory = transport_factory
        self._acquire_media = acquire_media
        self._session_options = session_options

    # ─────────────────────────── room ───────────────────────────

    async def join(self, room):
        self.room = str(room)
        self.joined = False
        self.subscribed = True
        self._post("status", f"Joining room '{self.room}'…")
        await self.relay.send(m.Join(self.email, self.room))

    async def leave(self):
        """Hang up, stop listening and give the room seat back."""
        await self.hang_up()
        if self.subscribed:
            self.subscribed = False
            await self.relay.send(m.Leave())
        self.room = None
        self.joined = False
        self.remote_id = self.remote_email = None
        self._post("status", "Left the room")

    async def run(self):
        """Dispatch relay messages until the connection ends."""
        self._post("status", "Listening for room events")
        try:
            async for message in self.relay:
                await self.handle(message)
        except ConnectionClosed as e:
            self._post("status", f"Signalling error: {e}")
        finally:
            await self.hang_up()
            self._post("status", "Signalling connection closed")

    # ─────────────────────────── dispatch ───────────────────────────

    async def handle(self, msg):
        if not self.subscribed:
            logger.debug("Not in a room, dropping %r", msg)
            return

        if isinstance(msg, m.Joined):
            self.joined = True
            self.room = msg.room
            self._post("joined", msg.room)
        elif isinstance(msg, m.UserJoined):
            logger.info("Email %s joined room", msg.email)
            self.remote_id, self.remote_email = msg.id, msg.email
            self._post("user_joined", {"email": msg.email, "id": msg.id})
        elif isinstance(msg, m.IncomingCall):
            await self._incoming_call(msg)
        elif isinstance(msg, m.CallAccepted):
            session = self._existing(msg.sender, msg)
            if session:
                await session.handle_call_accepted(msg.answer)
        elif isinstance(msg, m.NegotiationOffer):
            session = self._existing(msg.sender, msg)
            if session:
                await session.handle_negotiation_offer(msg.offer)
        elif isinstance(msg, m.NegotiationAnswer):
            session = self._existing(msg.sender, msg)
            if session:
                await session.handle_negotiation_answer(msg.answer)
        elif isinstance(msg, m.Busy):
            session = self._existing(msg.sender, msg)
            if session:
                await session.handle_busy()
        elif isinstance(msg, m.PeerLeft):
            await self._peer_left(msg.id)
        elif isinstance(msg, m.RoomFull):
            self.subscribed = False
            self.room = None
            self._post("error", str(RoomFullError(msg.room)))
        elif isinstance(msg, m.ProtocolError):
            logger.warning("Server rejected a frame: %s", msg.message)
            self._post("error", msg.message)
        else:
            logger.warning("Unexpected message %r", msg)

    async def _incoming_call(self, msg):
        busy = self.active_session
        if busy is not None and busy.remote_id != msg.sender:
            logger.info("Already in a call with %s, refusing %s", busy.remote_id, msg.sender)
            await self.relay.send(m.Busy(to=msg.sender))
            return
        self.remote_id = msg.sender
        logger.info("Incoming call from %s", msg.sender)
        await self._session(msg.sender).handle_incoming_call(msg.offer)

    async def _peer_left(self, identity):
        logger.info("%s left the room", identity)
        session = self.sessions.pop(identity, None)
        if session is not None:
            await session.close()
        if self.remote_id == identity:
            self.remote_id = self.remote_email = None
        self._post("peer_left", identity)

    # ─────────────────────────── actions ───────────────────────────

    async def call(self):
        if self.remote_id is None:
            raise CallError("nobody else is in the room yet")
        return await self._session(self.remote_id).initiate_call()

    async def hang_up(self):
        sessions, self.sessions = list(self.sessions.values()), {}
        for session in sessions:
            await session.close()

    def share_stream(self):
        session = self.active_session
        return session.share_stream() if session else 0

    def toggle_mic(self):
        session = self.active_session
        return session.toggle("audio") if session else False

    def toggle_video(self):
        session = self.active_session
        return session.toggle("video") if session else False

    async def share_screen(self, display=":0.0"):
        session = self.active_session
        if session is None or session.phase is not Phase.CONNECTED:
            raise CallError("screen sharing needs a connected call")
        return session.add_track(await acquire_screen(display))

    @property
    def active_session(self):
        for session in self.sessions.values():
            if session.phase is not Phase.CLOSED:
                return session
        return None

    # ─────────────────────────── helpers ───────────────────────────

    def _session(self, remote_id):
        session = self.sessions.get(remote_id)
        if session is None or session.phase is Phase.CLOSED:
            session = NegotiationSession(
                remote_id, self.relay.send,
                transport_factory=self._transport_factory,
                acquire_media=self._acquire_media,
                post=self._post,
                **self._session_options,
            )
            self.sessions[remote_id] = session
        return session

    def _existing(self, remote_id, msg):
        session = self.sessions.get(remote_id)
        if session is None or session.phase is Phase.CLOSED:
            logger.info("No session with %s, dropping '%s'", remote_id, m.event_of(msg))
            return None
        return session

    def _post(self, kind, data=""):
        if self.gui_q is not None:
            self.gui_q.put({"kind": kind, "data": data})
