"""In-memory stand-ins for the media, transport and relay collaborators."""
import asyncio
import itertools

from pyee.asyncio import AsyncIOEventEmitter

from roomcall import messages as m
from roomcall.errors import MediaAcquisitionError, TransportError
from roomcall.media import MediaStream

_ids = itertools.count(1)


async def settle(rounds=200):
    """Let every ready callback and task run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.id = f"{kind}-{next(_ids)}"
        self.enabled = True
        self.stopped = False

    def stop(self):
        self.stopped = True

    def __repr__(self):
        return f"FakeTrack({self.id})"


class FakeNetwork:
    """Shared by two transports so track ids in descriptions resolve to track objects."""

    def __init__(self):
        self.tracks = {}
        self.transports = []

    def transport(self):
        t = FakeTransport(self)
        self.transports.append(t)
        return t


class FakeTransport(AsyncIOEventEmitter):
    def __init__(self, network):
        super().__init__()
        self.network = network
        self.senders = []
        self.signaling_state = "stable"
        self.local_description = None
        self.remote_description = None
        self.remote = MediaStream()
        self.closed = False
        self.offers = 0
        self.rollbacks = 0

    @property
    def track_count(self):
        return len(self.senders)

    def has_track(self, track):
        return track in self.senders

    def add_track(self, track, stream=None):
        if self.closed:
            raise TransportError("closed")
        if track in self.senders:
            return False
        self.senders.append(track)
        self.network.tracks[track.id] = track
        if self.signaling_state == "stable" and self.remote_description is not None:
            self.emit("negotiationneeded")
        return True

    def _describe(self, kind):
        return {"type": kind, "sdp": f"v=0 fake {kind}", "tracks": [t.id for t in self.senders]}

    async def create_offer(self):
        if self.signaling_state not in ("stable", "have-local-offer"):
            raise TransportError(f"cannot offer in {self.signaling_state}")
        self.offers += 1
        self.signaling_state = "have-local-offer"
        self.local_description = self._describe("offer")
        return self.local_description

    async def create_answer(self, offer):
        if self.signaling_state != "stable":
            raise TransportError(f"cannot answer in {self.signaling_state}")
        self.remote_description = offer
        self._receive(offer)
        self.local_description = self._describe("answer")
        return self.local_description

    async def set_remote_description(self, description):
        if description["type"] == "answer" and self.signaling_state != "have-local-offer":
            raise TransportError("answer without an offer")
        self.remote_description = description
        self.signaling_state = "stable"
        self._receive(description)

    async def rollback(self):
        if self.signaling_state != "have-local-offer":
            raise TransportError("nothing to roll back")
        self.rollbacks += 1
        self.signaling_state = "stable"

    async def close(self):
        self.closed = True
        self.remove_all_listeners()

    def _receive(self, description):
        for track_id in description["tracks"]:
            track = self.network.tracks[track_id]
            if track not in self.remote.get_tracks():
                self.remote.add_track(track)
                self.emit("track", self.remote)


def fake_media(fail=False, gate=None):
    """Build an acquire_media coroutine function; ``gate`` (an Event) delays it."""
    calls = []

    async def acquire(audio=True, video=True):
        calls.append((audio, video))
        if gate is not None:
            await gate.wait()
        if fail:
            raise MediaAcquisitionError("permission denied")
        return MediaStream([FakeTrack("audio"), FakeTrack("video")])

    acquire.calls = calls
    return acquire


class Outbox:
    """``send`` callable recording what a session emits."""

    def __init__(self):
        self.sent = []

    async def __call__(self, message):
        self.sent.append(message)

    def last(self, cls=None):
        for message in reversed(self.sent):
            if cls is None or isinstance(message, cls):
                return message
        return None

    def of(self, cls):
        return [message for message in self.sent if isinstance(message, cls)]


class FakeSocket:
    """Server-side view of one websocket connection."""

    def __init__(self):
        self.inbox = asyncio.Queue()
        self.outbox = asyncio.Queue()
        self.sent = []

    async def send(self, raw):
        self.sent.append(raw)
        await self.outbox.put(raw)

    def received(self):
        return [m.decode(raw) for raw in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self.inbox.get()
        if raw is None:
            raise StopAsyncIteration
        return raw


class LoopbackRelay:
    """Client relay connected to an in-process SignalingServer."""

    def __init__(self, server):
        self.server = server
        self.sock = FakeSocket()
        self.task = None

    @property
    def identity(self):
        for identity, ws in self.server.connections.items():
            if ws is self.sock:
                return identity
        return None

    async def connect(self):
        self.task = asyncio.ensure_future(self.server.handler(self.sock))
        await settle(5)
        return self

    async def send(self, message):
        await self.sock.inbox.put(m.encode(message))

    async def __aiter__(self):
        while True:
            raw = await self.sock.outbox.get()
            if raw is None:
                return
            yield m.decode(raw)

    async def close(self):
        await self.sock.inbox.put(None)
        await self.sock.outbox.put(None)


def posted(q, kind=None):
    """Records put on a presentation queue, optionally only those of ``kind``."""
    return [r for r in list(q.queue) if kind is None or r["kind"] == kind]
