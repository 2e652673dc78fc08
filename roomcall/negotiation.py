"""
Per-peer negotiation state machine.

A :class:`NegotiationSession` owns one transport endpoint and walks it through
offer/answer, renegotiation and teardown::

    caller:  IDLE -> LOCAL_OFFER_PENDING  -> CONNECTED <-> RENEGOTIATING
    callee:  IDLE -> REMOTE_OFFER_PENDING -> CONNECTED <-> RENEGOTIATING
    any state -> CLOSED (terminal)

All handlers run on one event loop; every ``await`` is a point where the
session may have been closed or moved on, so each handler re-checks the phase
after awaiting and gives up quietly when it no longer matches.

Competing offers:

* a renegotiation trigger while an offer is outstanding is queued and sent
  once the outstanding offer settles;
* two initial offers crossing each other are both refused with ``call:busy``;
  each side drops its endpoint and re-offers after a random back-off;
* two renegotiation offers crossing each other are settled in favour of the
  original caller: the callee rolls its own offer back and answers.
"""
import asyncio
import enum
import logging
import random

from . import config
from . import messages as m
from .errors import CallError, MediaAcquisitionError, NegotiationConflictError, TransportError
from .media import acquire_local_media
from .transport import AiortcTransport

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "idle"
    LOCAL_OFFER_PENDING = "local-offer-pending"
    REMOTE_OFFER_PENDING = "remote-offer-pending"
    CONNECTED = "connected"
    RENEGOTIATING = "renegotiating"
    CLOSED = "closed"


# phases guarded by the watchdog
PENDING = (Phase.LOCAL_OFFER_PENDING, Phase.REMOTE_OFFER_PENDING, Phase.RENEGOTIATING)


def _ignore_post(kind, data=""):
    pass


class NegotiationSession:
    def __init__(self, remote_id, send, transport_factory=AiortcTransport,
                 acquire_media=acquire_local_media, post=None,
                 timeout=None, backoff=None, retry_limit=None):
        """
        Args:
            remote_id: relay identity of the peer this session talks to.
            send: coroutine function taking one outbound signaling message.
            transport_factory: builds a fresh transport endpoint.
            acquire_media: coroutine function returning the local MediaStream.
            post: callable(kind, data) feeding the presentation layer.
            timeout: seconds a pending phase may last before the session is closed.
            backoff: upper bound of the random delay before re-offering after a refusal.
            retry_limit: offers attempted before giving up on a busy peer.
        """
        self.remote_id = remote_id
        self.phase = Phase.IDLE
        self.initiator = False
        self.transport = None
        self.local_stream = None
        self.remote_stream = None
        self.local_description = None
        self.remote_description = None

        self.timeout = config.NEGOTIATION_TIMEOUT if timeout is None else timeout
        self.backoff = config.RETRY_BACKOFF if backoff is None else backoff
        self.retry_limit = config.RETRY_LIMIT if retry_limit is None else retry_limit

        self._send = send
        self._post = post or _ignore_post
        self._transport_factory = transport_factory
        self._acquire_media = acquire_media
        self._media_task = None
        self._attempts = 0
        self._renegotiate_queued = False
        self._expect_busy = False
        self._watchdog = None
        self._retry = None
        self._tasks = set()

    def __repr__(self):
        return f"NegotiationSession({self.remote_id!r}, {self.phase.value})"

    # ───────────────────────────── caller ─────────────────────────────

    async def initiate_call(self):
        """Acquire media, bind it and send ``user:call`` to the peer.

        Returns True once the offer is sent, False when the attempt was
        overtaken (an incoming call won, or the session closed meanwhile).
        Raises MediaAcquisitionError if the devices cannot be opened and
        NegotiationConflictError if a call is already under way.
        """
        if self.phase is not Phase.IDLE:
            raise NegotiationConflictError(f"cannot start a call while {self.phase.value}")
        self._attempts = 0
        self._cancel_retry()
        return await self._offer_call()

    async def _offer_call(self):
        try:
            await self._ensure_media()
        except MediaAcquisitionError as e:
            self._post("error", f"Could not access camera/microphone: {e}")
            raise
        if self.phase is not Phase.IDLE:
            logger.info("Call to %s overtaken while acquiring media (%s)",
                        self.remote_id, self.phase.value)
            return False

        self.initiator = True
        self._attempts += 1
        self._open_transport()
        self.share_stream()
        self._set_phase(Phase.LOCAL_OFFER_PENDING)
        try:
            offer = await self.transport.create_offer()
        except TransportError as e:
            await self._fail(e)
            return False
        if self.phase is not Phase.LOCAL_OFFER_PENDING:
            return False
        self.local_description = offer
        await self._send(m.CallOffer(self.remote_id, offer))
        if self.phase is not Phase.LOCAL_OFFER_PENDING:
            return False
        self._post("status", "Calling…")
        return True

    async def handle_call_accepted(self, answer):
        if self.phase is not Phase.LOCAL_OFFER_PENDING:
            logger.warning("Ignoring answer from %s while %s", self.remote_id, self.phase.value)
            return False
        try:
            await self.transport.set_remote_description(answer)
        except TransportError as e:
            await self._fail(e)
            return False
        if self.phase is not Phase.LOCAL_OFFER_PENDING:
            return False
        self.remote_description = answer
        self._set_phase(Phase.CONNECTED)
        self._post("status", "Call accepted")
        self.share_stream()
        self._flush_queued()
        return True

    # ───────────────────────────── callee ─────────────────────────────

    async def handle_incoming_call(self, offer):
        """Answer an offer from the peer, or refuse it with ``call:busy``."""
        if self.phase is Phase.LOCAL_OFFER_PENDING:
            logger.info("Offers crossed with %s, refusing theirs", self.remote_id)
            await self._send(m.Busy(to=self.remote_id))
            return False
        if self.phase is not Phase.IDLE:
            logger.info("Refusing call from %s while %s", self.remote_id, self.phase.value)
            await self._send(m.Busy(to=self.remote_id))
            return False

        self._cancel_retry()
        self.initiator = False
        self._set_phase(Phase.REMOTE_OFFER_PENDING)
        self._post("status", "Incoming call")
        try:
            await self._ensure_media()
        except MediaAcquisitionError as e:
            self._post("error", f"Could not access camera/microphone: {e}")
            if self.phase is Phase.REMOTE_OFFER_PENDING:
                self._set_phase(Phase.IDLE)
                await self._send(m.Busy(to=self.remote_id))
            return False
        if self.phase is not Phase.REMOTE_OFFER_PENDING:
            return False

        self._open_transport()
        self.share_stream()
        try:
            answer = await self.transport.create_answer(offer)
        except TransportError as e:
            await self._fail(e)
            return False
        if self.phase is not Phase.REMOTE_OFFER_PENDING:
            return False
        self.remote_description = offer
        self.local_description = answer
        await self._send(m.CallAccepted(answer, to=self.remote_id))
        if self.phase is not Phase.REMOTE_OFFER_PENDING:
            # hung up while the answer was on its way
            return False
        self._set_phase(Phase.CONNECTED)
        self._flush_queued()
        return True

    # ─────────────────────────── renegotiation ───────────────────────────

    async def renegotiate(self):
        """Send a fresh offer for the current transport state (``peer:nego:needed``)."""
        if self.phase is not Phase.CONNECTED or self._expect_busy:
            if self.phase not in (Phase.IDLE, Phase.CLOSED):
                self._renegotiate_queued = True
            return False
        self._set_phase(Phase.RENEGOTIATING)
        try:
            offer = await self.transport.create_offer()
        except TransportError as e:
            await self._fail(e)
            return False
        if self.phase is not Phase.RENEGOTIATING:
            return False
        self.local_description = offer
        await self._send(m.NegotiationOffer(offer, to=self.remote_id))
        return True

    async def handle_negotiation_offer(self, offer):
        if self.phase is Phase.RENEGOTIATING:
            if self.initiator:
                logger.info("Renegotiation offers crossed with %s, keeping ours", self.remote_id)
                await self._send(m.Busy(to=self.remote_id))
                return False
            logger.info("Renegotiation offers crossed with %s, yielding", self.remote_id)
            try:
                await self.transport.rollback()
            except TransportError as e:
                await self._fail(e)
                return False
            if self.phase is not Phase.RENEGOTIATING:
                return False
            self._renegotiate_queued = True
            self._expect_busy = True
            self._set_phase(Phase.CONNECTED)
        elif self.phase is not Phase.CONNECTED:
            logger.warning("Ignoring renegotiation offer from %s while %s",
                           self.remote_id, self.phase.value)
            return False

        try:
            answer = await self.transport.create_answer(offer)
        except TransportError as e:
            await self._fail(e)
            return False
        if self.phase is Phase.CLOSED:
            return False
        self.remote_description = offer
        self.local_description = answer
        await self._send(m.NegotiationAnswer(answer, to=self.remote_id))
        self._flush_queued()
        return True

    async def handle_negotiation_answer(self, answer):
        if self.phase is not Phase.RENEGOTIATING:
            logger.warning("Ignoring renegotiation answer from %s while %s",
                           self.remote_id, self.phase.value)
            return False
        try:
            await self.transport.set_remote_description(answer)
        except TransportError as e:
            await self._fail(e)
            return False
        if self.phase is not Phase.RENEGOTIATING:
            return False
        self.remote_description = answer
        self._set_phase(Phase.CONNECTED)
        self._flush_queued()
        return True

    async def handle_busy(self):
        """The peer refused our latest offer."""
        if self.phase is Phase.LOCAL_OFFER_PENDING:
            await self._drop_transport()
            if self.phase is not Phase.LOCAL_OFFER_PENDING:
                return
            self._set_phase(Phase.IDLE)
            self._schedule_retry()
        elif self.phase is Phase.RENEGOTIATING:
            try:
                await self.transport.rollback()
            except TransportError as e:
                await self._fail(e)
                return
            if self.phase is not Phase.RENEGOTIATING:
                return
            self._renegotiate_queued = True
            self._set_phase(Phase.CONNECTED)
            self._schedule_retry()
        elif self._expect_busy:
            # refusal of the offer we already rolled back
            self._expect_busy = False
            self._flush_queued()
        else:
            logger.info("Ignoring busy from %s while %s", self.remote_id, self.phase.value)

    # ───────────────────────────── media ─────────────────────────────

    def share_stream(self):
        """Bind every local track to the transport; already bound tracks are skipped.

        Returns the number of tracks newly bound.
        """
        if self.transport is None or self.local_stream is None:
            return 0
        added = 0
        for track in self.local_stream.get_tracks():
            if self.transport.add_track(track, self.local_stream):
                added += 1
        return added

    def add_track(self, track):
        """Add an extra local track (e.g. screen share) and send it if a transport exists."""
        if self.phase is Phase.CLOSED:
            raise CallError("session is closed")
        if self.local_stream is None:
            raise CallError("no local media yet")
        self.local_stream.add_track(track)
        if self.phase in PENDING:
            # bound too late for the offer in flight
            self._renegotiate_queued = True
        return self.share_stream()

    def toggle(self, kind):
        if self.local_stream is None:
            return False
        return self.local_stream.toggle(kind)

    # ──────────────────────────── teardown ────────────────────────────

    async def close(self):
        """Hang up. Safe from any phase and idempotent."""
        if self.phase is Phase.CLOSED:
            return
        remote_id = self.remote_id
        self._set_phase(Phase.CLOSED)
        self._cancel_retry()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        await self._drop_transport()
        if self.local_stream is not None:
            self.local_stream.stop()
        self.local_stream = None
        self.remote_stream = None
        self.remote_id = None
        self.local_description = self.remote_description = None
        self._renegotiate_queued = self._expect_busy = False
        logger.info("Session with %s closed", remote_id)
        self._post("closed", remote_id)

    hang_up = close

    # ──────────────────────────── internals ────────────────────────────

    async def _ensure_media(self):
        if self.local_stream is not None:
            return self.local_stream
        if self._media_task is None:
            self._media_task = asyncio.ensure_future(self._acquire_media(audio=True, video=True))
        task = self._media_task
        try:
            stream = await task
        finally:
            if self._media_task is task and task.done():
                self._media_task = None
        if self.phase is Phase.CLOSED:
            stream.stop()
            return None
        if self.local_stream is None:
            self.local_stream = stream
            self._post("local_stream", stream.describe())
        return self.local_stream

    def _open_transport(self):
        if self.transport is not None:
            return self.transport
        transport = self._transport_factory()
        transport.on("negotiationneeded", self._on_negotiation_needed)
        transport.on("track", self._on_track)
        transport.on("connectionstatechange", self._on_connection_state)
        self.transport = transport
        return transport

    async def _drop_transport(self):
        transport, self.transport = self.transport, None
        if transport is not None:
            await transport.close()

    def _on_negotiation_needed(self):
        if self.phase is Phase.CLOSED:
            return
        logger.info("Negotiation needed with %s", self.remote_id)
        self._spawn(self.renegotiate())

    def _on_track(self, stream):
        if self.phase is Phase.CLOSED:
            return
        self.remote_stream = stream
        self._post("remote_stream", stream.describe())

    def _on_connection_state(self, state):
        if state == "failed" and self.phase is not Phase.CLOSED:
            self._spawn(self._fail(TransportError("peer connection failed")))

    def _flush_queued(self):
        if self._renegotiate_queued and self.phase is Phase.CONNECTED and not self._expect_busy:
            self._renegotiate_queued = False
            self._spawn(self.renegotiate())

    async def _fail(self, error):
        logger.warning("Session with %s failed: %s", self.remote_id, error)
        self._post("error", f"Call failed: {error}")
        await self.close()

    def _set_phase(self, phase):
        if phase is self.phase:
            return
        logger.debug("%s: %s -> %s", self.remote_id, self.phase.value, phase.value)
        self.phase = phase
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        if phase in PENDING and self.timeout:
            self._watchdog = asyncio.get_running_loop().call_later(self.timeout, self._on_watchdog)
        self._post("phase", phase.value)

    def _on_watchdog(self):
        self._watchdog = None
        self._spawn(self._fail(TransportError(f"negotiation timed out while {self.phase.value}")))

    def _schedule_retry(self):
        if self._attempts >= self.retry_limit and self.phase is Phase.IDLE:
            self._give_up(NegotiationConflictError("The other participant is busy"))
            return
        delay = random.uniform(0, self.backoff)
        logger.info("Re-offering to %s in %.2fs", self.remote_id, delay)
        self._retry = asyncio.get_running_loop().call_later(delay, self._on_retry)

    def _give_up(self, error):
        """Stop offering; the session stays IDLE with no media held."""
        logger.warning("Giving up on %s after %d offers: %s", self.remote_id, self._attempts, error)
        self.initiator = False
        self._attempts = 0
        if self.local_stream is not None:
            self.local_stream.stop()
            self.local_stream = None
        self._post("error", str(error))

    def _on_retry(self):
        self._retry = None
        self._spawn(self._resume())

    async def _resume(self):
        if self.phase is Phase.IDLE and self.initiator:
            await self._offer_call()
        else:
            self._flush_queued()

    def _cancel_retry(self):
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background step for %s failed: %r", self.remote_id, task.exception())
