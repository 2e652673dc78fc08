# server.py
# --------------------------------------------------------------------
# Signaling relay: seats clients in rooms and forwards addressed
# offers/answers between them without looking inside the payloads.
# --------------------------------------------------------------------

import argparse
import asyncio
import dataclasses
import logging
import secrets

import websockets
from websockets.exceptions import ConnectionClosed

from . import config
from . import messages as m
from .errors import RoomFullError, SignalingProtocolError, StaleRouteError
from .room_directory import Ready, RoomDirectory

logger = logging.getLogger(__name__)


def new_identity() -> str:
    return secrets.token_urlsafe(15)


class SignalingServer:
    def __init__(self, directory: RoomDirectory = None):
        self.directory = directory or RoomDirectory()
        self.connections = {}  # identity -> websocket

    async def handler(self, ws):
        identity = new_identity()
        self.connections[identity] = ws
        logger.info("Client %s connected", identity)
        try:
            async for raw in ws:
                await self.dispatch(identity, raw)
        except ConnectionClosed:
            logger.info("Client %s dropped", identity)
        finally:
            await self.disconnect(identity)

    async def disconnect(self, identity):
        self.connections.pop(identity, None)
        await self._leave(identity)
        logger.info("Client %s disconnected", identity)

    async def dispatch(self, identity, raw):
        try:
            msg = m.decode(raw)
            if not isinstance(msg, m.CLIENT_MESSAGES):
                raise SignalingProtocolError(f"'{m.event_of(msg)}' cannot be sent by a client")
        except SignalingProtocolError as e:
            logger.warning("Bad frame from %s: %s", identity, e)
            await self.emit(identity, m.ProtocolError(str(e)))
            return

        if isinstance(msg, m.Join):
            await self._join(identity, msg)
        elif isinstance(msg, m.Leave):
            await self._leave(identity)
        else:
            await self._relay(identity, msg)

    async def emit(self, identity, msg):
        ws = self.connections.get(identity)
        if ws is None:
            logger.info("Dropping '%s' for %s: not connected", m.event_of(msg), identity)
            return False
        try:
            await ws.send(m.encode(msg))
        except ConnectionClosed:
            logger.info("Dropping '%s' for %s: connection closed", m.event_of(msg), identity)
            return False
        return True

    async def _join(self, identity, msg):
        current = self.directory.room_of(identity)
        if current is not None and current != msg.room:
            await self._leave(identity)
        try:
            result = await self.directory.join(identity, msg.room, msg.email)
        except RoomFullError:
            await self.emit(identity, m.RoomFull(msg.room))
            return
        if isinstance(result, Ready) and result.announce:
            await self.emit(result.other_id, m.UserJoined(msg.email, identity))
        await self.emit(identity, m.Joined(msg.room))

    async def _leave(self, identity):
        departure = await self.directory.leave(identity)
        if departure is None:
            return
        await asyncio.gather(*(
            self.emit(member.id, m.PeerLeft(identity)) for member in departure.remaining
        ))

    async def _relay(self, identity, msg):
        try:
            to = await self.directory.resolve(identity, msg.to)
        except StaleRouteError as e:
            logger.warning("Dropping '%s': %s", m.event_of(msg), e)
            return
        await self.emit(to, stamp(msg, identity))


def stamp(msg, sender):
    """Turn a client's addressed message into what the recipient sees.

    The sender is always the relay's own view of the connection; whatever
    the client put in the payload is discarded.
    """
    if isinstance(msg, m.CallOffer):
        return m.IncomingCall(sender, msg.offer)
    return dataclasses.replace(msg, to=None, sender=sender)


async def serve(host=None, port=None, directory=None):
    server = SignalingServer(directory)
    host = config.HOST if host is None else host
    port = config.PORT if port is None else port
    logger.info("Signalling server listening on %s:%s", host, port)
    async with websockets.serve(server.handler, host, port):
        await asyncio.Future()  # run forever


def main(argv=None):
    parser = argparse.ArgumentParser(description="Room call signaling relay")
    parser.add_argument("--host", default=config.HOST, help="Interface to bind")
    parser.add_argument("--port", type=int, default=config.PORT, help="Port to listen on")
    parser.add_argument("--capacity", type=int, default=config.ROOM_CAPACITY,
                        help="Members allowed per room")
    args = parser.parse_args(argv)

    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    try:
        asyncio.run(serve(args.host, args.port, RoomDirectory(args.capacity)))
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
