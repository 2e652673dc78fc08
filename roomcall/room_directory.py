# room_directory.py
# --------------------------------------------------------------------
# Who is in which room. Rooms appear on first join and vanish when
# the last member leaves; nothing is kept afterwards.
# --------------------------------------------------------------------

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional

from . import config
from .errors import RoomFullError, StaleRouteError

logger = logging.getLogger(__name__)


class Member(NamedTuple):
    id: str
    email: str


@dataclass
class Waiting:
    """First member of the room; nobody to call yet."""
    room: str


@dataclass
class Ready:
    """The room now holds two members; ``other_*`` describe the one already there."""
    room: str
    other_email: str
    other_id: str
    # false when the joiner was already seated, so the other member is not told twice
    announce: bool = True


@dataclass
class Departure:
    room: str
    remaining: List[Member]


class RoomDirectory:
    def __init__(self, capacity: int = None):
        self.capacity = config.ROOM_CAPACITY if capacity is None else capacity
        self._rooms: Dict[str, List[Member]] = {}
        self._where: Dict[str, str] = {}
        # two near-simultaneous joins decide who is first, so every mutation is serialized
        self._lock = asyncio.Lock()

    async def join(self, identity: str, room: str, email: str):
        """
        Add ``identity`` to ``room``.

        Returns Waiting for the first member and Ready for the second.
        Raises RoomFullError when the room already holds ``capacity`` members.
        Joining another room first leaves the current one.
        """
        async with self._lock:
            current = self._where.get(identity)
            if current == room:
                return self._result(room, identity, announce=False)
            members = self._rooms.get(room, [])
            if len(members) >= self.capacity:
                logger.info("Rejecting %s: room '%s' is full", identity, room)
                raise RoomFullError(room)
            if current is not None:
                self._remove(identity)
            self._rooms.setdefault(room, []).append(Member(identity, email))
            self._where[identity] = room
            logger.info("%s (%s) joined room '%s' (%d/%d)",
                        identity, email, room, len(self._rooms[room]), self.capacity)
            return self._result(room, identity)

    async def leave(self, identity: str) -> Optional[Departure]:
        async with self._lock:
            if identity not in self._where:
                return None
            return self._remove(identity)

    async def resolve(self, sender: str, to: str) -> str:
        """Check that ``to`` still shares a room with ``sender``; StaleRouteError if not."""
        async with self._lock:
            room = self._where.get(to)
            if room is None or room != self._where.get(sender) or to == sender:
                raise StaleRouteError(sender, to)
            return to

    def room_of(self, identity: str) -> Optional[str]:
        return self._where.get(identity)

    def members(self, room: str) -> List[Member]:
        return list(self._rooms.get(room, []))

    def rooms(self) -> Dict[str, List[Member]]:
        return {room: list(members) for room, members in self._rooms.items()}

    def _result(self, room, identity, announce=True):
        others = [m for m in self._rooms[room] if m.id != identity]
        if not others:
            return Waiting(room)
        first = others[0]
        return Ready(room, first.email, first.id, announce)

    def _remove(self, identity) -> Departure:
        room = self._where.pop(identity)
        remaining = [m for m in self._rooms.get(room, []) if m.id != identity]
        if remaining:
            self._rooms[room] = remaining
        else:
            del self._rooms[room]
            logger.info("Room '%s' is empty, removing it", room)
        return Departure(room, remaining)
