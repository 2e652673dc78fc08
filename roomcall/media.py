"""
Local media capture and the stream objects handed to the presentation layer.

Capture goes through aiortc's ``MediaPlayer`` (FFmpeg devices). Captured tracks
are wrapped in :class:`GatedTrack` so the mic/video toggles can silence or
blank a track without touching the peer connection.
"""
import asyncio
import logging
import uuid
from typing import List

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from . import config
from .errors import MediaAcquisitionError

logger = logging.getLogger(__name__)


class MediaStream:
    """An ordered group of tracks, local or remote, identified by ``id``."""

    def __init__(self, tracks=None, stream_id=None):
        self.id = stream_id or str(uuid.uuid4())
        self._tracks: List = list(tracks or [])

    def get_tracks(self):
        return list(self._tracks)

    def tracks_of(self, kind):
        return [t for t in self._tracks if t.kind == kind]

    def add_track(self, track):
        if track not in self._tracks:
            self._tracks.append(track)

    def set_enabled(self, kind, enabled):
        for track in self.tracks_of(kind):
            track.enabled = enabled

    def toggle(self, kind):
        """Flip ``enabled`` on every ``kind`` track; returns the new state."""
        tracks = self.tracks_of(kind)
        if not tracks:
            return False
        enabled = not tracks[0].enabled
        self.set_enabled(kind, enabled)
        return enabled

    def stop(self):
        for track in self._tracks:
            track.stop()

    def describe(self):
        return {"id": self.id, "tracks": [{"id": t.id, "kind": t.kind} for t in self._tracks]}

    def __repr__(self):
        return f"MediaStream({self.id!r}, {[t.kind for t in self._tracks]})"


class GatedTrack(MediaStreamTrack):
    """Relays a source track; while disabled it emits silence or black frames."""

    def __init__(self, source):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
            return frame
        return _black(frame)

    def stop(self):
        super().stop()
        self.source.stop()


def _black(frame):
    blank = av.VideoFrame(frame.width, frame.height, "yuv420p")
    luma, *chroma = blank.planes
    luma.update(bytes(luma.buffer_size))
    for plane in chroma:
        plane.update(b"\x80" * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


def _open_player(device, fmt, options=None):
    try:
        return MediaPlayer(device, format=fmt, options=options or {})
    except (av.error.FFmpegError, OSError) as e:
        raise MediaAcquisitionError(f"cannot open {device} ({fmt}): {e}") from e


def _capture(audio, video):
    tracks = []
    try:
        if video:
            player = _open_player(config.VIDEO_DEVICE, config.MEDIA_FORMAT,
                                  {"framerate": "30", "video_size": "640x480"})
            if player.video is None:
                raise MediaAcquisitionError(f"{config.VIDEO_DEVICE} has no video track")
            tracks.append(GatedTrack(player.video))
        if audio:
            player = _open_player(config.AUDIO_DEVICE, config.AUDIO_FORMAT)
            if player.audio is None:
                raise MediaAcquisitionError(f"{config.AUDIO_DEVICE} has no audio track")
            tracks.append(GatedTrack(player.audio))
    except MediaAcquisitionError:
        # release whatever was opened before the failing device
        for t in tracks:
            t.stop()
        raise
    return MediaStream(tracks)


async def acquire_local_media(audio=True, video=True) -> MediaStream:
    """Open the configured camera and microphone.

    Device opening blocks, so it runs in the default executor. Raises
    MediaAcquisitionError when a device is missing or access is refused.
    """
    if not (audio or video):
        raise MediaAcquisitionError("at least one of audio or video must be requested")
    loop = asyncio.get_running_loop()
    stream = await loop.run_in_executor(None, _capture, audio, video)
    logger.info("Local media acquired: %r", stream)
    return stream


async def acquire_screen(display=":0.0") -> GatedTrack:
    """Capture an X11 display as an extra video track (screen share)."""
    loop = asyncio.get_running_loop()
    player = await loop.run_in_executor(
        None, _open_player, display, "x11grab", {"framerate": "15"})
    if player.video is None:
        raise MediaAcquisitionError(f"{display} produced no video")
    return GatedTrack(player.video)
