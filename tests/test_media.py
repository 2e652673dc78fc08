from types import SimpleNamespace

import pytest

from roomcall import config, media
from roomcall.errors import MediaAcquisitionError
from tests.fakes import FakeTrack


@pytest.fixture
def devices(monkeypatch):
    """Replaces FFmpeg device opening; returns the source tracks handed out."""
    opened = []

    def install(refuse_audio=False, mute_player=False):
        def open_player(device, fmt, options=None):
            if fmt == config.AUDIO_FORMAT:
                if refuse_audio:
                    raise MediaAcquisitionError(f"cannot open {device} ({fmt}): denied")
                track = None if mute_player else FakeTrack("audio")
                player = SimpleNamespace(audio=track, video=None)
            else:
                track = FakeTrack("video")
                player = SimpleNamespace(audio=None, video=track)
            if track is not None:
                opened.append(track)
            return player

        monkeypatch.setattr(media, "_open_player", open_player)
        return opened

    return install


def test_capture_opens_camera_then_microphone(devices):
    opened = devices()

    stream = media._capture(True, True)

    assert [t.kind for t in stream.get_tracks()] == ["video", "audio"]
    assert not any(source.stopped for source in opened)


def test_refused_microphone_releases_the_camera(devices):
    opened = devices(refuse_audio=True)

    with pytest.raises(MediaAcquisitionError):
        media._capture(True, True)

    assert [source.kind for source in opened] == ["video"]
    assert all(source.stopped for source in opened)


def test_microphone_without_audio_releases_the_camera(devices):
    opened = devices(mute_player=True)

    with pytest.raises(MediaAcquisitionError):
        media._capture(True, True)

    assert all(source.stopped for source in opened)


def test_toggle_flips_only_the_requested_kind():
    stream = media.MediaStream([FakeTrack("audio"), FakeTrack("video")])

    assert stream.toggle("audio") is False
    assert stream.toggle("screen") is False
    assert [t.enabled for t in stream.get_tracks()] == [False, True]
