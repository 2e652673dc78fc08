# config.py
# --------------------------------------------------------------------
# Settings shared by the relay server and the call client.
# Every constant can be overridden through the environment.
# --------------------------------------------------------------------

import os
from aiortc import RTCConfiguration, RTCIceServer

SIGNAL_URL = os.environ.get("ROOMCALL_SIGNAL_URL", "ws://localhost:8500")
HOST = os.environ.get("ROOMCALL_HOST", "0.0.0.0")
PORT = int(os.environ.get("ROOMCALL_PORT", "8500"))

STUN_URLS = [
    u.strip()
    for u in os.environ.get("ROOMCALL_STUN_URLS", "stun:stun.l.google.com:19302").split(",")
    if u.strip()
]

ROOM_CAPACITY = int(os.environ.get("ROOMCALL_ROOM_CAPACITY", "2"))
NEGOTIATION_TIMEOUT = float(os.environ.get("ROOMCALL_NEGOTIATION_TIMEOUT", "15"))
RETRY_BACKOFF = float(os.environ.get("ROOMCALL_RETRY_BACKOFF", "0.5"))
RETRY_LIMIT = int(os.environ.get("ROOMCALL_RETRY_LIMIT", "3"))

VIDEO_DEVICE = os.environ.get("ROOMCALL_VIDEO_DEVICE", "/dev/video0")
AUDIO_DEVICE = os.environ.get("ROOMCALL_AUDIO_DEVICE", "default")
MEDIA_FORMAT = os.environ.get("ROOMCALL_MEDIA_FORMAT", "v4l2")
AUDIO_FORMAT = os.environ.get("ROOMCALL_AUDIO_FORMAT", "pulse")

LOG_LEVEL = os.environ.get("ROOMCALL_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def rtc_configuration(urls=None):
    """Build the aiortc ICE configuration from a list of STUN/TURN urls."""
    urls = STUN_URLS if urls is None else urls
    return RTCConfiguration([RTCIceServer(u) for u in urls])
