"""
Local control surface for a room call client.

A browser (or any HTTP client) drives the call through POST routes that mirror
the lobby and room screens: join a room, call, hang up, toggle mic/video,
share the stream. Progress records (``{"kind": ..., "data": ...}``) are
streamed back over the ``/ws`` websocket. The call itself runs on a dedicated
asyncio loop in a background thread, owned by :class:`CallRunner`.
"""
import argparse
import asyncio
import json
import logging
import queue
import threading

from flask import Flask, jsonify, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from . import config
from .errors import CallError
from .peer_connector import PeerConnector, WebSocketRelay

logger = logging.getLogger(__name__)

ACTION_TIMEOUT = 10


class CallRunner:
    """Runs one PeerConnector on its own event loop thread."""

    def __init__(self, signal_url=None, gui_q=None, connector_factory=PeerConnector,
                 relay_factory=WebSocketRelay):
        self.signal_url = signal_url or config.SIGNAL_URL
        self.gui_q = gui_q if gui_q is not None else queue.Queue()
        self.connector = None
        self._connector_factory = connector_factory
        self._relay_factory = relay_factory
        self._reader = None

        self.loop = asyncio.new_event_loop()
        threading.Thread(target=self.loop.run_forever, daemon=True).start()

    def submit(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro, timeout=ACTION_TIMEOUT):
        return self.submit(coro).result(timeout)

    def post(self, kind, data=""):
        self.gui_q.put({"kind": kind, "data": data})

    async def join(self, email, room):
        if self.connector is not None and self.connector.subscribed:
            await self.connector.leave()
        if self.connector is None:
            relay = await self._relay_factory(self.signal_url).connect()
            self.connector = self._connector_factory(relay, email, self.gui_q)
            self._reader = asyncio.ensure_future(self._read())
        self.connector.email = email
        await self.connector.join(room)

    async def call(self):
        try:
            await self._require().call()
        except CallError as e:
            self.post("error", str(e))

    async def hang_up(self):
        await self._require().hang_up()

    async def leave(self):
        await self._require().leave()

    async def toggle(self, kind):
        connector = self._require()
        return connector.toggle_mic() if kind == "audio" else connector.toggle_video()

    async def share_stream(self):
        return self._require().share_stream()

    async def share_screen(self):
        try:
            return await self._require().share_screen()
        except CallError as e:
            self.post("error", str(e))
            return 0

    async def shutdown(self):
        if self.connector is not None:
            await self.connector.leave()
            await self.connector.relay.close()
        if self._reader is not None:
            self._reader.cancel()

    async def _read(self):
        try:
            await self.connector.run()
        finally:
            self.connector = None

    def _require(self):
        if self.connector is None:
            raise CallError("join a room first")
        return self.connector


def create_app(runner=None):
    app = Flask(__name__)
    sock = Sock(app)
    runner = runner or CallRunner()
    app.config["CALL_RUNNER"] = runner

    def _act(coro, **extra):
        try:
            result = runner.run(coro)
        except CallError as e:
            return jsonify({"status": "error", "message": str(e)}), 409
        return jsonify({"status": "ok", "result": result, **extra})

    @sock.route("/ws")
    def ws_events(ws):
        """Streams presentation records to the connected client until it goes away."""
        logger.info("Status websocket connected")
        try:
            while True:
                try:
                    record = runner.gui_q.get(timeout=1)
                except queue.Empty:
                    continue
                ws.send(json.dumps(record))
        except (ConnectionClosed, ConnectionError) as e:
            logger.info("Status websocket closed: %s", e)

    @app.route("/join", methods=["POST"])
    def join_route():
        """
        Joins a room.
        Expects JSON: {"email": "...", "room": "..."}
        The room:join acknowledgement arrives on /ws as a "joined" record.
        """
        data = request.get_json(silent=True) or {}
        email, room = data.get("email"), data.get("room")
        if not email or not room:
            return jsonify({"status": "error", "message": "email and room are required"}), 400
        return _act(runner.join(email, str(room)), room=str(room))

    @app.route("/call", methods=["POST"])
    def call_route():
        # media acquisition may wait on the user, so do not block the request on it
        runner.submit(runner.call())
        return jsonify({"status": "calling"})

    @app.route("/hang-up", methods=["POST"])
    def hang_up_route():
        return _act(runner.hang_up())

    @app.route("/leave", methods=["POST"])
    def leave_route():
        return _act(runner.leave())

    @app.route("/toggle-mic", methods=["POST"])
    def toggle_mic_route():
        return _act(runner.toggle("audio"))

    @app.route("/toggle-video", methods=["POST"])
    def toggle_video_route():
        return _act(runner.toggle("video"))

    @app.route("/share-stream", methods=["POST"])
    def share_stream_route():
        return _act(runner.share_stream())

    @app.route("/share-screen", methods=["POST"])
    def share_screen_route():
        runner.submit(runner.share_screen())
        return jsonify({"status": "sharing"})

    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description="Room call client control server")
    parser.add_argument("--port", type=int, default=5000, help="Port to run the control server on")
    parser.add_argument("--signal-url", default=config.SIGNAL_URL, help="Signaling server websocket url")
    parser.add_argument("--email", help="Join a room right away with this email")
    parser.add_argument("--room", help="Room number to join with --email")
    args = parser.parse_args(argv)

    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    runner = CallRunner(args.signal_url)
    if args.email and args.room:
        runner.run(runner.join(args.email, args.room))
    app = create_app(runner)
    app.run(host="0.0.0.0", port=args.port, debug=False, use_reloader=False)


if __name__ == "__main__":
    main()
