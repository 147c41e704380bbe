"""
Dashboard Bridge - Streams base station events to web observers

Author: Vítor Eulálio Reis <vitor.reis@proton.me>
Copyright (c) 2025

Observers connect over Socket.IO and receive every coordinator broadcast
(`uav_connected`, `uav_status_update`, `isac_mode_changed`, ...) as-is.
Delivery is fire-and-forget: an emit failure is logged and dropped.

HTTP:
    GET /api/status -> latest fleet snapshot as JSON
"""

import logging
import threading

from flask import Flask, jsonify, request
from flask_socketio import SocketIO, emit

logger = logging.getLogger(__name__)


class DashboardBridge:
    """Bridge between the coordinator broadcasts and dashboard clients"""

    def __init__(self, station, socketio: SocketIO):
        self.station = station
        self.socketio = socketio
        self.connected_clients = set()
        self.events_sent = 0

    def __call__(self, event: str, data: dict):
        """Coordinator observer entry point"""
        self.emit(event, data)

    def emit(self, event: str, data: dict):
        """Safely emit a Socket.IO event to every connected client"""
        try:
            self.socketio.emit(event, data)
            self.events_sent += 1
        except Exception as e:
            logger.error(f"Failed to emit {event}: {e}")

    def register_handlers(self):
        @self.socketio.on("connect")
        def handle_connect():
            client_id = getattr(request, "sid", "unknown")
            self.connected_clients.add(client_id)
            logger.info(
                f"Dashboard client connected: {client_id} "
                f"(Total: {len(self.connected_clients)})"
            )
            # Initial state for the new client only
            emit("fleet_state", self.station.get_status())

        @self.socketio.on("disconnect")
        def handle_disconnect():
            client_id = getattr(request, "sid", "unknown")
            self.connected_clients.discard(client_id)
            logger.info(f"Dashboard client disconnected: {client_id}")

        @self.socketio.on("request_update")
        def handle_update():
            emit("fleet_state", self.station.get_status())


def create_app(station, config: dict = None):
    """
    Build the Flask app, its SocketIO server and the bridge.

    Args:
        station: Object exposing `get_status()` (BaseStation or Coordinator)
        config: `dashboard` config section

    Returns:
        (app, socketio, bridge)
    """
    config = config or {}
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.get("secret_key", "isac-base-station")
    socketio = SocketIO(
        app,
        cors_allowed_origins=config.get("cors_allowed_origins", "*"),
        async_mode="threading",
        logger=False,
        engineio_logger=False,
    )

    bridge = DashboardBridge(station, socketio)
    bridge.register_handlers()

    @app.route("/api/status")
    def api_status():
        return jsonify(station.get_status())

    return app, socketio, bridge


def start_dashboard(app, socketio: SocketIO, port: int = 8085) -> threading.Thread:
    """Serve the dashboard on a daemon thread"""
    thread = threading.Thread(
        target=socketio.run,
        args=(app,),
        kwargs={
            "host": "0.0.0.0",
            "port": port,
            "debug": False,
            "use_reloader": False,
            "allow_unsafe_werkzeug": True,
        },
        daemon=True,
    )
    thread.start()
    logger.info(f"Dashboard: http://localhost:{port}")
    return thread
