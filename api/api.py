import logging
from datetime import datetime
from typing import Callable, Optional

from flask import Flask, jsonify
from flask_cors import CORS
from sqlalchemy.engine import Engine

from authMiddleware import install_auth_middleware
from config import AppConfig
from db import create_db_engine
from endpoints.notification.notificationSocket import register_notification_socket_handlers
from endpoints.notification.notifier import Notifier, SocketNotifier
from endpoints.transaction.routes import setup_routes as TransactionRoutes
from endpoints.veto.routes import setup_routes as VetoRoutes
from endpoints.waiver.routes import setup_routes as WaiverRoutes
from socketioInstance import socketio
from utils.timeUtils import utcNow

HEALTH_PATH = "/api/health"


def create_app(
    engine: Optional[Engine] = None,
    config: Optional[AppConfig] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utcNow,
):

    config = config or AppConfig.from_env()
    engine = engine or create_db_engine(config)

    app = Flask(__name__)
    CORS(app, origins=config.cors_origins)

    socketio.init_app(app, cors_allowed_origins=config.cors_origins)
    register_notification_socket_handlers(config)
    notifier = notifier or SocketNotifier(socketio)

    install_auth_middleware(app, config, public_paths=[HEALTH_PATH], public_prefixes=config.public_prefixes)

    route_kwargs = {
        "notifier": notifier,
        "expose_errors": not config.is_production,
        "clock": clock,
    }
    TransactionRoutes(app, engine, **route_kwargs)
    VetoRoutes(app, engine, **route_kwargs)
    WaiverRoutes(app, engine, **route_kwargs)

    @app.route(HEALTH_PATH, methods=["GET"])
    def health():
        return jsonify({"status": "ok"}), 200

    logging.getLogger(__name__).info("App created (env=%s)", config.app_env)
    return app

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app = create_app()
    app.run(host="0.0.0.0", port=5050, debug=True)
