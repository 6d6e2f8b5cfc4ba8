# endpoints/notification/notificationSocket.py
from flask_socketio import join_room

from authMiddleware import bearer_token
from config import AppConfig
from socketioInstance import socketio
from supabaseAuth import verify_supabase_token


def register_notification_socket_handlers(config: AppConfig):

    @socketio.on("connect")
    def on_connect(auth):
        token = None
        if isinstance(auth, dict):
            token = auth.get("token") or auth.get("access_token")
        if token and token.startswith("Bearer "):
            token = bearer_token(token)

        if not token:
            return False  # tells Socket.IO to reject the connection

        claims = verify_supabase_token(token, config)
        if not claims or not claims.get("sub"):
            return False

        # SocketNotifier emits to this room
        join_room(f"user:{claims['sub']}")
