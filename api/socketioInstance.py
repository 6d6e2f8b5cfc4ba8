from flask_socketio import SocketIO

# Bound to the app (and its CORS origins) in api.create_app.
socketio = SocketIO()
