# wsgi.py
import logging

from api import create_app
from socketioInstance import socketio

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app()

if __name__ == "__main__":
    socketio.run(app, host="0.0.0.0", port=5050)
