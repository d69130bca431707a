import logging

from vtt_board.config import Config
from vtt_board.server import create_app

config = Config()

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s',
)

app, socketio = create_app(config)

if __name__ == '__main__':
    # Production-safe configuration
    socketio.run(app, debug=config.debug, host='0.0.0.0', port=config.PORT, allow_unsafe_werkzeug=True)
