"""CW trainer web application.

Exposes the Morse playback engine over a small JSON API.
"""

from __future__ import annotations

import argparse

from flask import Flask, jsonify

import config
from routes import register_blueprints
from utils.logging import get_logger

logger = get_logger('cwtrainer.app')

app = Flask(__name__)
register_blueprints(app)


@app.route('/health')
def health():
    return jsonify({'status': 'ok'})


def main() -> None:
    parser = argparse.ArgumentParser(description='CW trainer Morse playback server')
    parser.add_argument('--host', default=config.HOST, help='Interface to bind')
    parser.add_argument('-p', '--port', type=int, default=config.PORT, help='Port to listen on')
    parser.add_argument('--debug', action='store_true', default=config.DEBUG, help='Enable Flask debug mode')
    args = parser.parse_args()

    logger.info('Starting CW trainer on %s:%s (audio backend: %s)', args.host, args.port, config.AUDIO_BACKEND)
    app.run(host=args.host, port=args.port, debug=args.debug, threaded=True)


if __name__ == '__main__':
    main()
