#!/usr/bin/env python3
"""SkyArchive web service.

Serves the pipeline trigger endpoints used by the gallery to keep the image
database and thumbnails in step with the ground station's capture folder.
"""

from __future__ import annotations

import argparse
import time

from flask import Flask, jsonify

import config
from utils.database import init_db
from utils.logging import get_logger

logger = get_logger('skyarchive.app')

app = Flask(__name__)

_start_time = time.time()


@app.route('/health')
def health_check():
    """Health check endpoint."""
    from utils.pipeline import get_pipeline_runner

    return jsonify({
        'status': 'healthy',
        'version': config.VERSION,
        'uptime_seconds': round(time.time() - _start_time, 2),
        'pipeline_running': get_pipeline_runner().is_running,
    })


def main() -> None:
    parser = argparse.ArgumentParser(description='SkyArchive capture ingestion service')
    parser.add_argument('--host', default=config.HOST, help=f'Bind address (default: {config.HOST})')
    parser.add_argument('-p', '--port', type=int, default=config.PORT, help=f'Port (default: {config.PORT})')
    parser.add_argument('--debug', action='store_true', default=config.DEBUG, help='Enable Flask debug mode')
    args = parser.parse_args()

    from routes import register_blueprints

    init_db()
    register_blueprints(app)

    logger.info(f"SkyArchive {config.VERSION} listening on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug, threaded=True)


if __name__ == '__main__':
    main()
