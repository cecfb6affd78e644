#!/usr/bin/env python3
"""
Feed Adaptor Status API

A small Flask application exposing push statistics and a trigger for an
immediate full push.

Run with:
    python3 web/app.py --config adaptor.json

Then query: http://localhost:5000/api/stats
"""

import argparse
import logging
import sys
from pathlib import Path

from flask import Flask, jsonify

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from feedadaptor.config import AdaptorConfig, DEFAULT_CONFIG
from feedadaptor.pusher import PushKind
from feedadaptor.service import FeedService

logger = logging.getLogger(__name__)


def create_app(service: FeedService) -> Flask:
    """Build the status app around a running feed service."""
    app = Flask(__name__)

    @app.route('/api/stats', methods=['GET'])
    def api_stats():
        """Journal snapshot plus the state of the current push."""
        stats = service.journal.snapshot().to_dict()
        stats['push_state'] = service.pusher.state_of(PushKind.FULL).value
        stats['push_states'] = service.pusher.states()
        stats['full_push_running'] = service.full_push_running
        return jsonify({
            'success': True,
            'stats': stats
        })

    @app.route('/api/push', methods=['POST'])
    def api_push():
        """Start a full push unless one is already in progress."""
        if not service.push_doc_ids_now():
            return jsonify({
                'success': False,
                'error': 'A full push is already running'
            }), 409
        return jsonify({
            'success': True,
            'message': 'Full push started'
        }), 202

    return app


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Run the feed adaptor with its status API")
    parser.add_argument("--config", type=Path, help="Path to a JSON config file")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    config = AdaptorConfig.from_json(args.config) if args.config else DEFAULT_CONFIG
    feed_service = FeedService(config)
    feed_service.start()
    try:
        app = create_app(feed_service)
        app.run(host=config.web.host, port=config.web.port)
    finally:
        feed_service.stop()
