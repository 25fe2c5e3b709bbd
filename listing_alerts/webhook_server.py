"""
Webhook and Match Query Server for Listing Alerts.

A small Flask server that:
1. Accepts pushed feed changes and routes them through the reconciler
2. Serves the best matches for a client from the match index
3. Serves the score breakdown for one (client, property) pair

Run this server alongside the scheduler when the feed supports webhooks
or the UI needs match data.
"""

import logging
from typing import Optional

from flask import Flask, abort, current_app, jsonify, request

from .db import StoreError
from .pipeline import MatchingPipeline, WebhookError, get_pipeline
from .reconciler import BatchFailedError
from .scoring import ScoringError

logger = logging.getLogger(__name__)

DEFAULT_MATCH_LIMIT = 10
MAX_MATCH_LIMIT = 100


def _pipeline() -> MatchingPipeline:
    pipeline = current_app.config.get("PIPELINE")
    return pipeline if pipeline is not None else get_pipeline()


def create_app(pipeline: Optional[MatchingPipeline] = None) -> Flask:
    """
    Build the Flask app.

    Args:
        pipeline: Pipeline to serve; the process-wide one is used if omitted
    """
    app = Flask(__name__)
    app.config["PIPELINE"] = pipeline

    @app.route("/webhooks/feed", methods=["POST"])
    def feed_webhook():
        """Apply one pushed listing change."""
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"error": "Expected a JSON object"}), 400

        try:
            result = _pipeline().ingest_webhook(payload)
        except WebhookError as e:
            logger.warning(f"Rejected webhook: {e}")
            return jsonify({"error": str(e)}), 400
        except BatchFailedError as e:
            logger.warning(f"Unprocessable webhook record: {e}")
            return jsonify({
                "error": str(e),
                "record_errors": [err.to_dict() for err in e.result.errors],
            }), 422
        except StoreError as e:
            logger.error(f"Webhook not applied, store unavailable: {e}")
            return jsonify({"error": "Store unavailable"}), 503

        return jsonify(result)

    @app.route("/clients/<client_id>/matches")
    def client_matches(client_id: str):
        """Best matches for a client, highest score first."""
        pipeline = _pipeline()
        if pipeline.store.get_profile(client_id) is None:
            abort(404)

        limit = request.args.get("limit", DEFAULT_MATCH_LIMIT, type=int)
        limit = max(1, min(limit, MAX_MATCH_LIMIT))
        min_score = request.args.get("min_score", type=float)

        matches = pipeline.index.top_matches(client_id, limit=limit, min_score=min_score)
        return jsonify({
            "client_id": client_id,
            "matches": [m.to_dict() for m in matches],
        })

    @app.route("/clients/<client_id>/matches/<property_id>")
    def match_breakdown(client_id: str, property_id: str):
        """Sub-scores and reasons for one property."""
        try:
            score = _pipeline().index.score_breakdown(client_id, property_id)
        except ScoringError as e:
            return jsonify({"error": str(e)}), 422

        if score is None:
            abort(404)
        return jsonify(score.to_dict())

    @app.route("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok"}

    return app


def run_server(host: str = "0.0.0.0", port: int = 5000, debug: bool = False):
    """Run the Flask server."""
    pipeline = get_pipeline()
    app = create_app(pipeline)
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        pipeline.shutdown()


def main():
    """CLI entry point for the webhook server."""
    import argparse

    parser = argparse.ArgumentParser(description="Listing Alerts Webhook Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5000, help="Port to bind to")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )

    logger.info(f"Starting webhook server on {args.host}:{args.port}")
    run_server(args.host, args.port, args.debug)


if __name__ == "__main__":
    main()
