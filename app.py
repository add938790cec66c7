from dataclasses import dataclass
from typing import Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from analysis import AnalysisPipeline, REQUIRED_SCOPES
from cache import ChannelCache
from completion import get_completion_client
from config import AppConfig
from errors import ChannelPulseError
from fetcher import ChannelFetcher
from logger import get_logger, MetricsMiddleware
from retry import RetryPolicy
from search import search_channels
from slack_client import SlackGateway

logger = get_logger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class Services:
    gateway: SlackGateway
    cache: ChannelCache
    pipeline: AnalysisPipeline


def build_services(config: AppConfig, completion=None) -> Services:
    """Wire the Slack gateway, cache and analysis pipeline from config."""
    gateway = SlackGateway(token=config.api.slack_bot_token)
    policy = RetryPolicy(max_retries=config.api.max_retries, fallback_delay=config.api.retry_delay)
    fetcher = ChannelFetcher(
        gateway,
        policy=policy,
        page_limit=config.api.page_limit,
        page_delay=config.api.page_delay,
        history_limit=config.api.history_limit,
    )
    cache = ChannelCache.from_config(config.cache, fetcher)
    pipeline = AnalysisPipeline(
        gateway,
        cache,
        fetcher,
        completion or get_completion_client(config.api),
        history_days=config.api.history_days,
        client_id=config.api.slack_client_id,
        timezone=config.timezone,
    )
    return Services(gateway=gateway, cache=cache, pipeline=pipeline)


def parse_flag(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    value = value.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    return default


def create_app(services: Services) -> Flask:
    app = Flask(__name__)
    app.config["SERVICES"] = services
    app.wsgi_app = MetricsMiddleware(app.wsgi_app)

    @app.errorhandler(ChannelPulseError)
    def handle_known_error(e: ChannelPulseError):
        logger.warning("Request failed", path=request.path, kind=e.kind, error=e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.error("Unhandled error", path=request.path, error=str(e), exc_info=True)
        return jsonify({
            "error": "Internal server error",
            "details": {"kind": "internal"},
        }), 500

    @app.route("/")
    def index():
        return "Channel Pulse API", 200, {"Content-Type": "text/plain"}

    @app.route("/healthz")
    def healthz():
        return jsonify({"status": "ok"})

    @app.route("/api/channels")
    def channels():
        query = request.args.get("q", "")
        refresh = parse_flag(request.args.get("refresh"), False)
        membership_first = parse_flag(request.args.get("membership"), True)
        try:
            all_channels = services.cache.get_channels(force_refresh=refresh)
        except ChannelPulseError as e:
            logger.error("Error fetching channels", error=e.message, kind=e.kind)
            return jsonify(e.to_dict()), 500
        found = search_channels(all_channels, query, membership_first)
        logger.info("Channels listed", query=query, refresh=refresh, total=len(all_channels), returned=len(found))
        return jsonify({"channels": [c.to_dict() for c in found]})

    @app.route("/api/analyze", methods=["POST"])
    def analyze():
        body = request.get_json(silent=True)
        channel_name = body.get("channelName") if isinstance(body, dict) else None
        if not isinstance(channel_name, str) or not channel_name.strip():
            return jsonify({
                "error": "Channel name is required",
                "details": {"kind": "bad_request", "message": "Send a JSON body like {\"channelName\": \"general\"}"},
            }), 400
        logger.info("Analyzing channel", channel=channel_name)
        result = services.pipeline.analyze(channel_name)
        return jsonify(result.to_dict())

    @app.route("/api/diagnostics")
    def diagnostics():
        results = {
            "errors": [],
            "installation": {"requiredScopes": REQUIRED_SCOPES},
            "auth": None,
            "channels": {"total": 0, "memberOf": 0, "lastUpdated": 0},
        }
        try:
            auth = services.gateway.auth_info()
            results["auth"] = auth
            if auth.get("scopes") is not None:
                results["installation"]["missingScopes"] = [
                    s for s in REQUIRED_SCOPES if s not in auth["scopes"]
                ]
        except ChannelPulseError as e:
            results["errors"].append(f"Auth test failed: {e.message}")
        try:
            record = services.cache.read()
            results["channels"] = {
                "total": len(record.channels),
                "memberOf": sum(1 for c in record.channels if c.is_member),
                "lastUpdated": record.last_updated,
            }
        except OSError as e:
            results["errors"].append(f"Channel cache unreadable: {e}")
        results["success"] = not results["errors"]
        return jsonify(results)

    return app
