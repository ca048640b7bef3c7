# backend/server.py
import os
import logging
from typing import Any, List, Optional, Union

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env"), override=False)

from cache import register_fetcher  # noqa: E402
from linkedin import fetch_linkedin_metrics  # noqa: E402
from metrics_service import MetricsService, build_default_service  # noqa: E402
from scheduler import CacheMaintenanceScheduler  # noqa: E402

# Configurar logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


DEFAULT_DEV_ORIGINS = [
    "http://localhost:3010",
    "http://127.0.0.1:3010",
]
TRUE_VALUES = {"1", "true", "yes", "on"}


def _resolve_allowed_origins() -> Union[str, List[str]]:
    raw_values = []
    env_multiple = os.getenv("FRONTEND_ORIGINS")
    env_single = os.getenv("FRONTEND_ORIGIN")
    if env_multiple:
        raw_values.append(env_multiple)
    if env_single:
        raw_values.append(env_single)

    normalized: List[str] = []
    for chunk in raw_values:
        for item in (piece.strip() for piece in chunk.split(",")):
            if item and item not in normalized:
                normalized.append(item)

    if not normalized:
        return DEFAULT_DEV_ORIGINS
    if len(normalized) == 1:
        return normalized[0]
    return normalized


app = Flask(__name__)
CORS(
    app,
    resources={r"/api/*": {"origins": _resolve_allowed_origins()}},
    supports_credentials=True,
)

AUTH_SECRET_KEY = os.getenv("AUTH_SECRET_KEY") or os.getenv("APP_SECRET_KEY")
if not AUTH_SECRET_KEY:
    AUTH_SECRET_KEY = "change-me"
    logger.warning("AUTH_SECRET_KEY not set; using insecure fallback token secret.")

AUTH_SERIALIZER = URLSafeTimedSerializer(AUTH_SECRET_KEY, salt="dashboardsocial-auth")
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("AUTH_TOKEN_TTL_SECONDS", "86400"))

register_fetcher("linkedin", fetch_linkedin_metrics)

service: MetricsService = build_default_service()


def _flag(value: Optional[Any]) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in TRUE_VALUES


def _issue_auth_token(user_id: str) -> str:
    return AUTH_SERIALIZER.dumps({"sub": user_id})


def _decode_auth_token(token: str) -> Optional[str]:
    try:
        data = AUTH_SERIALIZER.loads(token, max_age=AUTH_TOKEN_TTL_SECONDS)
        return data.get("sub")
    except (BadSignature, SignatureExpired):
        return None


def _extract_bearer_token(req) -> Optional[str]:
    header = req.headers.get("Authorization", "").strip()
    if header.lower().startswith("bearer "):
        candidate = header[7:].strip()
        if candidate:
            return candidate
    token = req.args.get("token")
    if token:
        return token.strip()
    return None


def _authenticate_request(req):
    token = _extract_bearer_token(req)
    if not token:
        return None, (jsonify({"error": "missing token"}), 401)
    user_id = _decode_auth_token(token)
    if not user_id:
        return None, (jsonify({"error": "invalid or expired token"}), 401)
    return user_id, None


@app.get("/api/health")
def health() -> Any:
    return jsonify({"status": "ok", "inFlight": service.cache.in_flight()})


@app.get("/api/<platform>/metrics")
def platform_metrics(platform: str) -> Any:
    user_id, error = _authenticate_request(request)
    if error:
        return error

    result = service.get_metrics(
        user_id,
        platform,
        period=request.args.get("period", "month"),
        force_refresh=_flag(request.args.get("forceRefresh")),
    )
    return jsonify(result)


@app.post("/api/competitors/compare")
def competitor_compare() -> Any:
    user_id, error = _authenticate_request(request)
    if error:
        return error

    body = request.get_json(silent=True) or {}
    own_domain = str(body.get("yourDomain") or body.get("ownDomain") or "").strip()
    competitor_domain = str(body.get("competitorDomain") or "").strip()
    if not own_domain or not competitor_domain:
        return jsonify({"error": "yourDomain and competitorDomain are required"}), 400

    handles = body.get("handles") or {}
    if not isinstance(handles, dict):
        return jsonify({"error": "handles must be an object"}), 400

    result = service.get_comparison(
        user_id,
        own_domain,
        competitor_domain,
        handles,
        force_refresh=_flag(body.get("forceRefresh")),
    )
    return jsonify(result)


@app.delete("/api/competitors/cache")
def competitor_cache_delete() -> Any:
    user_id, error = _authenticate_request(request)
    if error:
        return error

    body = request.get_json(silent=True) or {}
    own_domain = str(body.get("yourDomain") or body.get("ownDomain") or request.args.get("yourDomain") or "").strip()
    competitor_domain = str(body.get("competitorDomain") or request.args.get("competitorDomain") or "").strip()
    try:
        deleted = service.delete_comparison(user_id, own_domain, competitor_domain)
    except ValueError as err:
        return jsonify({"error": str(err)}), 400
    return jsonify({"success": True, "deleted": deleted})


@app.delete("/api/cache")
def cache_clear_all() -> Any:
    user_id, error = _authenticate_request(request)
    if error:
        return error

    count = service.clear_all(user_id)
    return jsonify({"success": True, "deleted": count})


@app.post("/api/cache/<platform>/invalidate")
def cache_invalidate(platform: str) -> Any:
    user_id, error = _authenticate_request(request)
    if error:
        return error

    count = service.invalidate(user_id, platform)
    return jsonify({"success": True, "platform": platform.lower(), "invalidated": count})


@app.get("/api/cache/stats")
def cache_stats() -> Any:
    user_id, error = _authenticate_request(request)
    if error:
        return error
    return jsonify(service.get_cache_stats(user_id))


@app.post("/api/cache/purge")
def cache_purge() -> Any:
    _, error = _authenticate_request(request)
    if error:
        return error

    try:
        count = service.purge_expired()
    except Exception as err:  # noqa: BLE001
        logger.exception("Failed to purge expired cache entries")
        return jsonify({"error": str(err)}), 500
    return jsonify({"success": True, "purged": count})


_maintenance_scheduler: Optional[CacheMaintenanceScheduler] = None
if os.getenv("CACHE_MAINTENANCE_AUTOSTART", "1") != "0":
    should_start_scheduler = True
    if app.debug:
        should_start_scheduler = os.getenv("WERKZEUG_RUN_MAIN") == "true"
    if should_start_scheduler:
        _maintenance_scheduler = CacheMaintenanceScheduler(service)
        _maintenance_scheduler.start()


if __name__ == "__main__":
    debug_env = os.getenv("FLASK_DEBUG")
    debug_mode = True
    if debug_env is not None:
        debug_mode = debug_env.lower() not in {"0", "false", "no"}
    run_host = os.getenv("FLASK_RUN_HOST") or os.getenv("HOST") or "0.0.0.0"
    run_port = int(os.getenv("PORT", "3001"))
    app.run(host=run_host, port=run_port, debug=debug_mode)
