"""
ClawPay Admin API - operator actions, gated by the X-Admin-Key header.

Endpoints:
    POST /api/v1/admin/api-keys                   - Issue a pending agent API key
    POST /api/v1/admin/api-keys/<hash>/approve    - Approve a key
    POST /api/v1/admin/api-keys/<hash>/revoke     - Revoke a key
    POST /api/v1/admin/rescan                     - Run one discovery cycle now
    POST /api/v1/admin/rewards/<id>/fail          - Mark a pending reward failed
    POST /api/v1/admin/reputation/rebuild         - Recompute reputation from settled rewards
"""

import hmac
import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from auth_gate import issue_api_key, set_api_key_status
from errors import AuthError, ConflictError, NotFoundError, ValidationError
from validation import is_valid_handle, is_valid_reward_id

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1/admin")

AGENT_PERMISSIONS = ("read", "submit", "claim")


def require_admin(f):
    """Compare X-Admin-Key against ADMIN_API_KEY. Disabled entirely when no key is configured."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_KEY") or ""
        provided = request.headers.get("X-Admin-Key", "")
        if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
            logger.warning("admin auth failed | ip=%s path=%s", request.remote_addr, request.path)
            raise AuthError("Admin key required", code="admin_required")
        return f(*args, **kwargs)
    return decorated_function


def _services():
    return current_app.extensions["clawpay"]


# =============================================================================
# API KEYS
# =============================================================================

@admin_bp.route("/api-keys", methods=["POST"])
@require_admin
def create_api_key():
    body = request.get_json(silent=True) or {}
    handle = body.get("handle") or ""
    if not is_valid_handle(handle):
        raise ValidationError("Valid handle required", code="invalid_handle")

    permissions = body.get("permissions") or list(AGENT_PERMISSIONS)
    unknown = [p for p in permissions if p not in AGENT_PERMISSIONS]
    if unknown:
        raise ValidationError(f"Unknown permissions: {', '.join(map(str, unknown))}", code="invalid_permissions")
    rate_limit = body.get("rate_limit")
    if rate_limit is not None and (not isinstance(rate_limit, int) or rate_limit < 1):
        raise ValidationError("rate_limit must be a positive integer", code="invalid_rate_limit")

    api_key, record = issue_api_key(_services().store, handle, rate_limit=rate_limit, permissions=permissions)
    return jsonify({
        "success": True,
        "api_key": api_key,
        "key_hash": record.key_hash,
        "handle": record.handle,
        "status": record.status,
        "permissions": record.permissions,
        "message": "Store this key now; it cannot be shown again.",
    }), 201


def _set_key_status(key_hash, status):
    record = set_api_key_status(_services().store, key_hash, status)
    if record is None:
        raise NotFoundError("API key not found", code="api_key_not_found")
    return jsonify({"success": True, "key_hash": record.key_hash, "handle": record.handle, "status": record.status})


@admin_bp.route("/api-keys/<key_hash>/approve", methods=["POST"])
@require_admin
def approve_api_key(key_hash):
    return _set_key_status(key_hash, "approved")


@admin_bp.route("/api-keys/<key_hash>/revoke", methods=["POST"])
@require_admin
def revoke_api_key(key_hash):
    return _set_key_status(key_hash, "revoked")


# =============================================================================
# OPERATIONS
# =============================================================================

@admin_bp.route("/rescan", methods=["POST"])
@require_admin
def rescan():
    summary = _services().scheduler.run_once()
    if summary is None:
        raise ConflictError("A discovery cycle is already running", code="cycle_running")
    return jsonify({"success": True, "cycle": summary})


@admin_bp.route("/rewards/<reward_id>/fail", methods=["POST"])
@require_admin
def fail_reward(reward_id):
    if not is_valid_reward_id(reward_id):
        raise ValidationError("Invalid reward_id format", code="invalid_reward_id")
    body = request.get_json(silent=True) or {}
    reason = (body.get("reason") or "").strip()
    if not reason:
        raise ValidationError("reason required", code="missing_reason")

    queue = _services().reward_queue
    if queue.get(reward_id) is None:
        raise NotFoundError("Reward not found", code="reward_not_found")
    reward = queue.mark_failed(reward_id, reason[:500])
    if reward is None:
        raise ConflictError("Reward is not pending or has a settlement in flight", code="not_failable")
    return jsonify({"success": True, "reward": reward.public_view()})


@admin_bp.route("/reputation/rebuild", methods=["POST"])
@require_admin
def rebuild_reputation():
    body = request.get_json(silent=True) or {}
    handle = body.get("handle")
    if handle and not is_valid_handle(handle):
        raise ValidationError("Invalid handle", code="invalid_handle")
    records = _services().reputation.rebuild(handle)
    return jsonify({"success": True, "rebuilt": len(records)})
