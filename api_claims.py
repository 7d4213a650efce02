"""
ClawPay Claims API - wallet login, delegation and reward claiming.

Endpoints:
    POST /api/v1/login                 - Link an X handle to a wallet
    POST /api/v1/authorize             - Record a vault delegation (approve tx signed client-side)
    GET  /api/v1/fund-status?wallet=   - Live balance / allowance of a wallet
    GET  /api/v1/claims?handle=        - Pending rewards for a handle, with sender ability to pay
    POST /api/v1/claim                 - Settle one pending reward to a wallet
    GET  /api/v1/payments/<handle>     - Reward history (sent and received)

Claim outcomes map to HTTP status codes:
    not_found 404, already_claimed 409, handle_mismatch 403,
    insufficient_funds / not_authorized 402, chain_timeout 504, transfer_failed 502
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from errors import ValidationError
from validation import is_valid_handle, is_valid_wallet

logger = logging.getLogger(__name__)

claims_bp = Blueprint("claims", __name__, url_prefix="/api/v1")

CLAIM_ERROR_STATUS = {
    "not_found": 404,
    "already_claimed": 409,
    "handle_mismatch": 403,
    "insufficient_funds": 402,
    "not_authorized": 402,
    "chain_timeout": 504,
    "transfer_failed": 502,
}


def _services():
    return current_app.extensions["clawpay"]


def _require_handle(value, field="handle"):
    if not value or not is_valid_handle(value):
        raise ValidationError(f"Valid {field} required", code=f"invalid_{field}")
    return value


def claim_response(result):
    """Render a ClaimResult as (json, status)."""
    status = 200 if result.success else CLAIM_ERROR_STATUS.get(result.error, 500)
    return jsonify(result.to_dict()), status


# =============================================================================
# WALLETS
# =============================================================================

@claims_bp.route("/login", methods=["POST"])
def login():
    """
    Request:
        {"x_username": "agent_handle", "wallet_address": "...", "x_user_id": "123"}
    """
    body = request.get_json(silent=True) or {}
    handle = _require_handle(body.get("x_username"), "x_username")
    user = _services().settlement.register_wallet(handle, body.get("wallet_address"),
                                                  external_id=body.get("x_user_id"))
    return jsonify({"success": True, "user": user})


@claims_bp.route("/authorize", methods=["POST"])
def authorize():
    body = request.get_json(silent=True) or {}
    delegation = _services().settlement.record_authorization(
        (body.get("wallet_address") or "").strip(),
        body.get("amount"),
        signature=body.get("signature"),
        handle=body.get("x_username"),
    )
    return jsonify({
        "success": True,
        "message": "Authorization recorded",
        "wallet_address": delegation.wallet,
        "amount": str(delegation.allowance_amount),
    })


@claims_bp.route("/fund-status", methods=["GET"])
def fund_status():
    wallet = (request.args.get("wallet") or "").strip()
    if not is_valid_wallet(wallet):
        raise ValidationError("Valid wallet required", code="invalid_wallet")
    status = _services().settlement.fund_status(wallet)
    return jsonify({"success": True, "wallet": wallet, **status})


# =============================================================================
# CLAIMS
# =============================================================================

@claims_bp.route("/claims", methods=["GET"])
def list_claims():
    handle = _require_handle(request.args.get("handle"))
    claims = _services().settlement.claims_for(handle)
    return jsonify({"success": True, "claims": claims, "count": len(claims)})


@claims_bp.route("/claim", methods=["POST"])
def claim():
    """
    Request:
        {"reward_id": "scout_agent_1700000000000", "wallet_address": "...", "x_username": "agent"}
    """
    body = request.get_json(silent=True) or {}
    reward_id = (body.get("reward_id") or "").strip()
    if not reward_id:
        raise ValidationError("reward_id required", code="missing_reward_id")
    handle = _require_handle(body.get("x_username"), "x_username")

    result = _services().settlement.claim(reward_id, (body.get("wallet_address") or "").strip(), handle)
    if not result.success:
        logger.info("claim rejected | id=%s handle=%s error=%s", reward_id, handle, result.error)
    return claim_response(result)


@claims_bp.route("/payments/<handle>", methods=["GET"])
def payments(handle):
    _require_handle(handle)
    limit = min(request.args.get("limit", 100, type=int), 500)
    rewards = _services().reward_queue.history_for(handle, limit=limit)
    return jsonify({"success": True, "payments": [r.public_view() for r in rewards], "count": len(rewards)})
