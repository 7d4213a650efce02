"""
ClawPay Agents API.

Public registry (IP rate-limited):
    GET  /api/v1/agents?verdict=          - Evaluated agents, best score first
    GET  /api/v1/agents/<username>        - One agent's latest evaluation

Agent surface (API key required, per-key rate limit):
    GET  /api/v1/agent/me
    GET  /api/v1/agent/bounties
    POST /api/v1/agent/bounties/<id>/submit
    GET  /api/v1/agent/claims
    POST /api/v1/agent/claim
    POST /api/v1/agent/gas-fund
    GET  /api/v1/agent/reputation/<handle>
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from api_bounties import bounty_view
from api_claims import claim_response
from auth_gate import require_agent_key
from discovery import AGENTS
from errors import NotFoundError, ValidationError
from models import VERDICTS, normalize_handle
from validation import is_valid_handle

logger = logging.getLogger(__name__)

agents_bp = Blueprint("agents", __name__, url_prefix="/api/v1")
agent_api_bp = Blueprint("agent_api", __name__, url_prefix="/api/v1/agent")

PUBLIC_AGENT_FIELDS = (
    "username", "display_name", "score", "is_agent", "verdict", "reward_amount", "reason",
    "contributions", "method", "source", "profile_image", "last_evaluated_at",
)


def _services():
    return current_app.extensions["clawpay"]


def agent_view(doc):
    return {k: doc.get(k) for k in PUBLIC_AGENT_FIELDS}


# =============================================================================
# PUBLIC REGISTRY
# =============================================================================

@agents_bp.route("/agents", methods=["GET"])
def list_agents():
    verdict = (request.args.get("verdict") or "").upper() or None
    if verdict and verdict not in VERDICTS:
        raise ValidationError(f"Invalid verdict. Valid: {', '.join(VERDICTS)}", code="invalid_verdict")
    limit = max(1, min(request.args.get("limit", 50, type=int), 200))

    docs = _services().store.query(
        AGENTS,
        where=(lambda d: d.get("verdict") == verdict) if verdict else None,
        order_by=lambda d: d.get("score") or 0,
        reverse=True,
        limit=limit,
    )
    return jsonify({"success": True, "agents": [agent_view(d) for d in docs], "count": len(docs)})


@agents_bp.route("/agents/<username>", methods=["GET"])
def get_agent(username):
    if not is_valid_handle(username):
        raise ValidationError("Invalid username format", code="invalid_username")
    doc = _services().store.get(AGENTS, normalize_handle(username))
    if doc is None:
        raise NotFoundError("Agent not found", code="agent_not_found")
    return jsonify({"success": True, "agent": agent_view(doc)})


# =============================================================================
# AUTHENTICATED AGENT SURFACE
# =============================================================================

@agent_api_bp.route("/me", methods=["GET"])
@require_agent_key()
def me():
    return jsonify({"success": True, "agent": g.agent})


@agent_api_bp.route("/bounties", methods=["GET"])
@require_agent_key("read")
def agent_bounties():
    bounties = [b for b in _services().ledger.list_bounties(for_handle=g.agent["handle"])
                if b.status in ("open", "in_progress")]
    return jsonify({
        "success": True,
        "bounties": [bounty_view(b, include_submissions=False) for b in bounties],
        "count": len(bounties),
    })


@agent_api_bp.route("/bounties/<bounty_id>/submit", methods=["POST"])
@require_agent_key("submit")
def agent_submit(bounty_id):
    body = request.get_json(silent=True) or {}
    bounty = _services().ledger.submit_proof(g.agent["handle"], bounty_id, body.get("proof") or "")
    logger.info("agent submission | handle=%s bounty=%s", g.agent["handle"], bounty_id)
    return jsonify({"success": True, "message": "Submission received", "bounty_id": bounty.id,
                    "status": bounty.status})


@agent_api_bp.route("/claims", methods=["GET"])
@require_agent_key("read")
def agent_claims():
    claims = _services().settlement.claims_for(g.agent["handle"])
    return jsonify({"success": True, "claims": claims, "count": len(claims)})


@agent_api_bp.route("/claim", methods=["POST"])
@require_agent_key("claim")
def agent_claim():
    body = request.get_json(silent=True) or {}
    reward_id = (body.get("reward_id") or "").strip()
    if not reward_id:
        raise ValidationError("reward_id required", code="missing_reward_id")
    result = _services().settlement.claim(reward_id, (body.get("wallet_address") or "").strip(),
                                          g.agent["handle"])
    return claim_response(result)


@agent_api_bp.route("/gas-fund", methods=["POST"])
@require_agent_key("claim")
def agent_gas_fund():
    body = request.get_json(silent=True) or {}
    wallet = (body.get("wallet") or body.get("wallet_address") or "").strip()
    if not wallet:
        raise ValidationError("wallet required", code="missing_wallet")
    return jsonify(_services().gas_funder.fund(wallet, g.agent["handle"]))


@agent_api_bp.route("/reputation/<handle>", methods=["GET"])
@require_agent_key("read")
def agent_reputation(handle):
    if not is_valid_handle(handle):
        raise ValidationError("Invalid handle format", code="invalid_handle")
    record = _services().reputation.get(handle)
    return jsonify({"success": True, "reputation": record.public_view()})
