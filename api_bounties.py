"""
ClawPay Bounties API - task postings and proof-of-work submissions.

Endpoints:
    GET  /api/v1/bounties                 - List bounties (status, limit, handle)
    POST /api/v1/bounties                 - Post a bounty
    GET  /api/v1/bounties/<id>            - Bounty details
    POST /api/v1/bounties/<id>/submit     - Submit proof of work
    POST /api/v1/bounties/<id>/evaluate   - Approve or reject a submission (admin)
    POST /api/v1/bounties/<id>/cancel     - Cancel a bounty (admin)

Bounty lifecycle: DRAFT → OPEN → IN_PROGRESS → EVALUATING → COMPLETED | CANCELLED
"""

import logging
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request

from api_admin import require_admin
from errors import ValidationError
from models import BOUNTY_STATUSES, to_iso, utcnow

logger = logging.getLogger(__name__)

bounties_bp = Blueprint("bounties", __name__, url_prefix="/api/v1")

MAX_DEADLINE_HOURS = 24 * 30


def _ledger():
    return current_app.extensions["clawpay"].ledger


def bounty_view(bounty, include_submissions=True):
    data = bounty.to_doc()
    data["submission_count"] = len(bounty.submissions)
    if not include_submissions:
        data.pop("submissions")
    return data


def _deadline_from(body):
    hours = body.get("deadline_hours")
    if hours is None:
        return None
    if not isinstance(hours, (int, float)) or hours <= 0 or hours > MAX_DEADLINE_HOURS:
        raise ValidationError(f"deadline_hours must be between 1 and {MAX_DEADLINE_HOURS}",
                              code="invalid_deadline")
    return to_iso(utcnow() + timedelta(hours=hours))


@bounties_bp.route("/bounties", methods=["GET"])
def list_bounties():
    status = request.args.get("status")
    if status and status not in BOUNTY_STATUSES:
        raise ValidationError(f"Invalid status. Valid: {', '.join(BOUNTY_STATUSES)}", code="invalid_status")
    limit = max(1, min(request.args.get("limit", 50, type=int), 200))

    bounties = _ledger().list_bounties(status=status, limit=limit, for_handle=request.args.get("handle"))
    return jsonify({
        "success": True,
        "bounties": [bounty_view(b, include_submissions=False) for b in bounties],
        "count": len(bounties),
    })


@bounties_bp.route("/bounties", methods=["POST"])
def create_bounty():
    """
    Request:
        {
            "title": "Build a Moltbook notification skill",
            "description": "Deliverables...",
            "reward": 1.5,
            "creator": "agent_handle",
            "tags": ["ai-agent"],
            "deadline_hours": 48,
            "draft": false
        }
    """
    body = request.get_json(silent=True) or {}
    tags = body.get("tags") or []
    if not isinstance(tags, list):
        raise ValidationError("tags must be a list", code="invalid_tags")

    bounty = _ledger().post_bounty(
        body.get("title"),
        body.get("description"),
        body.get("reward"),
        creator=body.get("creator"),
        tags=tags,
        deadline=_deadline_from(body),
        draft=bool(body.get("draft")),
    )
    return jsonify({"success": True, "bounty": bounty_view(bounty)}), 201


@bounties_bp.route("/bounties/<bounty_id>", methods=["GET"])
def get_bounty(bounty_id):
    return jsonify({"success": True, "bounty": bounty_view(_ledger().get(bounty_id))})


@bounties_bp.route("/bounties/<bounty_id>/submit", methods=["POST"])
def submit_bounty(bounty_id):
    body = request.get_json(silent=True) or {}
    bounty = _ledger().submit_proof(body.get("username") or "", bounty_id, body.get("proof") or "")
    return jsonify({"success": True, "message": "Submission received", "bounty": bounty_view(bounty)})


@bounties_bp.route("/bounties/<bounty_id>/evaluate", methods=["POST"])
@require_admin
def evaluate_bounty(bounty_id):
    """
    Request:
        {"username": "winner_handle", "action": "approve" | "reject", "notes": "..."}
    """
    body = request.get_json(silent=True) or {}
    username = body.get("username") or ""
    action = body.get("action")

    if action == "approve":
        bounty, reward = _ledger().complete_bounty(bounty_id, username)
        return jsonify({
            "success": True,
            "bounty": bounty_view(bounty),
            "reward": reward.public_view(),
        })
    if action == "reject":
        bounty = _ledger().reject_submission(bounty_id, username, notes=body.get("notes") or "")
        return jsonify({"success": True, "bounty": bounty_view(bounty)})
    raise ValidationError("action must be 'approve' or 'reject'", code="invalid_action")


@bounties_bp.route("/bounties/<bounty_id>/cancel", methods=["POST"])
@require_admin
def cancel_bounty(bounty_id):
    return jsonify({"success": True, "bounty": bounty_view(_ledger().cancel_bounty(bounty_id))})
