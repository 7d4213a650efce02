"""
ClawPay Reputation API - trust scores and leaderboard
GET /api/v1/reputation/leaderboard - Top agents by cumulative score
GET /api/v1/reputation/stats - Overall reputation stats
GET /api/v1/reputation/<handle> - Single agent's record

Scores come only from settled rewards: each settlement adds the reward's
evaluation score (15 for bounty payouts) and its amount.
"""

from flask import Blueprint, current_app, jsonify, request

from errors import ValidationError
from reputation import TIER_BREAKPOINTS
from validation import is_valid_handle

reputation_bp = Blueprint("reputation", __name__, url_prefix="/api/v1/reputation")

TIER_INFO = {tier: {"min_score": threshold} for threshold, tier in TIER_BREAKPOINTS}
TIER_INFO["NEWCOMER"] = {"min_score": 0}


def _reputation():
    return current_app.extensions["clawpay"].reputation


@reputation_bp.route("/leaderboard", methods=["GET"])
def leaderboard():
    limit = max(1, min(request.args.get("limit", 30, type=int), 100))
    records = _reputation().leaderboard(limit=limit)
    board = []
    for rank, record in enumerate(records, start=1):
        entry = record.public_view()
        entry["rank"] = rank
        board.append(entry)
    return jsonify({"success": True, "leaderboard": board, "count": len(board), "tiers": TIER_INFO})


@reputation_bp.route("/stats", methods=["GET"])
def stats():
    return jsonify({"success": True, "stats": _reputation().summary()})


@reputation_bp.route("/<handle>", methods=["GET"])
def get_reputation(handle):
    if not is_valid_handle(handle):
        raise ValidationError("Invalid handle format", code="invalid_handle")
    return jsonify({"success": True, "reputation": _reputation().get(handle).public_view()})
