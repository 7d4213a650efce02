"""
Reputation aggregator - trust score and tier derived from settled rewards.

Each completed settlement adds the reward's evaluation score (15 when it
has none, e.g. bounty payouts) to the recipient's cumulative score, adds
the amount to total earned and bumps the evaluation count. Applying the
same reward twice is a no-op, and rebuild() recomputes every record from
the completed rewards alone.
"""

import logging
from decimal import Decimal

from bounty_ledger import SKILL_ID as BOUNTY_SKILL_ID
from models import PendingReward, ReputationRecord, money, normalize_handle, to_iso, utcnow
from reward_queue import REWARDS

logger = logging.getLogger(__name__)

REPUTATION = "reputation"
DEFAULT_SETTLEMENT_SCORE = 15

# (threshold, tier), highest first
TIER_BREAKPOINTS = [
    (500, "LEGENDARY"),
    (250, "ELITE"),
    (100, "TRUSTED"),
    (30, "CONTRIBUTOR"),
]


def compute_trust_tier(score):
    for threshold, tier in TIER_BREAKPOINTS:
        if score >= threshold:
            return tier
    return "NEWCOMER"


def _apply(record, reward):
    record.cumulative_score += (reward.evaluation_score if reward.evaluation_score is not None
                                else DEFAULT_SETTLEMENT_SCORE)
    record.total_earned += reward.amount
    record.times_evaluated += 1
    if reward.source_skill_id == BOUNTY_SKILL_ID:
        record.bounties_completed += 1
    record.settled_reward_ids.append(reward.id)
    record.trust_tier = compute_trust_tier(record.cumulative_score)
    record.updated_at = to_iso(utcnow())


class ReputationAggregator:
    def __init__(self, store):
        self.store = store

    def get(self, handle):
        handle = normalize_handle(handle)
        doc = self.store.get(REPUTATION, handle)
        return ReputationRecord.from_doc(doc) if doc else ReputationRecord(handle=handle)

    def record_settlement(self, reward: PendingReward):
        """Fold one completed reward into its recipient's record."""
        if reward.status != "completed":
            raise ValueError(f"Reward {reward.id} is not completed")

        def fold(doc):
            record = ReputationRecord.from_doc(doc) if doc else ReputationRecord(handle=reward.recipient)
            if reward.id in record.settled_reward_ids:
                return None, record
            _apply(record, reward)
            return record.to_doc(), record

        record = self.store.transact(REPUTATION, reward.recipient, fold)
        logger.info("reputation updated | handle=%s score=%d tier=%s",
                    record.handle, record.cumulative_score, record.trust_tier)
        return record

    def rebuild(self, handle=None):
        """Recompute records from completed rewards. Returns the rebuilt records."""
        handle = normalize_handle(handle) if handle else None
        docs = self.store.query(
            REWARDS,
            where=lambda d: d.get("status") == "completed" and (handle is None or d.get("recipient") == handle),
            order_by="completed_at",
        )

        # Start every affected handle from zero, including ones with no completed rewards left.
        existing = [handle] if handle else [d.get("handle") for d in self.store.query(REPUTATION)]
        records = {h: ReputationRecord(handle=h) for h in existing if h}
        for doc in docs:
            reward = PendingReward.from_doc(doc)
            record = records.setdefault(reward.recipient, ReputationRecord(handle=reward.recipient))
            _apply(record, reward)

        for record in records.values():
            if not record.settled_reward_ids:
                record.updated_at = to_iso(utcnow())
            self.store.set(REPUTATION, record.handle, record.to_doc())
        logger.info("reputation rebuilt | handles=%d rewards=%d", len(records), len(docs))
        return list(records.values())

    def leaderboard(self, limit=30):
        docs = self.store.query(REPUTATION, order_by=lambda d: d.get("cumulative_score") or 0,
                                reverse=True, limit=limit)
        return [ReputationRecord.from_doc(d) for d in docs]

    def summary(self):
        records = [ReputationRecord.from_doc(d) for d in self.store.query(REPUTATION)]
        tiers = {}
        for record in records:
            tiers[record.trust_tier] = tiers.get(record.trust_tier, 0) + 1
        return {
            "agents": len(records),
            "total_earned": money(sum((r.total_earned for r in records), Decimal("0"))),
            "tiers": tiers,
        }
