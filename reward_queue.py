"""
Durable queue of pending rewards.

Rewards are created by the discovery skills and by bounty completion, and
consumed by SettlementExecutor. Inserts are keyed by reward id and never
overwrite, so re-delivering the same batch is harmless. Announcing a reward
on the social feed is a courtesy: its failure is logged and the reward
stands.
"""

import logging

from models import PendingReward, normalize_handle, parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

REWARDS = "rewards"
ACTIVITY_LOG = "agent_logs"


def log_activity(store, kind, message, skill_id):
    """Append a line to the public agent activity feed. Best-effort."""
    try:
        store.append(ACTIVITY_LOG, {
            "type": kind,
            "msg": message,
            "skill_id": skill_id,
            "created_at": to_iso(utcnow()),
        })
    except Exception as e:
        logger.warning("activity log write failed | error=%s", e)


def lease_active(doc, now=None):
    """True while a claim holds the settlement lease on this reward document."""
    lease = parse_iso(doc.get("lease_until"))
    return lease is not None and lease > (now or utcnow())


class RewardQueue:
    def __init__(self, store):
        self.store = store

    def enqueue(self, rewards, notifier=None, skill_name=None):
        """
        Persist rewards that do not exist yet. Returns the newly created ones.

        notifier: optional callable(reward) used to announce each new reward.
        """
        created = []
        for reward in rewards:
            if not reward.created_at:
                reward.created_at = to_iso(utcnow())
            if not self.store.create(REWARDS, reward.id, reward.to_doc()):
                logger.info("reward exists, skipped | id=%s", reward.id)
                continue
            created.append(reward)
            logger.info("reward queued | id=%s recipient=%s amount=%s skill=%s",
                        reward.id, reward.recipient, reward.amount, reward.source_skill_id)
            log_activity(self.store, "ACTION",
                         f"Attributed ${reward.amount} reward to @{reward.recipient} "
                         f"via {skill_name or reward.source_skill_id}. {reward.reason}",
                         reward.source_skill_id)

            if notifier and reward.reply_text:
                try:
                    notifier(reward)
                except Exception as e:
                    logger.warning("reward notification failed | id=%s error=%s", reward.id, e)
                else:
                    log_activity(self.store, "SOCIAL",
                                 f"Announced reward for @{reward.recipient}: ${reward.amount} USDC",
                                 reward.source_skill_id)
        return created

    # === Reads ===

    def get(self, reward_id):
        doc = self.store.get(REWARDS, reward_id)
        return PendingReward.from_doc(doc) if doc else None

    def _query(self, where, limit=None):
        docs = self.store.query(REWARDS, where=where, order_by="created_at", reverse=True, limit=limit)
        return [PendingReward.from_doc(d) for d in docs]

    def pending_for(self, handle):
        handle = normalize_handle(handle)
        return self._query(lambda d: d.get("recipient") == handle and d.get("status") == "pending")

    def history_for(self, handle, limit=100):
        """Rewards sent or received by handle, newest first."""
        handle = normalize_handle(handle)
        return self._query(lambda d: handle in (d.get("recipient"), d.get("sender")), limit=limit)

    def completed(self, handle=None):
        handle = normalize_handle(handle) if handle else None
        return self._query(lambda d: d.get("status") == "completed"
                           and (handle is None or d.get("recipient") == handle))

    # === Terminal failure ===

    def mark_failed(self, reward_id, reason):
        """
        pending -> failed. Refused while a submitted transfer is outstanding,
        since that transfer may still land.
        """
        doc = self.store.conditional_update(
            REWARDS, reward_id,
            lambda d: (d.get("status") == "pending" and not d.get("pending_signature")
                       and not lease_active(d)),
            {"status": "failed", "failure_reason": reason, "lease_until": None},
        )
        if doc is None:
            return None
        logger.info("reward failed | id=%s reason=%s", reward_id, reason)
        return PendingReward.from_doc(doc)
