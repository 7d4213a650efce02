"""
Typed records for everything ClawPay persists.

Documents in the store are plain JSON dicts. Each record type converts to
and from that form at the store boundary so the rest of the code never
deals with missing keys. Money is Decimal in memory and a string on disk.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from errors import PersistenceError

# === Enumerations ===
API_KEY_STATUSES = ("pending", "approved", "revoked")
VERDICTS = ("REWARD", "WATCH", "IGNORE", "REJECT")
EVAL_METHODS = ("ai", "heuristic")
REWARD_STATUSES = ("pending", "evaluating", "completed", "failed")
BOUNTY_STATUSES = ("draft", "open", "in_progress", "evaluating", "completed", "cancelled")
SUBMISSION_STATUSES = ("pending", "approved", "rejected")
TRUST_TIERS = ("NEWCOMER", "CONTRIBUTOR", "TRUSTED", "ELITE", "LEGENDARY")


# =============================================================================
# HELPERS
# =============================================================================

def utcnow():
    return datetime.now(timezone.utc)


def to_iso(dt):
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(value):
    """Parse an ISO timestamp; None or garbage gives None."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_handle(handle):
    """'@Alice ' -> 'alice'."""
    if not handle:
        return ""
    return str(handle).strip().lstrip("@").strip().lower()


def to_decimal(value, default=None):
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def money(value):
    """Decimal -> str for storage and JSON responses."""
    return None if value is None else format(value.normalize(), "f")


def _require(doc, key, kind):
    if not isinstance(doc, dict):
        raise PersistenceError(f"Malformed {kind} document: not an object")
    if not doc.get(key):
        raise PersistenceError(f"Malformed {kind} document: missing {key}")
    return doc[key]


def _check_status(value, allowed, kind):
    if value not in allowed:
        raise PersistenceError(f"Malformed {kind} document: bad status {value!r}")
    return value


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class ApiKeyRecord:
    key_hash: str
    handle: str
    status: str = "pending"
    permissions: List[str] = field(default_factory=lambda: ["read"])
    rate_limit: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_doc(cls, doc):
        key_hash = _require(doc, "key_hash", "api key")
        rate_limit = doc.get("rate_limit")
        return cls(
            key_hash=key_hash,
            handle=normalize_handle(doc.get("handle")),
            status=_check_status(doc.get("status", "pending"), API_KEY_STATUSES, "api key"),
            permissions=list(doc.get("permissions") or ["read"]),
            rate_limit=int(rate_limit) if rate_limit else None,
            created_at=doc.get("created_at"),
        )

    def to_doc(self):
        return asdict(self)


@dataclass
class Evaluation:
    score: int
    is_agent: bool
    verdict: str
    reason: str
    reward_amount: Decimal
    contributions: List[str]
    method: str

    @classmethod
    def from_dict(cls, data, method):
        """
        Build from an untrusted dict (AI output or stored doc).
        Raises ValueError on any shape problem.
        """
        if not isinstance(data, dict):
            raise ValueError("evaluation must be an object")
        score = data.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ValueError("score must be a number")
        if not 0 <= score <= 100:
            raise ValueError("score out of range")
        verdict = str(data.get("verdict", "")).upper()
        if verdict not in VERDICTS:
            raise ValueError(f"unknown verdict {verdict!r}")
        reward = to_decimal(data.get("reward_amount"))
        if reward is None or reward < 0:
            raise ValueError("reward_amount must be a non-negative number")
        contributions = data.get("contributions") or []
        if not isinstance(contributions, list):
            raise ValueError("contributions must be a list")
        return cls(
            score=int(round(score)),
            is_agent=bool(data.get("is_agent", False)),
            verdict=verdict,
            reason=str(data.get("reason", ""))[:500],
            reward_amount=reward,
            contributions=[str(c) for c in contributions][:20],
            method=method,
        )

    def to_doc(self):
        doc = asdict(self)
        doc["reward_amount"] = money(self.reward_amount)
        return doc


@dataclass
class Agent:
    username: str
    external_id: Optional[str] = None
    bio: str = ""
    score: int = 0
    verdict: str = "IGNORE"
    is_agent: bool = False
    reward_amount: Decimal = Decimal("0")
    contributions: List[str] = field(default_factory=list)
    method: str = "heuristic"
    source: Optional[str] = None
    last_evaluated_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_doc(cls, doc):
        username = _require(doc, "username", "agent")
        return cls(
            username=normalize_handle(username),
            external_id=doc.get("external_id"),
            bio=doc.get("bio") or "",
            score=int(doc.get("score") or 0),
            verdict=doc.get("verdict") if doc.get("verdict") in VERDICTS else "IGNORE",
            is_agent=bool(doc.get("is_agent", False)),
            reward_amount=to_decimal(doc.get("reward_amount"), Decimal("0")),
            contributions=list(doc.get("contributions") or []),
            method=doc.get("method") if doc.get("method") in EVAL_METHODS else "heuristic",
            source=doc.get("source"),
            last_evaluated_at=doc.get("last_evaluated_at"),
            updated_at=doc.get("updated_at"),
        )

    def to_doc(self):
        doc = asdict(self)
        doc["reward_amount"] = money(self.reward_amount)
        return doc


@dataclass
class PendingReward:
    id: str
    sender: str
    recipient: str
    amount: Decimal
    status: str = "pending"
    reason: str = ""
    source_skill_id: Optional[str] = None
    created_at: Optional[str] = None
    claimed_by: Optional[str] = None
    settlement_tx: Optional[str] = None
    completed_at: Optional[str] = None
    evaluation_score: Optional[int] = None
    evaluation_verdict: Optional[str] = None
    reply_text: Optional[str] = None
    reply_to: Optional[str] = None
    # Settlement bookkeeping
    pending_signature: Optional[str] = None
    pending_wallet: Optional[str] = None
    pending_submitted_at: Optional[str] = None
    lease_until: Optional[str] = None
    lease_token: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_doc(cls, doc):
        reward_id = _require(doc, "id", "reward")
        amount = to_decimal(doc.get("amount"))
        if amount is None or amount <= 0:
            raise PersistenceError(f"Malformed reward document {reward_id}: amount must be > 0")
        score = doc.get("evaluation_score")
        return cls(
            id=reward_id,
            sender=normalize_handle(doc.get("sender")),
            recipient=normalize_handle(_require(doc, "recipient", "reward")),
            amount=amount,
            status=_check_status(doc.get("status", "pending"), REWARD_STATUSES, "reward"),
            reason=doc.get("reason") or "",
            source_skill_id=doc.get("source_skill_id"),
            created_at=doc.get("created_at"),
            claimed_by=doc.get("claimed_by"),
            settlement_tx=doc.get("settlement_tx"),
            completed_at=doc.get("completed_at"),
            evaluation_score=int(score) if score is not None else None,
            evaluation_verdict=doc.get("evaluation_verdict"),
            reply_text=doc.get("reply_text"),
            reply_to=doc.get("reply_to"),
            pending_signature=doc.get("pending_signature"),
            pending_wallet=doc.get("pending_wallet"),
            pending_submitted_at=doc.get("pending_submitted_at"),
            lease_until=doc.get("lease_until"),
            lease_token=doc.get("lease_token"),
            failure_reason=doc.get("failure_reason"),
        )

    def to_doc(self):
        doc = asdict(self)
        doc["amount"] = money(self.amount)
        return doc

    def public_view(self):
        """Fields safe to return from the claims API."""
        return {
            "id": self.id,
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": money(self.amount),
            "status": self.status,
            "reason": self.reason,
            "skill_id": self.source_skill_id,
            "created_at": self.created_at,
            "claimed_by": self.claimed_by,
            "tx_signature": self.settlement_tx,
        }


@dataclass
class Submission:
    username: str
    proof: str
    submitted_at: str
    status: str = "pending"
    notes: str = ""

    @classmethod
    def from_doc(cls, doc):
        return cls(
            username=normalize_handle(_require(doc, "username", "submission")),
            proof=doc.get("proof") or "",
            submitted_at=doc.get("submitted_at") or "",
            status=_check_status(doc.get("status", "pending"), SUBMISSION_STATUSES, "submission"),
            notes=doc.get("notes") or "",
        )


@dataclass
class Bounty:
    id: str
    title: str
    description: str
    reward: Decimal
    creator: str
    status: str = "open"
    tags: List[str] = field(default_factory=list)
    assigned_to: Optional[str] = None
    submissions: List[Submission] = field(default_factory=list)
    deadline: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    fulfilled_by: Optional[str] = None

    @classmethod
    def from_doc(cls, doc):
        bounty_id = _require(doc, "id", "bounty")
        reward = to_decimal(doc.get("reward"))
        if reward is None or reward <= 0:
            raise PersistenceError(f"Malformed bounty document {bounty_id}: reward must be > 0")
        return cls(
            id=bounty_id,
            title=doc.get("title") or "",
            description=doc.get("description") or "",
            reward=reward,
            creator=normalize_handle(doc.get("creator")),
            status=_check_status(doc.get("status", "open"), BOUNTY_STATUSES, "bounty"),
            tags=list(doc.get("tags") or []),
            assigned_to=normalize_handle(doc.get("assigned_to")) or None,
            submissions=[Submission.from_doc(s) for s in doc.get("submissions") or []],
            deadline=doc.get("deadline"),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
            fulfilled_by=doc.get("fulfilled_by"),
        )

    def to_doc(self):
        doc = asdict(self)
        doc["reward"] = money(self.reward)
        return doc

    def submission_by(self, handle):
        handle = normalize_handle(handle)
        for sub in self.submissions:
            if sub.username == handle:
                return sub
        return None


@dataclass
class Delegation:
    wallet: str
    allowance_amount: Decimal
    authorized_at: str
    signature: Optional[str] = None
    handle: Optional[str] = None

    @classmethod
    def from_doc(cls, doc):
        wallet = _require(doc, "wallet", "delegation")
        allowance = to_decimal(doc.get("allowance_amount"))
        if allowance is None or allowance < 0:
            raise PersistenceError(f"Malformed delegation for {wallet}")
        return cls(
            wallet=wallet,
            allowance_amount=allowance,
            authorized_at=doc.get("authorized_at") or "",
            signature=doc.get("signature"),
            handle=doc.get("handle"),
        )

    def to_doc(self):
        doc = asdict(self)
        doc["allowance_amount"] = money(self.allowance_amount)
        return doc


@dataclass
class ReputationRecord:
    handle: str
    cumulative_score: int = 0
    total_earned: Decimal = Decimal("0")
    times_evaluated: int = 0
    bounties_completed: int = 0
    trust_tier: str = "NEWCOMER"
    settled_reward_ids: List[str] = field(default_factory=list)
    updated_at: Optional[str] = None

    @classmethod
    def from_doc(cls, doc):
        handle = _require(doc, "handle", "reputation")
        tier = doc.get("trust_tier")
        return cls(
            handle=normalize_handle(handle),
            cumulative_score=int(doc.get("cumulative_score") or 0),
            total_earned=to_decimal(doc.get("total_earned"), Decimal("0")),
            times_evaluated=int(doc.get("times_evaluated") or 0),
            bounties_completed=int(doc.get("bounties_completed") or 0),
            trust_tier=tier if tier in TRUST_TIERS else "NEWCOMER",
            settled_reward_ids=list(doc.get("settled_reward_ids") or []),
            updated_at=doc.get("updated_at"),
        )

    def to_doc(self):
        doc = asdict(self)
        doc["total_earned"] = money(self.total_earned)
        return doc

    def public_view(self):
        doc = self.to_doc()
        doc.pop("settled_reward_ids")
        return doc
