"""
Bounty Ledger - task postings and proof-of-work submissions.

Bounty lifecycle: DRAFT → OPEN → IN_PROGRESS → EVALUATING → COMPLETED
                  any non-terminal state → CANCELLED
                  EVALUATING → OPEN when every submission has been rejected

A bounty may be assigned to one handle, in which case only that handle can
start it or submit proof. Each handle submits at most once per bounty. All
mutations run as read-modify-write on the single bounty document, so two
agents submitting at once can never lose each other's submission.
"""

import logging
import secrets
import time

from errors import ConflictError, NotFoundError, ValidationError
from models import (
    Bounty,
    PendingReward,
    Submission,
    normalize_handle,
    parse_iso,
    to_decimal,
    to_iso,
    utcnow,
)
from reward_queue import REWARDS, log_activity
from validation import is_valid_bounty_id, is_valid_handle, is_valid_https_url

logger = logging.getLogger(__name__)

BOUNTIES = "bounties"
SKILL_ID = "bounty_board"

# === Configuration ===
TITLE_MAX = 200
DESCRIPTION_MAX = 5000
MAX_TAGS = 10
ACCEPTING = ("open", "in_progress")
CANCELLABLE = ("draft", "open", "in_progress", "evaluating")


def generate_bounty_id():
    return f"bounty_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def bounty_reward_id(bounty_id, handle):
    return f"bounty_{bounty_id}_{normalize_handle(handle)}"


def _check_bounty_id(bounty_id):
    if not is_valid_bounty_id(bounty_id):
        raise ValidationError("Invalid bounty ID format", code="invalid_bounty_id")


def _check_handle(handle, field="handle"):
    if not is_valid_handle(handle or ""):
        raise ValidationError(f"Invalid {field} format", code=f"invalid_{field}")


class BountyLedger:
    def __init__(self, store, system_handle):
        self.store = store
        self.system_handle = normalize_handle(system_handle)

    # === Internals ===

    def _mutate(self, bounty_id, fn):
        """
        Run fn(bounty) under the document lock and persist the bounty it
        returns. fn raises to abort without writing.
        """
        _check_bounty_id(bounty_id)

        def apply(doc):
            if doc is None:
                raise NotFoundError("Bounty not found", code="bounty_not_found")
            bounty = Bounty.from_doc(doc)
            fn(bounty)
            bounty.updated_at = to_iso(utcnow())
            return bounty.to_doc(), bounty

        return self.store.transact(BOUNTIES, bounty_id, apply)

    # === Posting ===

    def post_bounty(self, title, description, reward, creator, tags=None, assigned_to=None,
                    deadline=None, draft=False):
        title = (title or "").strip()
        description = (description or "").strip()
        amount = to_decimal(reward)
        if not title or len(title) > TITLE_MAX:
            raise ValidationError(f"Title is required (max {TITLE_MAX} characters)", code="invalid_title")
        if len(description) > DESCRIPTION_MAX:
            raise ValidationError(f"Description max {DESCRIPTION_MAX} characters", code="invalid_description")
        if amount is None or amount <= 0:
            raise ValidationError("Reward must be a positive amount", code="invalid_reward")
        _check_handle(creator, "creator")
        if assigned_to:
            _check_handle(assigned_to, "assignee")
        if deadline is not None and parse_iso(deadline) is None:
            raise ValidationError("Deadline must be an ISO timestamp", code="invalid_deadline")

        now = to_iso(utcnow())
        bounty = Bounty(
            id=generate_bounty_id(),
            title=title,
            description=description,
            reward=amount,
            creator=normalize_handle(creator),
            status="draft" if draft else "open",
            tags=[str(t)[:40] for t in (tags or [])][:MAX_TAGS],
            assigned_to=normalize_handle(assigned_to) or None,
            deadline=deadline,
            created_at=now,
            updated_at=now,
        )
        self.store.set(BOUNTIES, bounty.id, bounty.to_doc())
        logger.info("bounty posted | id=%s reward=%s creator=%s assigned=%s status=%s",
                    bounty.id, amount, bounty.creator, bounty.assigned_to, bounty.status)
        if not draft:
            log_activity(self.store, "BOUNTY", f'New bounty posted: "{title}" - ${amount} USDC reward', SKILL_ID)
        return bounty

    def publish_bounty(self, bounty_id):
        def apply(bounty):
            if bounty.status != "draft":
                raise ConflictError("Only draft bounties can be published", code="invalid_transition")
            bounty.status = "open"

        bounty = self._mutate(bounty_id, apply)
        log_activity(self.store, "BOUNTY", f'New bounty posted: "{bounty.title}" - ${bounty.reward} USDC reward',
                     SKILL_ID)
        return bounty

    # === Reads ===

    def get(self, bounty_id):
        _check_bounty_id(bounty_id)
        doc = self.store.get(BOUNTIES, bounty_id)
        if doc is None:
            raise NotFoundError("Bounty not found", code="bounty_not_found")
        return Bounty.from_doc(doc)

    def list_bounties(self, status=None, limit=50, for_handle=None):
        """
        Newest first. With for_handle, only bounties that handle may work on:
        unassigned ones and those assigned to it.
        """
        handle = normalize_handle(for_handle) if for_handle else None

        def where(doc):
            if status and doc.get("status") != status:
                return False
            if handle is not None and doc.get("assigned_to") not in (None, "", handle):
                return False
            return True

        docs = self.store.query(BOUNTIES, where=where, order_by="created_at", reverse=True, limit=limit)
        return [Bounty.from_doc(d) for d in docs]

    # === Work ===

    def start_bounty(self, bounty_id, handle):
        _check_handle(handle)
        handle = normalize_handle(handle)

        def apply(bounty):
            if bounty.status != "open":
                raise ConflictError("Bounty is not open", code="not_accepting")
            if bounty.assigned_to and bounty.assigned_to != handle:
                raise ConflictError(f"This bounty is exclusively assigned to @{bounty.assigned_to}",
                                    status_code=403, code="handle_mismatch")
            bounty.status = "in_progress"

        bounty = self._mutate(bounty_id, apply)
        logger.info("bounty started | id=%s handle=%s", bounty_id, handle)
        return bounty

    def submit_proof(self, handle, bounty_id, proof_url):
        """
        Record one submission per handle and move the bounty to evaluating.
        Shapes are validated before the bounty is looked up.
        """
        _check_handle(handle)
        _check_bounty_id(bounty_id)
        if not is_valid_https_url(proof_url):
            raise ValidationError("Proof URL must be a valid HTTPS URL", code="invalid_proof")
        handle = normalize_handle(handle)

        def apply(bounty):
            if bounty.submission_by(handle):
                raise ConflictError("You have already submitted for this bounty", code="duplicate_submission")
            if bounty.status not in ACCEPTING:
                raise ConflictError("Bounty is not accepting submissions", code="not_accepting")
            if bounty.assigned_to and bounty.assigned_to != handle:
                raise ConflictError(f"This bounty is exclusively assigned to @{bounty.assigned_to}",
                                    status_code=403, code="handle_mismatch")
            bounty.submissions.append(Submission(
                username=handle,
                proof=proof_url.strip(),
                submitted_at=to_iso(utcnow()),
            ))
            bounty.status = "evaluating"

        bounty = self._mutate(bounty_id, apply)
        logger.info("bounty submission | id=%s handle=%s", bounty_id, handle)
        log_activity(self.store, "BOUNTY", f'@{handle} submitted work for bounty "{bounty.title}"', SKILL_ID)
        return bounty

    # === Resolution ===

    def complete_bounty(self, bounty_id, winner):
        """
        Approve winner's submission and release the reward. The reward id is
        derived from (bounty, winner), so a retried completion never creates
        a second reward. Returns (bounty, reward).
        """
        _check_handle(winner, "winner")
        winner = normalize_handle(winner)
        created = {}

        def apply(bounty):
            if bounty.status == "completed" and bounty.fulfilled_by == winner:
                raise ConflictError("Bounty already completed", code="already_completed")
            if bounty.status != "evaluating":
                raise ConflictError("Bounty has no submissions awaiting evaluation", code="invalid_transition")
            submission = bounty.submission_by(winner)
            if submission is None or submission.status != "pending":
                raise ConflictError(f"No pending submission from @{winner}", code="no_submission")

            sender = bounty.creator or self.system_handle
            reward = PendingReward(
                id=bounty_reward_id(bounty.id, winner),
                sender=sender,
                recipient=winner,
                amount=bounty.reward,
                reason=f"Bounty completed: {bounty.title}",
                source_skill_id=SKILL_ID,
                created_at=to_iso(utcnow()),
            )
            self.store.create(REWARDS, reward.id, reward.to_doc())
            created["reward"] = reward

            submission.status = "approved"
            bounty.status = "completed"
            bounty.fulfilled_by = winner

        bounty = self._mutate(bounty_id, apply)
        reward = created["reward"]
        logger.info("bounty completed | id=%s winner=%s reward=%s amount=%s",
                    bounty_id, winner, reward.id, reward.amount)
        log_activity(self.store, "BOUNTY",
                     f'Bounty "{bounty.title}" fulfilled by @{winner}. ${bounty.reward} USDC reward created.',
                     SKILL_ID)
        return bounty, reward

    def reject_submission(self, bounty_id, handle, notes=""):
        _check_handle(handle)
        handle = normalize_handle(handle)

        def apply(bounty):
            submission = bounty.submission_by(handle)
            if submission is None or submission.status != "pending":
                raise ConflictError(f"No pending submission from @{handle}", code="no_submission")
            submission.status = "rejected"
            submission.notes = (notes or "")[:500]
            if bounty.status == "evaluating" and not any(s.status == "pending" for s in bounty.submissions):
                bounty.status = "open"

        bounty = self._mutate(bounty_id, apply)
        logger.info("bounty submission rejected | id=%s handle=%s status=%s", bounty_id, handle, bounty.status)
        return bounty

    def cancel_bounty(self, bounty_id):
        def apply(bounty):
            if bounty.status not in CANCELLABLE:
                raise ConflictError(f"Cannot cancel a {bounty.status} bounty", code="invalid_transition")
            bounty.status = "cancelled"

        bounty = self._mutate(bounty_id, apply)
        logger.info("bounty cancelled | id=%s", bounty_id)
        return bounty

    def expire_overdue(self, now=None):
        """Cancel open/in-progress bounties whose deadline has passed. Returns their ids."""
        now = now or utcnow()

        def overdue(doc):
            deadline = parse_iso(doc.get("deadline"))
            return doc.get("status") in ACCEPTING and deadline is not None and deadline < now

        expired = []
        for doc in self.store.query(BOUNTIES, where=overdue):
            def apply(bounty):
                if bounty.status not in ACCEPTING:
                    raise ConflictError("Bounty changed state", code="invalid_transition")
                bounty.status = "cancelled"
            try:
                self._mutate(doc["id"], apply)
            except ConflictError:
                continue
            expired.append(doc["id"])
            logger.info("bounty expired | id=%s deadline=%s", doc["id"], doc.get("deadline"))
        return expired

    def open_assignment_for(self, handle):
        """The handle's unfinished assigned bounty, if any."""
        handle = normalize_handle(handle)
        docs = self.store.query(BOUNTIES, where=lambda d: d.get("assigned_to") == handle
                                and d.get("status") in ("open", "in_progress", "evaluating"), limit=1)
        return Bounty.from_doc(docs[0]) if docs else None

