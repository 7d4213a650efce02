"""
Settlement executor - pays a pending reward on-chain, at most once.

Claim protocol for one reward:

  1. Fresh read; check exists / pending / recipient matches.
  2. Take a short settlement lease with a conditional write. A concurrent
     claimer fails this step and gets already_claimed.
  3. If an earlier attempt left a submitted signature, ask the chain about it
     before doing anything else (confirmed: finalize; failed or expired:
     resubmit; still unknown: chain_timeout).
  4. Re-read the sender's allowance and balance from the chain.
  5. Sign one transfer, record its signature on the reward, then send it.
  6. Wait for confirmation, then flip pending → completed with a conditional
     write keyed on (pending, signature).

No lock is held across chain calls; the lease lives on the reward document
and only blocks other claims of the same reward. Nothing here retries: a
retryable error leaves the reward pending and the caller decides when to
try again.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from chain_client import ChainError, ChainTimeout, ChainTransactionFailed
from errors import ValidationError
from models import Delegation, PendingReward, money, normalize_handle, parse_iso, to_decimal, to_iso, utcnow
from reward_queue import REWARDS, lease_active
from validation import is_valid_reward_id, validate_solana_address

logger = logging.getLogger(__name__)

USERS = "users"
DELEGATIONS = "delegations"

# A signature unseen by the cluster this long after submission can no longer land
# (its blockhash has expired), so it is safe to resubmit.
SIGNATURE_EXPIRY_SECONDS = 180


class LeaseLost(Exception):
    """Another attempt took over the reward between signing and sending."""


TERMINAL_ERRORS = ("not_found", "already_claimed", "handle_mismatch")
RETRYABLE_ERRORS = ("insufficient_funds", "not_authorized", "chain_timeout", "transfer_failed")


@dataclass
class ClaimResult:
    success: bool
    reward_id: str
    tx_signature: str = None
    error: str = None
    message: str = ""
    details: dict = field(default_factory=dict)

    @property
    def retryable(self):
        return self.error in RETRYABLE_ERRORS

    def to_dict(self):
        if self.success:
            data = {"success": True, "reward_id": self.reward_id, "txSignature": self.tx_signature,
                    "message": self.message}
        else:
            data = {"success": False, "reward_id": self.reward_id, "error": self.error,
                    "message": self.message, "retryable": self.retryable}
        data.update(self.details)
        return data


def _fail(reward_id, error, message, **details):
    return ClaimResult(False, reward_id, error=error, message=message, details=details)


class SettlementExecutor:
    def __init__(self, store, chain, system_handle, reputation=None, confirm_timeout=60):
        self.store = store
        self.chain = chain
        self.system_handle = normalize_handle(system_handle)
        self.reputation = reputation
        self.confirm_timeout = confirm_timeout
        # Must outlive the longest chain round trip of a single claim.
        self.lease_seconds = int(confirm_timeout) * 2 + 60

    # =========================================================================
    # WALLETS & DELEGATIONS
    # =========================================================================

    def register_wallet(self, handle, wallet, external_id=None):
        """Login: link a handle to its wallet. Returns the user view."""
        handle = normalize_handle(handle)
        if not handle:
            raise ValidationError("x_username required", code="missing_handle")
        if wallet:
            ok, error = validate_solana_address(wallet)
            if not ok:
                raise ValidationError(error, code="invalid_wallet")

        patch = {"x_username": handle, "updated_at": to_iso(utcnow())}
        if external_id:
            patch["x_user_id"] = str(external_id)
        if wallet:
            patch["wallet_address"] = wallet.strip()
        user = self.store.merge(USERS, handle, patch)

        delegation = self.get_delegation(user.get("wallet_address")) if user.get("wallet_address") else None
        logger.info("user login | handle=%s wallet=%.8s", handle, user.get("wallet_address") or "")
        return {
            "wallet_address": user.get("wallet_address"),
            "is_delegated": delegation is not None,
            "delegation_amount": money(delegation.allowance_amount) if delegation else "0",
        }

    def record_authorization(self, wallet, amount, signature=None, handle=None):
        """Record that wallet approved the vault as delegate for amount."""
        ok, error = validate_solana_address(wallet)
        if not ok:
            raise ValidationError(error, code="invalid_wallet")
        allowance = to_decimal(amount)
        if allowance is None or allowance <= 0:
            raise ValidationError("amount must be a positive number", code="invalid_amount")

        delegation = Delegation(
            wallet=wallet.strip(),
            allowance_amount=allowance,
            authorized_at=to_iso(utcnow()),
            signature=signature,
            handle=normalize_handle(handle) or None,
        )
        self.store.set(DELEGATIONS, delegation.wallet, delegation.to_doc())
        logger.info("authorization recorded | wallet=%.8s amount=%s", delegation.wallet, allowance)
        return delegation

    def get_delegation(self, wallet):
        doc = self.store.get(DELEGATIONS, wallet) if wallet else None
        return Delegation.from_doc(doc) if doc else None

    def sender_wallet(self, sender):
        """(wallet, using_delegation) for a reward sender. The bot pays from the vault itself."""
        if normalize_handle(sender) == self.system_handle:
            return self.chain.vault_address, False
        user = self.store.get(USERS, normalize_handle(sender)) if sender else None
        return (user or {}).get("wallet_address"), True

    def fund_status(self, wallet, using_delegation=True):
        """Live balance / allowance of a sender wallet."""
        try:
            balance = self.chain.get_balance(wallet)
            allowance = self.chain.get_allowance(wallet) if using_delegation else balance
        except ChainError as e:
            return {"balance": "0", "delegated_amount": "0", "authorized": False, "error": str(e)}
        return {
            "balance": money(balance),
            "delegated_amount": money(allowance),
            "authorized": allowance > 0,
            "error": None,
        }

    def claims_for(self, handle):
        """Pending rewards for handle, each with its sender's live ability to pay."""
        handle = normalize_handle(handle)
        docs = self.store.query(REWARDS, where=lambda d: d.get("recipient") == handle
                                and d.get("status") == "pending", order_by="created_at", reverse=True)
        claims = []
        status_cache = {}
        for doc in docs:
            reward = PendingReward.from_doc(doc)
            view = reward.public_view()
            wallet, delegated = self.sender_wallet(reward.sender)
            if wallet:
                if wallet not in status_cache:
                    status_cache[wallet] = self.fund_status(wallet, using_delegation=delegated)
                status = status_cache[wallet]
                available = min(to_decimal(status["balance"], Decimal("0")),
                                to_decimal(status["delegated_amount"], Decimal("0")))
                view.update({
                    "sender_wallet": wallet,
                    "sender_balance": status["balance"],
                    "sender_delegated_amount": status["delegated_amount"],
                    "sender_authorized": status["authorized"],
                    "sender_can_pay": status["authorized"] and available >= reward.amount,
                })
            else:
                view.update({
                    "sender_wallet": None,
                    "sender_balance": "0",
                    "sender_delegated_amount": "0",
                    "sender_authorized": False,
                    "sender_can_pay": False,
                })
            claims.append(view)
        return claims

    # =========================================================================
    # LEASE
    # =========================================================================

    def _acquire_lease(self, reward_id, handle):
        token = secrets.token_hex(8)
        now = utcnow()
        doc = self.store.conditional_update(
            REWARDS, reward_id,
            lambda d: (d.get("status") == "pending" and d.get("recipient") == handle
                       and not lease_active(d, now)),
            {"lease_until": to_iso(now + timedelta(seconds=self.lease_seconds)), "lease_token": token},
        )
        return (token, PendingReward.from_doc(doc)) if doc else (None, None)

    def _release_lease(self, reward_id, token, **patch):
        patch.update({"lease_until": None, "lease_token": None})
        self.store.conditional_update(REWARDS, reward_id, lambda d: d.get("lease_token") == token, patch)

    # =========================================================================
    # CLAIM
    # =========================================================================

    def claim(self, reward_id, wallet, handle):
        if not is_valid_reward_id(reward_id):
            raise ValidationError("Invalid reward_id format", code="invalid_reward_id")
        ok, error = validate_solana_address(wallet)
        if not ok:
            raise ValidationError(error, code="invalid_wallet")
        wallet = wallet.strip()
        handle = normalize_handle(handle)
        if not handle:
            raise ValidationError("handle required", code="missing_handle")

        doc = self.store.get(REWARDS, reward_id)
        if doc is None:
            return _fail(reward_id, "not_found", "Reward not found")
        reward = PendingReward.from_doc(doc)
        if reward.status != "pending":
            return _fail(reward_id, "already_claimed", f"Reward is already {reward.status}",
                         tx_signature=reward.settlement_tx)
        if reward.recipient != handle:
            return _fail(reward_id, "handle_mismatch", "You are not the recipient of this reward")

        token, reward = self._acquire_lease(reward_id, handle)
        if token is None:
            logger.info("claim lost race | id=%s handle=%s", reward_id, handle)
            return _fail(reward_id, "already_claimed", "Reward is already being claimed")

        logger.info("claim started | id=%s handle=%s wallet=%.8s amount=%s",
                    reward_id, handle, wallet, reward.amount)
        try:
            return self._settle(reward, wallet, token)
        except Exception:
            # Leave any recorded signature in place so the next attempt re-checks it.
            self._release_lease(reward_id, token)
            raise

    def _settle(self, reward, wallet, token):
        if reward.pending_signature:
            outcome = self._resolve_previous(reward, token)
            if outcome is not None:
                return outcome

        source, using_delegation = self.sender_wallet(reward.sender)
        if not source:
            self._release_lease(reward.id, token)
            return _fail(reward.id, "not_authorized",
                         "Sender has not registered a wallet. They need to log in and fund their account.")

        try:
            balance = self.chain.get_balance(source)
            allowance = self.chain.get_allowance(source) if using_delegation else balance
        except ChainError as e:
            self._release_lease(reward.id, token)
            logger.warning("claim fund check failed | id=%s error=%s", reward.id, e)
            return _fail(reward.id, "transfer_failed", "Could not read sender funds, try again")

        sender_status = {"balance": money(balance), "delegated_amount": money(allowance),
                         "required": money(reward.amount)}
        if using_delegation and allowance <= 0:
            self._release_lease(reward.id, token)
            return _fail(reward.id, "not_authorized", "Sender has not authorized the vault",
                         sender_status=sender_status)
        if allowance < reward.amount or balance < reward.amount:
            self._release_lease(reward.id, token)
            logger.info("claim underfunded | id=%s allowance=%s balance=%s amount=%s",
                        reward.id, allowance, balance, reward.amount)
            return _fail(reward.id, "insufficient_funds",
                         f"Sender can cover ${money(min(allowance, balance))} of ${money(reward.amount)}",
                         sender_status=sender_status)

        def record_signature(signature):
            recorded = self.store.conditional_update(
                REWARDS, reward.id,
                lambda d: d.get("lease_token") == token and d.get("status") == "pending",
                {"pending_signature": signature, "pending_wallet": wallet,
                 "pending_submitted_at": to_iso(utcnow())},
            )
            if recorded is None:
                raise LeaseLost(signature)

        try:
            signature = self.chain.transfer(source, wallet, reward.amount, using_delegation=using_delegation,
                                            on_signed=record_signature)
        except LeaseLost as e:
            logger.error("claim lease lost before send | id=%s sig=%s", reward.id, e)
            return _fail(reward.id, "chain_timeout", "Claim was interrupted, try again shortly")
        except ChainTimeout as e:
            # The signature is on record; the next attempt asks the chain about it.
            self._release_lease(reward.id, token)
            logger.warning("claim send outcome unknown | id=%s error=%s", reward.id, e)
            return _fail(reward.id, "chain_timeout", "Transfer outcome unknown, retry to re-check")
        except ChainError as e:
            self._release_lease(reward.id, token)
            return _fail(reward.id, "transfer_failed", f"Transfer failed: {e}")

        return self._confirm_and_finalize(reward, signature, wallet, token)

    def _resolve_previous(self, reward, token):
        """Decide what to do with a signature left by an earlier attempt. None means resubmit."""
        signature = reward.pending_signature
        try:
            status = self.chain.signature_status(signature)
        except ChainError as e:
            self._release_lease(reward.id, token)
            return _fail(reward.id, "chain_timeout", f"Could not check earlier transfer: {e}")

        if status == "confirmed":
            logger.info("claim found earlier transfer confirmed | id=%s sig=%.20s", reward.id, signature)
            return self._finalize(reward, signature, reward.pending_wallet, token)

        submitted = parse_iso(reward.pending_submitted_at)
        expired = submitted is None or utcnow() - submitted > timedelta(seconds=SIGNATURE_EXPIRY_SECONDS)
        if status == "unknown" and not expired:
            self._release_lease(reward.id, token)
            return _fail(reward.id, "chain_timeout", "Earlier transfer still unconfirmed, try again shortly",
                         tx_signature=signature)

        logger.info("claim discarding earlier transfer | id=%s sig=%.20s status=%s", reward.id, signature, status)
        self.store.conditional_update(
            REWARDS, reward.id, lambda d: d.get("lease_token") == token,
            {"pending_signature": None, "pending_wallet": None, "pending_submitted_at": None},
        )
        return None

    def _confirm_and_finalize(self, reward, signature, wallet, token):
        try:
            self.chain.confirm(signature, timeout=self.confirm_timeout)
        except ChainTransactionFailed as e:
            self._release_lease(reward.id, token, pending_signature=None, pending_wallet=None,
                                pending_submitted_at=None)
            logger.warning("claim transfer failed on chain | id=%s error=%s", reward.id, e)
            return _fail(reward.id, "transfer_failed", f"Transfer failed: {e}")
        except ChainError as e:
            # Timeout or unreachable RPC: the transfer may still land, so the signature stays.
            self._release_lease(reward.id, token)
            logger.warning("claim unconfirmed | id=%s sig=%.20s error=%s", reward.id, signature, e)
            return _fail(reward.id, "chain_timeout", "Transfer submitted but not yet confirmed, retry to re-check",
                         tx_signature=signature)

        return self._finalize(reward, signature, wallet, token)

    def _finalize(self, reward, signature, wallet, token):
        now = to_iso(utcnow())
        doc = self.store.conditional_update(
            REWARDS, reward.id,
            lambda d: d.get("status") == "pending" and d.get("pending_signature") == signature,
            {
                "status": "completed",
                "claimed_by": wallet,
                "settlement_tx": signature,
                "completed_at": now,
                "pending_signature": None,
                "pending_wallet": None,
                "pending_submitted_at": None,
                "lease_until": None,
                "lease_token": None,
            },
        )
        if doc is None:
            current = self.store.get(REWARDS, reward.id) or {}
            if current.get("status") == "completed" and current.get("settlement_tx") == signature:
                doc = current
            else:
                logger.error("claim finalize conflict | id=%s sig=%s status=%s",
                             reward.id, signature, current.get("status"))
                self._release_lease(reward.id, token)
                return _fail(reward.id, "already_claimed", "Reward was settled by another attempt")

        completed = PendingReward.from_doc(doc)
        logger.info("claim completed | id=%s recipient=%s amount=%s sig=%.20s",
                    completed.id, completed.recipient, completed.amount, signature)
        self._after_settlement(completed)
        return ClaimResult(True, completed.id, tx_signature=signature, message="Reward claimed successfully",
                           details={"amount": money(completed.amount), "sender": completed.sender})

    def _after_settlement(self, reward):
        """Stats and reputation. Failures here never undo a confirmed payment."""
        try:
            for handle, key in ((reward.recipient, "total_claimed"), (reward.sender, "total_sent")):
                def bump(doc, key=key, handle=handle):
                    doc = doc or {"x_username": handle}
                    doc[key] = money(to_decimal(doc.get(key), Decimal("0")) + reward.amount)
                    doc["updated_at"] = to_iso(utcnow())
                    return doc, None
                self.store.transact(USERS, handle, bump)
            if self.reputation is not None:
                self.reputation.record_settlement(reward)
        except Exception as e:
            logger.error("post-settlement update failed | id=%s error=%s", reward.id, e)
