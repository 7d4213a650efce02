"""
One-time SOL top-up for agent wallets.

A fresh agent wallet holds no SOL, so it cannot pay the fee for the approve
transaction that delegates its tokens to the vault. GasFunder sends it a
small fixed amount from the vault, at most once per wallet. The wallet's
gas_funded document is reserved before anything is sent; a send with an
unknown outcome keeps the reservation, so a retry never pays twice.
"""

import logging
from decimal import Decimal

from chain_client import LAMPORTS_PER_SOL, ChainError, ChainTimeout, ChainTransactionFailed
from errors import ClawPayError, ExternalServiceError, ValidationError
from models import money, normalize_handle, to_iso, utcnow
from reward_queue import log_activity
from validation import validate_solana_address

logger = logging.getLogger(__name__)

GAS_FUNDED = "gas_funded"
FEE_RESERVE_LAMPORTS = 10_000


class GasFunder:
    def __init__(self, store, chain, amount_sol="0.003", confirm_timeout=60):
        self.store = store
        self.chain = chain
        self.amount_sol = Decimal(str(amount_sol))
        self.lamports = int(self.amount_sol * LAMPORTS_PER_SOL)
        self.confirm_timeout = confirm_timeout

    def fund(self, wallet, handle):
        """Top up wallet once. Returns the response dict for the caller."""
        ok, error = validate_solana_address(wallet)
        if not ok:
            raise ValidationError(error, code="invalid_wallet")
        wallet = wallet.strip()
        handle = normalize_handle(handle)
        if not self.chain.vault_address:
            raise ClawPayError("Vault not configured", status_code=503, code="vault_not_configured")

        reservation = {"wallet": wallet, "username": handle, "status": "sending",
                       "amount_sol": money(self.amount_sol), "funded_at": to_iso(utcnow())}
        if not self.store.create(GAS_FUNDED, wallet, reservation):
            existing = self.store.get(GAS_FUNDED, wallet) or {}
            return {"success": True, "already_funded": True, "message": "Wallet already gas-funded",
                    "amount_sol": existing.get("amount_sol")}

        try:
            current = self.chain.get_sol_balance(wallet)
            vault_balance = self.chain.get_sol_balance(self.chain.vault_address)
        except ChainError as e:
            self.store.delete(GAS_FUNDED, wallet)
            raise ExternalServiceError(f"Could not read SOL balances: {e}", code="gas_fund_failed") from e

        if current >= self.lamports:
            self.store.set(GAS_FUNDED, wallet, dict(reservation, status="skipped", amount_sol="0",
                                                    reason="already_sufficient"))
            current_sol = Decimal(current) / LAMPORTS_PER_SOL
            return {"success": True, "already_funded": True,
                    "message": f"Wallet already has {current_sol:.4f} SOL", "amount_sol": "0"}

        if vault_balance < self.lamports + FEE_RESERVE_LAMPORTS:
            self.store.delete(GAS_FUNDED, wallet)
            logger.error("gas fund refused | reason=vault low vault_lamports=%d", vault_balance)
            raise ClawPayError("Vault has insufficient SOL for gas funding", status_code=400,
                               code="vault_insufficient_sol")

        def record_signature(signature):
            self.store.merge(GAS_FUNDED, wallet, {"tx_signature": signature})

        try:
            signature = self.chain.transfer_sol(wallet, self.lamports, on_signed=record_signature)
            self.chain.confirm(signature, timeout=self.confirm_timeout)
        except ChainTransactionFailed as e:
            self.store.delete(GAS_FUNDED, wallet)
            raise ExternalServiceError(f"Gas transfer failed: {e}", code="gas_fund_failed") from e
        except ChainTimeout as e:
            # May still land: the reservation stays so the wallet is never paid twice.
            self.store.merge(GAS_FUNDED, wallet, {"status": "unconfirmed"})
            logger.warning("gas fund unconfirmed | wallet=%.8s error=%s", wallet, e)
            raise ClawPayError("Gas transfer not confirmed yet", status_code=504, code="chain_timeout") from e
        except ChainError as e:
            self.store.delete(GAS_FUNDED, wallet)
            raise ExternalServiceError(f"Gas transfer failed: {e}", code="gas_fund_failed") from e

        self.store.merge(GAS_FUNDED, wallet, {"status": "funded", "funded_at": to_iso(utcnow())})
        log_activity(self.store, "ACTION",
                     f"Gas-funded @{handle}'s wallet with {money(self.amount_sol)} SOL for vault authorization",
                     "gas_fund")
        logger.info("gas funded | user=%s wallet=%.8s sol=%s sig=%.16s", handle, wallet, self.amount_sol, signature)
        return {"success": True, "message": f"Sent {money(self.amount_sol)} SOL for gas fees",
                "amount_sol": money(self.amount_sol), "tx_signature": signature}
