"""
Solana token client for settlement.

Reads (token accounts, signature status) go straight to the JSON-RPC
endpoint with requests; transfers are built and signed with solana-py /
solders. The vault keypair is the settlement authority: it is the approved
delegate on every sender's token account, and owner of its own account for
system-originated rewards, and the payer of gas top-ups (plain SOL
transfers) to agent wallets.
"""

import logging
import time
from decimal import Decimal, ROUND_DOWN

import base58
import requests
from solana.rpc.api import Client
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams
from solders.system_program import transfer as transfer_lamports
from solders.transaction import Transaction
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

import config

logger = logging.getLogger(__name__)

COMPUTE_UNIT_LIMIT = 100_000
LAMPORTS_PER_SOL = 1_000_000_000
CONFIRM_POLL_SECONDS = 2


class ChainError(Exception):
    """Transfer could not be built or sent, or an RPC read failed."""


class ChainTimeout(ChainError):
    """Signed and possibly submitted, but not seen confirmed. Outcome unknown."""


class ChainTransactionFailed(ChainError):
    """The cluster reports the transaction landed with an error. Nothing moved."""


class SolanaChainClient:
    def __init__(self, rpc_url=None, private_key_b58=None, mint=None, decimals=None,
                 token_program=None, priority_fee=None):
        self.rpc_url = rpc_url or config.SOLANA_RPC_URL
        self.mint = mint or config.TOKEN_MINT
        self.decimals = decimals if decimals is not None else config.TOKEN_DECIMALS
        program = token_program or config.TOKEN_PROGRAM
        self.program_id = TOKEN_2022_PROGRAM_ID if program == "token-2022" else TOKEN_PROGRAM_ID
        self.priority_fee = priority_fee if priority_fee is not None else config.PRIORITY_FEE_MICROLAMPORTS
        self.client = Client(self.rpc_url)

        private_key_b58 = private_key_b58 if private_key_b58 is not None else config.VAULT_PRIVATE_KEY
        self.keypair = None
        if private_key_b58:
            try:
                self.keypair = Keypair.from_bytes(base58.b58decode(private_key_b58))
            except ValueError as e:
                raise ChainError(f"Invalid VAULT_PRIVATE_KEY: {e}") from e

    @property
    def vault_address(self):
        return str(self.keypair.pubkey()) if self.keypair else None

    # =========================================================================
    # READS (raw JSON-RPC)
    # =========================================================================

    def _rpc(self, method, params):
        try:
            resp = requests.post(self.rpc_url, json={
                "jsonrpc": "2.0",
                "id": 1,
                "method": method,
                "params": params,
            }, timeout=15)
        except requests.RequestException as e:
            raise ChainError(f"RPC unreachable: {e}") from e
        if resp.status_code != 200:
            raise ChainError(f"RPC error {resp.status_code}")
        data = resp.json()
        if "error" in data:
            raise ChainError(f"RPC error: {data['error']}")
        return data.get("result")

    def token_account_address(self, owner):
        return get_associated_token_address(
            Pubkey.from_string(owner), Pubkey.from_string(self.mint), token_program_id=self.program_id
        )

    def _token_account_info(self, owner):
        ata = self.token_account_address(owner)
        result = self._rpc("getAccountInfo", [str(ata), {"encoding": "jsonParsed", "commitment": "confirmed"}])
        value = (result or {}).get("value")
        if not value:
            return None
        parsed = (value.get("data") or {}).get("parsed") or {}
        return parsed.get("info")

    def _to_units(self, amount):
        return int((Decimal(amount) * (10 ** self.decimals)).to_integral_value(rounding=ROUND_DOWN))

    def _from_units(self, raw):
        return Decimal(int(raw or 0)) / (10 ** self.decimals)

    def get_balance(self, wallet):
        info = self._token_account_info(wallet)
        if not info:
            return Decimal("0")
        return self._from_units((info.get("tokenAmount") or {}).get("amount"))

    def get_allowance(self, wallet):
        """Amount the vault may still move from wallet; 0 unless the vault is the delegate."""
        info = self._token_account_info(wallet)
        if not info or info.get("delegate") != self.vault_address:
            return Decimal("0")
        return self._from_units((info.get("delegatedAmount") or {}).get("amount"))

    def get_sol_balance(self, wallet):
        """Native SOL balance of wallet, in lamports."""
        result = self._rpc("getBalance", [wallet, {"commitment": "confirmed"}])
        return int((result or {}).get("value") or 0)

    def signature_status(self, signature):
        """'confirmed', 'failed' or 'unknown' (not seen yet, or dropped)."""
        result = self._rpc("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        statuses = (result or {}).get("value") or [None]
        status = statuses[0]
        if not status:
            return "unknown"
        if status.get("err"):
            return "failed"
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return "confirmed"
        return "unknown"

    def confirm(self, signature, timeout=None):
        """
        Poll until confirmed. Raises ChainTransactionFailed only when the cluster
        reports the transaction errored; an unreachable RPC counts as "not seen
        yet" and ends in ChainTimeout at the deadline.
        """
        deadline = time.monotonic() + (timeout if timeout is not None else config.CONFIRM_TIMEOUT_SECONDS)
        while True:
            try:
                status = self.signature_status(signature)
            except ChainError as e:
                logger.warning("confirm poll failed | sig=%.20s error=%s", signature, e)
                status = "unknown"
            if status == "confirmed":
                return True
            if status == "failed":
                raise ChainTransactionFailed(f"Transaction failed on chain: {signature}")
            if time.monotonic() >= deadline:
                raise ChainTimeout(f"Transaction not confirmed in time: {signature}")
            time.sleep(CONFIRM_POLL_SECONDS)

    # =========================================================================
    # TRANSFER
    # =========================================================================

    def transfer(self, source_wallet, dest_wallet, amount, using_delegation=True, on_signed=None):
        """
        Submit one transfer_checked from source_wallet's token account to
        dest_wallet's. Returns the signature as soon as the node accepts it;
        call confirm() for the outcome.

        on_signed(signature) runs after signing and before sending. If it
        raises, nothing is sent. A failure while sending raises ChainTimeout:
        the node may have accepted the transaction.
        """
        if not self.keypair:
            raise ChainError("Vault keypair not configured")
        if not using_delegation and source_wallet != self.vault_address:
            raise ChainError("Direct transfers are only possible from the vault's own account")

        payer = self.keypair
        mint = Pubkey.from_string(self.mint)
        dest_owner = Pubkey.from_string(dest_wallet)
        source_ata = self.token_account_address(source_wallet)
        dest_ata = self.token_account_address(dest_wallet)
        units = self._to_units(amount)

        logger.info("transfer building | from=%.8s to=%.8s amount=%s delegated=%s",
                    source_wallet, dest_wallet, amount, using_delegation)
        try:
            instructions = [
                set_compute_unit_price(self.priority_fee),
                set_compute_unit_limit(COMPUTE_UNIT_LIMIT),
            ]
            if self._token_account_info(dest_wallet) is None:
                instructions.append(create_associated_token_account(
                    payer.pubkey(), dest_owner, mint, token_program_id=self.program_id
                ))
            instructions.append(transfer_checked(
                TransferCheckedParams(
                    program_id=self.program_id,
                    source=source_ata,
                    mint=mint,
                    dest=dest_ata,
                    owner=payer.pubkey(),
                    amount=units,
                    decimals=self.decimals,
                )
            ))
        except ChainError:
            raise
        except Exception as e:  # solana-py raises RPC and validation errors of many kinds
            logger.error("transfer build failed | to=%.8s error=%s", dest_wallet, e)
            raise ChainError(f"Transfer failed: {e}") from e

        return self._sign_and_send(instructions, dest_wallet, on_signed)

    def transfer_sol(self, dest_wallet, lamports, on_signed=None):
        """Plain SOL transfer from the vault, same signing contract as transfer()."""
        if not self.keypair:
            raise ChainError("Vault keypair not configured")
        logger.info("sol transfer building | to=%.8s lamports=%d", dest_wallet, lamports)
        try:
            instructions = [
                set_compute_unit_price(self.priority_fee),
                transfer_lamports(TransferParams(
                    from_pubkey=self.keypair.pubkey(),
                    to_pubkey=Pubkey.from_string(dest_wallet),
                    lamports=int(lamports),
                )),
            ]
        except Exception as e:
            raise ChainError(f"SOL transfer failed: {e}") from e
        return self._sign_and_send(instructions, dest_wallet, on_signed)

    def _sign_and_send(self, instructions, dest_wallet, on_signed):
        payer = self.keypair
        try:
            recent_blockhash = self.client.get_latest_blockhash().value.blockhash
            message = Message.new_with_blockhash(instructions, payer.pubkey(), recent_blockhash)
            transaction = Transaction([payer], message, recent_blockhash)
        except Exception as e:
            logger.error("transfer build failed | to=%.8s error=%s", dest_wallet, e)
            raise ChainError(f"Transfer failed: {e}") from e

        signature = str(transaction.signatures[0])
        if on_signed is not None:
            on_signed(signature)

        try:
            self.client.send_transaction(transaction)
        except Exception as e:
            logger.error("transfer send failed | sig=%.20s to=%.8s error=%s", signature, dest_wallet, e)
            raise ChainTimeout(f"Transfer sent with unknown outcome: {e}") from e

        logger.info("transfer submitted | sig=%.20s to=%.8s", signature, dest_wallet)
        return signature
