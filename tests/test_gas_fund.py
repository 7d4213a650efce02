import threading

import pytest

from chain_client import ChainError, ChainTimeout, ChainTransactionFailed
from conftest import RECIPIENT_WALLET, VAULT
from errors import ClawPayError, ExternalServiceError, ValidationError
from gas_fund import GAS_FUNDED, GasFunder


@pytest.fixture
def funder(store, chain):
    chain.sol_balances[VAULT] = 1_000_000_000
    return GasFunder(store, chain, amount_sol="0.003")


def test_first_request_sends_and_records(funder, chain, store):
    result = funder.fund(RECIPIENT_WALLET, "@Alice")
    assert result == {"success": True, "message": "Sent 0.003 SOL for gas fees", "amount_sol": "0.003",
                      "tx_signature": "solsig1"}
    assert chain.sol_transfers == [{"dest": RECIPIENT_WALLET, "lamports": 3_000_000, "signature": "solsig1"}]

    doc = store.get(GAS_FUNDED, RECIPIENT_WALLET)
    assert doc["status"] == "funded"
    assert doc["username"] == "alice"
    assert doc["tx_signature"] == "solsig1"

    again = funder.fund(RECIPIENT_WALLET, "alice")
    assert again["already_funded"] is True
    assert again["amount_sol"] == "0.003"
    assert len(chain.sol_transfers) == 1


def test_wallet_with_enough_sol_is_not_topped_up(funder, chain, store):
    chain.sol_balances[RECIPIENT_WALLET] = 5_000_000
    result = funder.fund(RECIPIENT_WALLET, "alice")
    assert result["already_funded"] is True
    assert result["amount_sol"] == "0"
    assert result["message"] == "Wallet already has 0.0050 SOL"
    assert chain.sol_transfers == []
    assert store.get(GAS_FUNDED, RECIPIENT_WALLET)["reason"] == "already_sufficient"


def test_low_vault_refuses_and_allows_retry(funder, chain, store):
    chain.sol_balances[VAULT] = 3_000_000
    with pytest.raises(ClawPayError) as exc:
        funder.fund(RECIPIENT_WALLET, "alice")
    assert exc.value.status_code == 400
    assert exc.value.code == "vault_insufficient_sol"
    assert store.get(GAS_FUNDED, RECIPIENT_WALLET) is None

    chain.sol_balances[VAULT] = 1_000_000_000
    assert funder.fund(RECIPIENT_WALLET, "alice")["tx_signature"] == "solsig1"


def test_unknown_send_outcome_is_never_paid_twice(funder, chain, store):
    chain.send_error = ChainTimeout("connection reset")
    with pytest.raises(ClawPayError) as exc:
        funder.fund(RECIPIENT_WALLET, "alice")
    assert exc.value.status_code == 504
    assert exc.value.code == "chain_timeout"

    doc = store.get(GAS_FUNDED, RECIPIENT_WALLET)
    assert doc["status"] == "unconfirmed"
    assert doc["tx_signature"] == "solsig1"

    chain.send_error = None
    assert funder.fund(RECIPIENT_WALLET, "alice")["already_funded"] is True
    assert len(chain.sol_transfers) == 1


@pytest.mark.parametrize("attr, error", [
    ("confirm_error", ChainTransactionFailed("custom program error: 0x1")),
    ("transfer_error", ChainError("no blockhash")),
])
def test_definite_failure_releases_the_wallet(funder, chain, store, attr, error):
    setattr(chain, attr, error)
    with pytest.raises(ExternalServiceError) as exc:
        funder.fund(RECIPIENT_WALLET, "alice")
    assert exc.value.code == "gas_fund_failed"
    assert store.get(GAS_FUNDED, RECIPIENT_WALLET) is None

    setattr(chain, attr, None)
    assert funder.fund(RECIPIENT_WALLET, "alice")["success"] is True


def test_validation_and_missing_vault(funder, chain):
    with pytest.raises(ValidationError) as exc:
        funder.fund("not-a-wallet", "alice")
    assert exc.value.code == "invalid_wallet"

    chain.vault_address = None
    with pytest.raises(ClawPayError) as exc:
        funder.fund(RECIPIENT_WALLET, "alice")
    assert exc.value.code == "vault_not_configured"
    assert exc.value.status_code == 503


def test_concurrent_requests_fund_once(funder, chain):
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(funder.fund(RECIPIENT_WALLET, "alice"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(chain.sol_transfers) == 1
    assert sum(1 for r in results if r.get("already_funded")) == 7
