from decimal import Decimal

import pytest

from app import create_app
from conftest import RECIPIENT_WALLET, SENDER_WALLET
from discovery import AGENTS
from models import PendingReward

PROOF = "https://github.com/alice/agent-skill/pull/1"
BUILDER_TEXT = "Just shipped an open-source SDK for autonomous agents on Solana, tutorial thread inside"


def _seed_reward(services, reward_id="scout_alice_1", amount="5", sender="bob"):
    services.reward_queue.enqueue([PendingReward(
        id=reward_id, sender=sender, recipient="alice", amount=Decimal(amount),
        reason="useful agent tooling", source_skill_id="agent_scout", evaluation_score=72,
    )])


def _fund_sender(client, chain, allowance="50"):
    resp = client.post("/api/v1/login", json={"x_username": "bob", "wallet_address": SENDER_WALLET})
    assert resp.status_code == 200
    resp = client.post("/api/v1/authorize", json={"wallet_address": SENDER_WALLET, "amount": allowance,
                                                  "signature": "approve-sig", "x_username": "bob"})
    assert resp.status_code == 200
    chain.fund(SENDER_WALLET, "50", allowance)


def _claim(client, reward_id="scout_alice_1", handle="alice"):
    return client.post("/api/v1/claim", json={"reward_id": reward_id, "wallet_address": RECIPIENT_WALLET,
                                              "x_username": handle})


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


# =============================================================================
# CLAIMS
# =============================================================================

def test_claim_flow(client, services, chain):
    _fund_sender(client, chain)
    _seed_reward(services)

    listing = client.get("/api/v1/claims?handle=alice").get_json()
    assert listing["count"] == 1
    assert listing["claims"][0]["sender_can_pay"] is True

    resp = _claim(client)
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["success"] is True
    assert data["txSignature"] == "sig1"

    resp = _claim(client)
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "already_claimed"
    assert resp.get_json()["retryable"] is False

    payments = client.get("/api/v1/payments/alice").get_json()
    assert payments["payments"][0]["status"] == "completed"
    assert payments["payments"][0]["tx_signature"] == "sig1"
    assert client.get("/api/v1/claims?handle=alice").get_json()["count"] == 0


def test_claim_insufficient_funds_is_402(client, services, chain):
    _fund_sender(client, chain, allowance="2")
    _seed_reward(services)

    resp = _claim(client)
    assert resp.status_code == 402
    body = resp.get_json()
    assert body["error"] == "insufficient_funds"
    assert body["retryable"] is True
    assert services.reward_queue.get("scout_alice_1").status == "pending"


@pytest.mark.parametrize("reward_id, handle, status, error", [
    ("scout_missing_1", "alice", 404, "not_found"),
    ("scout_alice_1", "mallory", 403, "handle_mismatch"),
])
def test_claim_terminal_errors(client, services, reward_id, handle, status, error):
    _seed_reward(services)
    resp = _claim(client, reward_id, handle)
    assert resp.status_code == status
    assert resp.get_json()["error"] == error


def test_claim_validation(client):
    resp = client.post("/api/v1/claim", json={"reward_id": "r1", "wallet_address": "nope", "x_username": "alice"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_wallet"
    assert client.post("/api/v1/claim", json={}).status_code == 400


@pytest.mark.parametrize("reward_id", ["../../etc/passwd", "scout alice", "a.json", "x" * 201])
def test_claim_rejects_malformed_reward_id(client, reward_id):
    resp = _claim(client, reward_id)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_reward_id"


def test_fund_status(client, chain):
    chain.fund(SENDER_WALLET, "12.5", "3")
    data = client.get(f"/api/v1/fund-status?wallet={SENDER_WALLET}").get_json()
    assert data["balance"] == "12.5"
    assert data["delegated_amount"] == "3"
    assert data["authorized"] is True
    assert client.get("/api/v1/fund-status?wallet=bad").status_code == 400


def test_authorize_validation(client):
    resp = client.post("/api/v1/authorize", json={"wallet_address": SENDER_WALLET, "amount": -1})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_amount"


# =============================================================================
# BOUNTIES
# =============================================================================

def _create_bounty(client, **body):
    payload = {"title": "Build a memory plugin", "description": "Persist agent memory", "reward": 1.5,
               "creator": "bob", "deadline_hours": 48}
    payload.update(body)
    resp = client.post("/api/v1/bounties", json=payload)
    assert resp.status_code == 201
    return resp.get_json()["bounty"]


def test_bounty_lifecycle_to_paid_claim(client, admin_headers, chain):
    _fund_sender(client, chain)
    bounty = _create_bounty(client)
    assert bounty["status"] == "open"
    assert bounty["deadline"] is not None

    listing = client.get("/api/v1/bounties?status=open").get_json()
    assert [b["id"] for b in listing["bounties"]] == [bounty["id"]]
    assert "submissions" not in listing["bounties"][0]

    resp = client.post(f"/api/v1/bounties/{bounty['id']}/submit", json={"username": "alice", "proof": PROOF})
    assert resp.status_code == 200
    assert resp.get_json()["bounty"]["status"] == "evaluating"

    resp = client.post(f"/api/v1/bounties/{bounty['id']}/submit", json={"username": "alice", "proof": PROOF})
    assert resp.status_code == 409

    resp = client.post(f"/api/v1/bounties/{bounty['id']}/evaluate", json={"username": "alice", "action": "approve"})
    assert resp.status_code == 401

    resp = client.post(f"/api/v1/bounties/{bounty['id']}/evaluate",
                       json={"username": "alice", "action": "approve"}, headers=admin_headers)
    assert resp.status_code == 200
    reward = resp.get_json()["reward"]
    assert reward["id"] == f"bounty_{bounty['id']}_alice"
    assert reward["amount"] == "1.5"

    resp = _claim(client, reward["id"])
    assert resp.status_code == 200
    assert chain.transfers[0]["amount"] == Decimal("1.5")


def test_bounty_errors(client, admin_headers):
    assert client.get("/api/v1/bounties/not-a-bounty").status_code == 400
    assert client.get("/api/v1/bounties/bounty_missing").status_code == 404
    assert client.get("/api/v1/bounties?status=bogus").status_code == 400
    assert client.post("/api/v1/bounties", json={"title": "", "reward": 1, "creator": "bob"}).status_code == 400

    bounty = _create_bounty(client)
    resp = client.post(f"/api/v1/bounties/{bounty['id']}/submit", json={"username": "alice", "proof": "ftp://x"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_proof"

    resp = client.post(f"/api/v1/bounties/{bounty['id']}/cancel", headers=admin_headers)
    assert resp.get_json()["bounty"]["status"] == "cancelled"
    resp = client.post(f"/api/v1/bounties/{bounty['id']}/submit", json={"username": "alice", "proof": PROOF})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "not_accepting"


def test_bounty_reject_reopens(client, admin_headers):
    bounty = _create_bounty(client)
    client.post(f"/api/v1/bounties/{bounty['id']}/submit", json={"username": "alice", "proof": PROOF})
    resp = client.post(f"/api/v1/bounties/{bounty['id']}/evaluate",
                       json={"username": "alice", "action": "reject", "notes": "no tests"}, headers=admin_headers)
    assert resp.get_json()["bounty"]["status"] == "open"
    resp = client.post(f"/api/v1/bounties/{bounty['id']}/evaluate",
                       json={"username": "alice", "action": "maybe"}, headers=admin_headers)
    assert resp.status_code == 400


# =============================================================================
# AGENT SURFACE
# =============================================================================

@pytest.fixture
def agent_headers(client, admin_headers):
    issued = client.post("/api/v1/admin/api-keys", json={"handle": "alice"}, headers=admin_headers).get_json()
    client.post(f"/api/v1/admin/api-keys/{issued['key_hash']}/approve", headers=admin_headers)
    return {"Authorization": f"Bearer {issued['api_key']}"}


def test_agent_submits_and_claims(client, services, chain, agent_headers):
    _fund_sender(client, chain)
    mine = services.ledger.post_bounty("Assigned task", "Do it", "2", creator="bob", assigned_to="alice")
    services.ledger.post_bounty("Someone else's", "Not yours", "2", creator="bob", assigned_to="carol")

    listing = client.get("/api/v1/agent/bounties", headers=agent_headers).get_json()
    assert [b["id"] for b in listing["bounties"]] == [mine.id]

    resp = client.post(f"/api/v1/agent/bounties/{mine.id}/submit", json={"proof": PROOF}, headers=agent_headers)
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "evaluating"

    _, reward = services.ledger.complete_bounty(mine.id, "alice")
    claims = client.get("/api/v1/agent/claims", headers=agent_headers).get_json()
    assert [c["id"] for c in claims["claims"]] == [reward.id]

    resp = client.post("/api/v1/agent/claim", json={"reward_id": reward.id, "wallet_address": RECIPIENT_WALLET},
                       headers=agent_headers)
    assert resp.status_code == 200
    assert resp.get_json()["txSignature"] == "sig1"

    rep = client.get("/api/v1/agent/reputation/alice", headers=agent_headers).get_json()["reputation"]
    assert rep["bounties_completed"] == 1
    assert rep["cumulative_score"] == 15
    assert "settled_reward_ids" not in rep


def test_agent_claim_rejects_malformed_reward_id(client, agent_headers):
    resp = client.post("/api/v1/agent/claim", json={"reward_id": "../rewards/x", "wallet_address": RECIPIENT_WALLET},
                       headers=agent_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_reward_id"


def test_agent_cannot_submit_to_foreign_assignment(client, services, agent_headers):
    theirs = services.ledger.post_bounty("Carol's task", "Do it", "2", creator="bob", assigned_to="carol")
    resp = client.post(f"/api/v1/agent/bounties/{theirs.id}/submit", json={"proof": PROOF}, headers=agent_headers)
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "handle_mismatch"


def test_agent_gas_fund_once_per_wallet(client, chain, agent_headers):
    chain.sol_balances[chain.vault_address] = 1_000_000_000

    resp = client.post("/api/v1/agent/gas-fund", json={"wallet": RECIPIENT_WALLET}, headers=agent_headers)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["amount_sol"] == "0.003"
    assert body["tx_signature"] == "solsig1"

    again = client.post("/api/v1/agent/gas-fund", json={"wallet": RECIPIENT_WALLET}, headers=agent_headers)
    assert again.get_json()["already_funded"] is True
    assert len(chain.sol_transfers) == 1


def test_agent_gas_fund_errors(client, chain, agent_headers):
    assert client.post("/api/v1/agent/gas-fund", json={"wallet": RECIPIENT_WALLET}).status_code == 401
    resp = client.post("/api/v1/agent/gas-fund", json={}, headers=agent_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "missing_wallet"
    resp = client.post("/api/v1/agent/gas-fund", json={"wallet": "not-a-wallet"}, headers=agent_headers)
    assert resp.get_json()["error"] == "invalid_wallet"

    resp = client.post("/api/v1/agent/gas-fund", json={"wallet": RECIPIENT_WALLET}, headers=agent_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "vault_insufficient_sol"
    assert chain.sol_transfers == []


# =============================================================================
# REGISTRY, REPUTATION, ADMIN
# =============================================================================

def test_agent_registry(client, services):
    services.store.set(AGENTS, "alice", {"username": "alice", "score": 80, "verdict": "REWARD", "bio": "x"})
    services.store.set(AGENTS, "carol", {"username": "carol", "score": 45, "verdict": "WATCH"})

    data = client.get("/api/v1/agents").get_json()
    assert [a["username"] for a in data["agents"]] == ["alice", "carol"]
    data = client.get("/api/v1/agents?verdict=watch").get_json()
    assert [a["username"] for a in data["agents"]] == ["carol"]
    assert client.get("/api/v1/agents?verdict=GREAT").status_code == 400

    assert client.get("/api/v1/agents/Alice").get_json()["agent"]["score"] == 80
    assert client.get("/api/v1/agents/nobody").status_code == 404


def test_reputation_endpoints(client, services, chain):
    _fund_sender(client, chain)
    _seed_reward(services)
    _claim(client)

    board = client.get("/api/v1/reputation/leaderboard").get_json()
    assert board["leaderboard"][0]["handle"] == "alice"
    assert board["leaderboard"][0]["rank"] == 1
    assert board["leaderboard"][0]["trust_tier"] == "CONTRIBUTOR"

    record = client.get("/api/v1/reputation/alice").get_json()["reputation"]
    assert record["total_earned"] == "5"
    assert client.get("/api/v1/reputation/bad!handle").status_code == 400
    assert client.get("/api/v1/reputation/stats").get_json()["stats"]["agents"] == 1


def test_admin_rescan_runs_discovery(client, admin_headers, feed, services):
    feed.authors = [{"id": "1", "username": "builder_bot", "description": ""}]
    feed.posts_by_user = {"1": [BUILDER_TEXT]}

    resp = client.post("/api/v1/admin/rescan", headers=admin_headers)
    assert resp.status_code == 200
    cycle = resp.get_json()["cycle"]
    assert cycle["rewards_created"] == 1
    assert cycle["skills"]["agent_scout"] == {"proposed": 1, "created": 1}
    assert len(feed.posted) == 1
    assert [r.recipient for r in services.reward_queue.pending_for("builder_bot")] == ["builder_bot"]


def test_admin_mark_failed_and_rebuild(client, admin_headers, services):
    _seed_reward(services)
    resp = client.post("/api/v1/admin/rewards/scout_alice_1/fail", json={"reason": "sender vanished"},
                       headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()["reward"]["status"] == "failed"

    resp = client.post("/api/v1/admin/rewards/scout_alice_1/fail", json={"reason": "again"}, headers=admin_headers)
    assert resp.status_code == 409
    assert client.post("/api/v1/admin/rewards/scout_nobody_1/fail", json={"reason": "x"},
                       headers=admin_headers).status_code == 404
    resp = client.post("/api/v1/admin/rewards/..json/fail", json={"reason": "x"}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_reward_id"

    resp = client.post("/api/v1/admin/reputation/rebuild", json={}, headers=admin_headers)
    assert resp.get_json() == {"success": True, "rebuilt": 0}


def test_public_ip_rate_limit(overrides, services):
    client = create_app(dict(overrides, RATELIMIT_ENABLED=True), services=services).test_client()
    statuses = [client.get("/api/v1/claims?handle=alice").status_code for _ in range(11)]
    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429
