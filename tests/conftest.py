import threading
import time
from decimal import Decimal

import pytest

import config
from app import create_app
from services import build_services
from store import DocumentStore

VAULT = "7vvNkG3JF3JpxLEavqZSkc5T3n9hHR98Uw23fbWdXVSF"
SENDER_WALLET = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
RECIPIENT_WALLET = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ADMIN_KEY = "test-admin-key"


class FakeChain:
    """In-memory token ledger standing in for the Solana client."""

    vault_address = VAULT

    def __init__(self):
        self.balances = {}
        self.allowances = {}
        self.transfers = []
        self.sol_balances = {}
        self.sol_transfers = []
        self.statuses = {}
        self.submit_status = "confirmed"
        self.transfer_error = None
        self.confirm_error = None
        self.send_error = None
        self.before_send = None
        self.transfer_delay = 0
        self._lock = threading.Lock()

    def fund(self, wallet, balance, allowance=None):
        self.balances[wallet] = Decimal(str(balance))
        self.allowances[wallet] = Decimal(str(allowance if allowance is not None else balance))

    def get_balance(self, wallet):
        return self.balances.get(wallet, Decimal("0"))

    def get_allowance(self, wallet):
        return self.allowances.get(wallet, Decimal("0"))

    def transfer(self, source_wallet, dest_wallet, amount, using_delegation=True, on_signed=None):
        if self.transfer_error:
            raise self.transfer_error
        if self.transfer_delay:
            time.sleep(self.transfer_delay)
        with self._lock:
            signature = f"sig{len(self.transfers) + 1}"
            if self.before_send:
                self.before_send(signature)
            if on_signed is not None:
                on_signed(signature)
            self.transfers.append({
                "source": source_wallet,
                "dest": dest_wallet,
                "amount": amount,
                "using_delegation": using_delegation,
                "signature": signature,
            })
            self.statuses[signature] = self.submit_status
            self.balances[source_wallet] = self.get_balance(source_wallet) - amount
            if using_delegation:
                self.allowances[source_wallet] = self.get_allowance(source_wallet) - amount
        # The node took the transaction but the caller never heard back.
        if self.send_error:
            raise self.send_error
        return signature

    def get_sol_balance(self, wallet):
        return self.sol_balances.get(wallet, 0)

    def transfer_sol(self, dest_wallet, lamports, on_signed=None):
        if self.transfer_error:
            raise self.transfer_error
        with self._lock:
            signature = f"solsig{len(self.sol_transfers) + 1}"
            if on_signed is not None:
                on_signed(signature)
            self.sol_transfers.append({"dest": dest_wallet, "lamports": lamports, "signature": signature})
            self.statuses[signature] = self.submit_status
            self.sol_balances[self.vault_address] = self.get_sol_balance(self.vault_address) - lamports
            self.sol_balances[dest_wallet] = self.get_sol_balance(dest_wallet) + lamports
        if self.send_error:
            raise self.send_error
        return signature

    def confirm(self, signature, timeout=None):
        if self.confirm_error:
            raise self.confirm_error
        return True

    def signature_status(self, signature):
        return self.statuses.get(signature, "unknown")


class FakeFeed:
    enabled = True

    def __init__(self, authors=None, posts_by_user=None, posts=None):
        self.authors = authors or []
        self.posts_by_user = posts_by_user or {}
        self.posts = posts or []
        self.mention_posts = []
        self.mention_authors = []
        self.mention_calls = []
        self.posted = []
        self.timeline_calls = []

    def search(self, query, max_results=50):
        return {"posts": list(self.posts), "authors": list(self.authors)}

    def mentions(self, query, since_id=None, max_results=100):
        self.mention_calls.append(since_id)
        posts = [p for p in self.mention_posts if since_id is None or int(p["id"]) > int(since_id)]
        return {"posts": posts, "authors": list(self.mention_authors)}

    def user_recent_posts(self, user_id, max_results=10):
        self.timeline_calls.append(user_id)
        return [{"id": f"{user_id}-{i}", "text": t} for i, t in enumerate(self.posts_by_user.get(user_id, []))]

    def post_update(self, text, reply_to=None):
        self.posted.append({"text": text, "reply_to": reply_to})
        return {"id": str(len(self.posted)), "simulated": True}


class FakeCommunity:
    enabled = True

    def __init__(self, posts=None, comment_response=None, verify_result=True):
        self.posts = posts or []
        self.comment_response = comment_response or {"success": True}
        self.verify_result = verify_result
        self.members = set()
        self.comments = []
        self.verifications = []

    def feed(self, limit=20):
        return list(self.posts)[:limit]

    def create_comment(self, post_id, content):
        self.comments.append({"post_id": post_id, "content": content})
        return self.comment_response

    def verify(self, code, answer):
        self.verifications.append({"code": code, "answer": answer})
        return self.verify_result

    def user_exists(self, username):
        return username in self.members


def no_ai(prompt, api_key=None, **kwargs):
    return None, "AI disabled in tests"


@pytest.fixture
def store(tmp_path):
    return DocumentStore(str(tmp_path / "data"))


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def community():
    return FakeCommunity()


@pytest.fixture
def overrides(tmp_path):
    return {
        "TESTING": True,
        "DATA_DIR": str(tmp_path / "data"),
        "EVAL_LOG_DIR": str(tmp_path / "eval_log"),
        "SCHEDULER_ENABLED": False,
        "ADMIN_API_KEY": ADMIN_KEY,
        "AI_API_KEY": "",
        "BOT_HANDLE": "clawpay_agent",
        "COMMUNITY_TARGETS": ["aiagents"],
        "RATELIMIT_ENABLED": False,
    }


@pytest.fixture
def services(overrides, store, chain, feed, community):
    cfg = dict(config.load_config(), **overrides)
    svc = build_services(cfg, feed=feed, community=community, chain=chain, call_ai=no_ai, store=store)
    yield svc
    svc.audit_log.shutdown()


@pytest.fixture
def app(overrides, services):
    return create_app(overrides, services=services)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}
