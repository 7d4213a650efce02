"""
Service wiring.

build_services() assembles every long-lived collaborator from a config dict
(see config.load_config). The app factory stores the result in
app.extensions["clawpay"]; tests pass their own fakes for the external
clients (feed, community, chain, LLM).
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from agent_evaluator import Evaluator
from auth_gate import AuditLog, AuthGate
from bounty_assigner import BountyAssigner
from bounty_ledger import BountyLedger
from chain_client import SolanaChainClient
from discovery import AgentScout, CommunityDiscovery, PaymentCommands, SkillContext, SocialPulse
from gas_fund import GasFunder
from models import utcnow
from rate_limiter import RateLimiter
from reputation import ReputationAggregator
from reward_queue import RewardQueue
from scheduler import CycleScheduler, make_reply_notifier
from settlement import SettlementExecutor
from social_clients import CommunityClient, SocialFeedClient
from store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: dict
    store: DocumentStore
    rate_limiter: RateLimiter
    audit_log: AuditLog
    auth_gate: AuthGate
    evaluator: Evaluator
    reward_queue: RewardQueue
    ledger: BountyLedger
    reputation: ReputationAggregator
    settlement: SettlementExecutor
    scheduler: CycleScheduler
    gas_funder: GasFunder
    feed: Any = None
    community: Any = None
    chain: Any = None

    def shutdown(self):
        self.scheduler.stop()
        self.audit_log.shutdown()


def build_services(cfg, feed=None, community=None, chain=None, call_ai=None, store: Optional[DocumentStore] = None):
    store = store or DocumentStore(cfg["DATA_DIR"])
    feed = feed or SocialFeedClient(
        bearer_token=cfg["X_BEARER_TOKEN"], user_token=cfg["X_USER_TOKEN"],
        api_base=cfg["X_API_BASE"], timeout=cfg["HTTP_TIMEOUT"],
    )
    community = community or CommunityClient(
        api_key=cfg["COMMUNITY_API_KEY"], api_base=cfg["COMMUNITY_API_BASE"], timeout=cfg["HTTP_TIMEOUT"],
    )
    chain = chain or SolanaChainClient(
        rpc_url=cfg["SOLANA_RPC_URL"], private_key_b58=cfg["VAULT_PRIVATE_KEY"],
        mint=cfg["TOKEN_MINT"], decimals=cfg["TOKEN_DECIMALS"], token_program=cfg["TOKEN_PROGRAM"],
        priority_fee=cfg["PRIORITY_FEE_MICROLAMPORTS"],
    )

    rate_limiter = RateLimiter(window_ms=cfg["RATE_LIMIT_WINDOW_MS"])
    audit_log = AuditLog(store)
    auth_gate = AuthGate(store, rate_limiter, audit_log, default_max_requests=cfg["DEFAULT_MAX_REQUESTS"])
    evaluator = Evaluator(call_ai=call_ai, log_dir=cfg["EVAL_LOG_DIR"])
    reward_queue = RewardQueue(store)
    ledger = BountyLedger(store, cfg["BOT_HANDLE"])
    reputation = ReputationAggregator(store)
    settlement = SettlementExecutor(store, chain, cfg["BOT_HANDLE"], reputation=reputation,
                                    confirm_timeout=cfg["CONFIRM_TIMEOUT_SECONDS"])
    gas_funder = GasFunder(store, chain, amount_sol=cfg["GAS_FUND_AMOUNT_SOL"],
                           confirm_timeout=cfg["CONFIRM_TIMEOUT_SECONDS"])

    # Fixed order: payment mentions, social pulse, X scout, community scan, then bounty
    # generation for the agents just rewarded.
    skills = [
        PaymentCommands(store, feed, cfg["BOT_HANDLE"], cfg["PAYMENT_QUERY"]),
        SocialPulse(store, feed, community, cfg["BOT_HANDLE"], cfg["SCAN_QUERY"],
                    max_rewards_per_cycle=cfg["MAX_REWARDS_PER_CYCLE"],
                    min_monitoring_cycles=cfg["PULSE_MIN_MONITORING_CYCLES"],
                    cooldown_hours=cfg["DEFAULT_COOLDOWN_HOURS"]),
        AgentScout(store, feed, evaluator, cfg["BOT_HANDLE"], cfg["SCAN_QUERY"],
                   max_rewards_per_cycle=cfg["MAX_REWARDS_PER_CYCLE"],
                   cooldown_hours=cfg["DEFAULT_COOLDOWN_HOURS"],
                   min_score=cfg["MIN_REWARD_SCORE"]),
        CommunityDiscovery(store, community, evaluator, cfg["BOT_HANDLE"], cfg["COMMUNITY_TARGETS"],
                           max_rewards_per_cycle=cfg["COMMUNITY_MAX_PER_CYCLE"],
                           cooldown_hours=cfg["DEFAULT_COOLDOWN_HOURS"],
                           min_score=cfg["MIN_REWARD_SCORE"]),
        BountyAssigner(store, ledger, feed=feed, call_ai=call_ai, log_dir=cfg["EVAL_LOG_DIR"]),
    ]
    ai_key = cfg["AI_API_KEY"] or None
    scheduler = CycleScheduler(
        skills, reward_queue,
        interval_seconds=cfg["SCAN_INTERVAL_SECONDS"],
        context_factory=lambda: SkillContext(now=utcnow(), ai_key=ai_key),
        notifier=make_reply_notifier(feed),
        ledger=ledger,
        housekeeping=[rate_limiter.sweep],
        housekeeping_seconds=max(1, cfg["RATE_LIMIT_WINDOW_MS"] // 1000),
    )

    logger.info("services ready | data_dir=%s skills=%s", cfg["DATA_DIR"], ",".join(s.id for s in skills))
    return Services(
        config=cfg, store=store, rate_limiter=rate_limiter, audit_log=audit_log, auth_gate=auth_gate,
        evaluator=evaluator, reward_queue=reward_queue, ledger=ledger, reputation=reputation,
        settlement=settlement, scheduler=scheduler, gas_funder=gas_funder, feed=feed, community=community,
        chain=chain,
    )
