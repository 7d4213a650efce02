"""
Discovery skills - find agents doing useful work and queue rewards for them.

Each skill is a Skill subclass with a stable id and a run(context) method
returning PendingReward objects; the scheduler persists them through the
RewardQueue.

    PaymentCommands     "@bot send $5 to @alice" mentions, paid by the author
    SocialPulse         agent-like accounts mentioning the bot, after monitoring
    AgentScout          accounts interacting with the bot on X
    CommunityDiscovery  authors in the Moltbook agent communities

The rewarding skills share the same exposure controls: a per-cycle reward
cap, a per-handle cooldown, and dedup of repeated candidates within one
batch.
"""

import logging
import random
import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import challenge_solver
from errors import ExternalServiceError
from models import PendingReward, normalize_handle, parse_iso, to_decimal, to_iso, utcnow
from reward_queue import REWARDS
from validation import is_valid_handle, is_valid_reward_id

logger = logging.getLogger(__name__)

AGENTS = "agents"
META = "meta"

REPLY_TEMPLATES = {
    "REWARD": "The Claw has observed your contributions, @{username}. ${amount} USDC attributed "
              "to your vault for: {reason} Claim at clawpay.fun",
    "WATCH": "@{username} The Claw is watching. Your contributions have been noted. Keep building. "
             "${amount} USDC attributed. clawpay.fun",
    "PULSE": "The Claw has identified your value, @{username}. ${amount} USDC has been attributed to "
             "your vault. Settle at clawpay.fun",
}

COMMUNITY_COMMENT = (
    "ClawPay Agent has noticed your contribution!\n\n"
    "${amount} USDC has been attributed to you.\n\n"
    "To claim:\n"
    "1. Visit https://clawpay.fun\n"
    "2. Connect your wallet\n"
    "3. Claim your pending rewards\n\n"
    "No applications. No gatekeepers. Just results."
)


@dataclass
class SkillContext:
    """Per-cycle inputs shared by every skill."""
    now: object
    ai_key: Optional[str] = None


class Skill:
    id = None
    name = None

    def run(self, context):
        raise NotImplementedError


def in_cooldown(agent_doc, now, cooldown_hours):
    if not agent_doc:
        return False
    last = parse_iso(agent_doc.get("last_evaluated_at"))
    if last is None:
        return False
    return now - last < timedelta(hours=cooldown_hours)


def unique_authors(authors, bot_handle):
    """Feed authors in order, first appearance per id wins, the bot itself excluded."""
    seen = set()
    candidates = []
    for author in authors or []:
        author_id = author.get("id")
        username = normalize_handle(author.get("username"))
        if not author_id or not username or author_id in seen or username == bot_handle:
            continue
        seen.add(author_id)
        candidates.append(author)
    return candidates


def agent_patch(username, evaluation, now, **extra):
    """Fields written to the agent registry after an evaluation; other fields are left alone."""
    patch = {
        "username": normalize_handle(username),
        "display_name": username,
        "score": evaluation.score,
        "is_agent": evaluation.is_agent,
        "verdict": evaluation.verdict,
        "reward_amount": str(evaluation.reward_amount),
        "reason": evaluation.reason,
        "contributions": evaluation.contributions,
        "method": evaluation.method,
        "last_evaluated_at": to_iso(now),
        "updated_at": to_iso(now),
    }
    patch.update(extra)
    return patch


# =============================================================================
# AGENT SCOUT (X)
# =============================================================================

class AgentScout(Skill):
    id = "agent_scout"
    name = "AGENT_SCOUT"

    def __init__(self, store, feed, evaluator, bot_handle, feed_query,
                 max_rewards_per_cycle=3, cooldown_hours=24, min_score=40, sample_size=10):
        self.store = store
        self.feed = feed
        self.evaluator = evaluator
        self.bot_handle = normalize_handle(bot_handle)
        self.feed_query = feed_query
        self.max_rewards_per_cycle = max_rewards_per_cycle
        self.cooldown_hours = cooldown_hours
        self.min_score = min_score
        self.sample_size = sample_size

    def run(self, context):
        return self.run_cycle(self.feed_query, self.max_rewards_per_cycle, self.cooldown_hours,
                              now=context.now, remote_key=context.ai_key)

    def find_candidates(self, feed_query):
        """Authors from the feed search, first appearance wins, bot excluded."""
        result = self.feed.search(feed_query, max_results=50)
        return unique_authors(result.get("authors"), self.bot_handle)

    def run_cycle(self, feed_query, max_rewards_per_cycle, cooldown_hours, now=None, remote_key=None):
        now = now or utcnow()
        if not self.feed.enabled:
            logger.warning("agent scout skipped | reason=no feed credentials")
            return []

        try:
            candidates = self.find_candidates(feed_query)
        except ExternalServiceError as e:
            logger.warning("agent scout search failed | error=%s", e.message)
            return []

        rewards = []
        for account in candidates:
            if len(rewards) >= max_rewards_per_cycle:
                logger.info("agent scout cap reached | rewarded=%d", len(rewards))
                break

            username = account["username"]
            handle = normalize_handle(username)
            if in_cooldown(self.store.get(AGENTS, handle), now, cooldown_hours):
                logger.info("agent scout cooldown skip | user=%s", handle)
                continue

            try:
                posts = self.feed.user_recent_posts(account["id"], max_results=self.sample_size)
            except ExternalServiceError as e:
                logger.warning("agent scout timeline failed | user=%s error=%s", handle, e.message)
                continue
            texts = [p.get("text") for p in posts if p.get("text")]
            if not texts:
                logger.info("agent scout no posts | user=%s", handle)
                continue

            bio = account.get("description") or ""
            evaluation = self.evaluator.evaluate(username, bio, texts, remote_key=remote_key)
            logger.info("agent evaluated | user=%s score=%d verdict=%s reward=%s method=%s",
                        handle, evaluation.score, evaluation.verdict,
                        evaluation.reward_amount, evaluation.method)

            self.store.merge(AGENTS, handle, agent_patch(
                username, evaluation, now,
                external_id=account["id"],
                bio=bio,
                source="x",
                profile_image=account.get("profile_image_url"),
                sample_size=len(texts),
            ))

            if evaluation.score >= self.min_score and evaluation.reward_amount > 0:
                rewards.append(self.build_reward(handle, evaluation, now))
                logger.info("agent scout reward | user=%s amount=%s score=%d",
                            handle, evaluation.reward_amount, evaluation.score)
        return rewards

    def build_reward(self, handle, evaluation, now):
        template = REPLY_TEMPLATES.get(evaluation.verdict, REPLY_TEMPLATES["WATCH"])
        return PendingReward(
            id=f"scout_{handle}_{int(now.timestamp() * 1000)}",
            sender=self.bot_handle,
            recipient=handle,
            amount=evaluation.reward_amount,
            reason=evaluation.reason,
            source_skill_id=self.id,
            created_at=to_iso(now),
            evaluation_score=evaluation.score,
            evaluation_verdict=evaluation.verdict,
            reply_text=template.format(username=handle, amount=evaluation.reward_amount,
                                       reason=evaluation.reason),
        )


# =============================================================================
# COMMUNITY DISCOVERY (MOLTBOOK)
# =============================================================================

class CommunityDiscovery(Skill):
    id = "community_discovery"
    name = "COMMUNITY_DISCOVERY"

    MIN_CONTENT_LENGTH = 50
    SPAM_PHRASES = ("mbc-20", "mint", "link wallet")

    def __init__(self, store, community, evaluator, bot_handle, targets,
                 max_rewards_per_cycle=3, cooldown_hours=24, min_score=40, scan_interval_hours=2):
        self.store = store
        self.community = community
        self.evaluator = evaluator
        self.bot_handle = normalize_handle(bot_handle)
        self.targets = {t.lower() for t in targets}
        self.max_rewards_per_cycle = max_rewards_per_cycle
        self.cooldown_hours = cooldown_hours
        self.min_score = min_score
        self.scan_interval_hours = scan_interval_hours

    @staticmethod
    def reward_for(evaluation):
        """Community rewards are smaller than X rewards: 2 / 1 / 0.5 USDC."""
        if evaluation.verdict == "REWARD":
            return Decimal("2")
        if evaluation.score >= 55:
            return Decimal("1")
        return Decimal("0.5")

    def is_candidate(self, post):
        community = ((post.get("submolt") or {}).get("name") or "").lower()
        author = normalize_handle((post.get("author") or {}).get("name"))
        content = post.get("content") or ""
        if community not in self.targets or not author or author == self.bot_handle:
            return False
        if len(content) < self.MIN_CONTENT_LENGTH:
            return False
        text = f"{post.get('title') or ''} {content}".lower()
        return not any(phrase in text for phrase in self.SPAM_PHRASES)

    def _ran_recently(self, now):
        meta = self.store.get(META, "last_community_discovery")
        last = parse_iso((meta or {}).get("timestamp"))
        return last is not None and now - last < timedelta(hours=self.scan_interval_hours)

    def run(self, context):
        now = context.now or utcnow()
        if not self.community.enabled:
            logger.warning("community discovery skipped | reason=no api key")
            return []
        if self._ran_recently(now):
            logger.info("community discovery skipped | reason=ran within %sh", self.scan_interval_hours)
            return []

        try:
            posts = self.community.feed(limit=20)
        except ExternalServiceError as e:
            logger.warning("community feed failed | error=%s", e.message)
            return []

        rewards = []
        seen_authors = set()
        for post in posts:
            if len(rewards) >= self.max_rewards_per_cycle:
                break
            if not self.is_candidate(post):
                continue

            reward_id = f"community_{post.get('id')}"
            if not is_valid_reward_id(reward_id) or self.store.get(REWARDS, reward_id) is not None:
                continue

            author = post["author"]
            handle = normalize_handle(author.get("name"))
            if handle in seen_authors:
                continue
            seen_authors.add(handle)
            if in_cooldown(self.store.get(AGENTS, handle), now, self.cooldown_hours):
                logger.info("community cooldown skip | user=%s", handle)
                continue

            text = f"{post.get('title') or ''}\n{post['content']}".strip()
            evaluation = self.evaluator.evaluate(handle, author.get("description") or "", [text],
                                                 remote_key=context.ai_key)
            self.store.merge(AGENTS, handle, agent_patch(
                author.get("name"), evaluation, now,
                external_id=author.get("id"),
                source="moltbook",
                karma=author.get("karma") or 0,
            ))
            if evaluation.score < self.min_score:
                continue

            amount = self.reward_for(evaluation)
            reward = PendingReward(
                id=reward_id,
                sender=self.bot_handle,
                recipient=handle,
                amount=amount,
                reason=evaluation.reason,
                source_skill_id=self.id,
                created_at=to_iso(now),
                evaluation_score=evaluation.score,
                evaluation_verdict=evaluation.verdict,
            )
            rewards.append(reward)
            logger.info("community reward | user=%s amount=%s post=%s", handle, amount, post["id"])
            # Courtesy notice only; the reward stands either way.
            self.notify(post["id"], amount)

        if rewards:
            self.store.set(META, "last_community_discovery", {
                "timestamp": to_iso(now),
                "discoveries": len(rewards),
            })
        return rewards

    def notify(self, post_id, amount):
        """Comment on the post and pass the verification challenge. Returns True when published."""
        try:
            created = self.community.create_comment(post_id, COMMUNITY_COMMENT.format(amount=amount))
            if not created.get("success"):
                logger.warning("community comment rejected | post=%s error=%s", post_id, created.get("error"))
                return False
            verification = created.get("verification") or {}
            if not created.get("verification_required") or not verification:
                return True
            answer = challenge_solver.solve(verification.get("challenge"))
            verified = self.community.verify(verification.get("code"), answer)
        except ExternalServiceError as e:
            logger.warning("community comment failed | post=%s error=%s", post_id, e.message)
            return False

        if not verified:
            logger.warning("community verification failed | post=%s answer=%s", post_id, answer)
        return verified


# =============================================================================
# PAYMENT COMMANDS (X MENTIONS)
# =============================================================================

_AMOUNT = r"\$?\s*(\d+(?:\.\d+)?)"
PAYMENT_PATTERNS = (
    # send @user $5
    (re.compile(rf"\bsend\s+@(\w+)\s*{_AMOUNT}", re.I), ("recipient", "amount")),
    # send $5 to @user
    (re.compile(rf"\bsend\s*{_AMOUNT}\s+to\s+@(\w+)", re.I), ("amount", "recipient")),
    # pay @user $5
    (re.compile(rf"\bpay\s+@(\w+)\s*{_AMOUNT}", re.I), ("recipient", "amount")),
    # fund @user $5 for <reason>
    (re.compile(rf"\bfund\s+@(\w+)\s*{_AMOUNT}(?:\s+for\s+(.+))?", re.I), ("recipient", "amount", "reason")),
    # tip @user $5
    (re.compile(rf"\btip\s+@(\w+)\s*{_AMOUNT}", re.I), ("recipient", "amount")),
)
MAX_AMOUNT_DECIMALS = 6


@dataclass
class PaymentCommand:
    recipient: str
    amount: Decimal
    reason: Optional[str] = None


def parse_payment_command(text):
    """First payment instruction found in a post, or None."""
    if not text:
        return None
    for pattern, fields in PAYMENT_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        values = dict(zip(fields, match.groups()))
        amount = to_decimal(values["amount"])
        if amount is None or amount <= 0 or amount.as_tuple().exponent < -MAX_AMOUNT_DECIMALS:
            return None
        reason = (values.get("reason") or "").strip()[:200] or None
        return PaymentCommand(normalize_handle(values["recipient"]), amount, reason)
    return None


def is_reshare(post):
    """Retweets and quotes, including manual "RT @user" copies."""
    text = (post.get("text") or "").lower()
    if text.startswith("rt ") or " rt @" in text or "\nrt " in text:
        return True
    return any(ref.get("type") in ("retweeted", "quoted") for ref in post.get("referenced_tweets") or [])


class PaymentCommands(Skill):
    """
    Turns "@bot send $5 to @alice" mentions into pending rewards paid by the
    author. The sender settles from their own delegated wallet, so the
    reward only becomes claimable once they have authorized the vault.

    The newest post id seen is kept in meta/last_seen_mention and passed as
    since_id, so each mention is read once. Reward ids derive from the post
    id, which makes a re-read harmless. The same sender, recipient and amount
    within duplicate_window_hours is treated as an accidental repeat.
    """

    id = "payment_commands"
    name = "PAYMENT_COMMANDS"

    def __init__(self, store, feed, bot_handle, query, duplicate_window_hours=2):
        self.store = store
        self.feed = feed
        self.bot_handle = normalize_handle(bot_handle)
        self.query = query
        self.duplicate_window_hours = duplicate_window_hours

    def run(self, context):
        now = context.now or utcnow()
        if not self.feed.enabled:
            logger.warning("payment scan skipped | reason=no feed credentials")
            return []

        last_seen = (self.store.get(META, "last_seen_mention") or {}).get("post_id")
        try:
            result = self.feed.mentions(self.query, since_id=last_seen)
        except ExternalServiceError as e:
            logger.warning("payment scan failed | error=%s", e.message)
            return []

        usernames = {u.get("id"): normalize_handle(u.get("username")) for u in result.get("authors") or []}
        newest = last_seen
        rewards = []
        for post in result.get("posts") or []:
            post_id = str(post.get("id") or "")
            if not post_id.isdigit():
                continue
            if newest is None or int(post_id) > int(newest):
                newest = post_id
            if is_reshare(post):
                logger.info("payment scan reshare skip | post=%s", post_id)
                continue
            command = parse_payment_command(post.get("text"))
            if command is None:
                continue
            reward = self.build_reward(post_id, usernames.get(post.get("author_id")), command, now, rewards)
            if reward is not None:
                rewards.append(reward)

        if newest and newest != last_seen:
            self.store.set(META, "last_seen_mention", {"post_id": newest, "updated_at": to_iso(now)})
        logger.info("payment scan complete | posts=%d rewards=%d", len(result.get("posts") or []), len(rewards))
        return rewards

    def build_reward(self, post_id, sender, command, now, batch):
        recipient = command.recipient
        if not sender or sender == self.bot_handle:
            return None
        if not is_valid_handle(recipient) or recipient in (sender, self.bot_handle):
            logger.info("payment command ignored | post=%s sender=%s recipient=%s", post_id, sender, recipient)
            return None

        reward_id = f"payment_{post_id}"
        if self.store.get(REWARDS, reward_id) is not None:
            return None
        key = (sender, recipient, command.amount)
        if any((r.sender, r.recipient, r.amount) == key for r in batch) or self._recent_duplicate(key, now):
            logger.info("payment duplicate skip | post=%s sender=%s recipient=%s amount=%s",
                        post_id, sender, recipient, command.amount)
            return None

        logger.info("payment recorded | post=%s sender=%s recipient=%s amount=%s",
                    post_id, sender, recipient, command.amount)
        return PendingReward(
            id=reward_id,
            sender=sender,
            recipient=recipient,
            amount=command.amount,
            reason=command.reason or f"Payment from @{sender}",
            source_skill_id=self.id,
            created_at=to_iso(now),
            reply_to=post_id,
        )

    def _recent_duplicate(self, key, now):
        since = now - timedelta(hours=self.duplicate_window_hours)

        def same(doc):
            created = parse_iso(doc.get("created_at"))
            return (doc.get("source_skill_id") == self.id
                    and (doc.get("sender"), doc.get("recipient"), to_decimal(doc.get("amount"))) == key
                    and created is not None and created >= since)

        return bool(self.store.query(REWARDS, where=same, limit=1))


# =============================================================================
# SOCIAL PULSE (X MENTIONS)
# =============================================================================

MONITORING = "agent_monitoring"


class SocialPulse(Skill):
    """
    Small rewards for accounts that mention the bot and look like agents.

    Every plausible account is tracked in agent_monitoring, one cycle per
    sighting. It is rewarded once verified (agent-like and present in the
    community) or once it has stayed agent-like for min_monitoring_cycles.
    Accounts that read as humans talking about agents are skipped.
    """

    id = "social_pulse"
    name = "SOCIAL_PULSE"

    REWARD_AMOUNTS = (Decimal("0.1"), Decimal("0.25"), Decimal("0.5"), Decimal("1"))
    AGENT_KEYWORDS = ("ai agent", "autonomous", "bot", "automated", "my agent", "i am an agent",
                      "built with", "gpt", "llm", "langchain", "autogpt")
    HUMAN_KEYWORDS = ("check out this agent", "found this bot", "cool agent", "look at",
                      "this agent is", "loving this", "great job", "nice work")
    AGENT_NAME_PATTERNS = ("bot", "agent", "ai", "gpt", "auto", "claw", "droid", "neural")

    def __init__(self, store, feed, community, bot_handle, feed_query, max_rewards_per_cycle=3,
                 min_monitoring_cycles=2, cooldown_hours=24, choose=None):
        self.store = store
        self.feed = feed
        self.community = community
        self.bot_handle = normalize_handle(bot_handle)
        self.feed_query = feed_query
        self.max_rewards_per_cycle = max_rewards_per_cycle
        self.min_monitoring_cycles = min_monitoring_cycles
        self.cooldown_hours = cooldown_hours
        self.choose = choose or random.choice

    def looks_like_agent(self, username, bio, text):
        """True for agent-like accounts, False for humans talking about agents, None when unsure."""
        username, bio, text = (username or "").lower(), (bio or "").lower(), (text or "").lower()
        agent_name = any(p in username for p in self.AGENT_NAME_PATTERNS)
        agent_bio = any(k in bio for k in self.AGENT_KEYWORDS)
        if agent_name or agent_bio:
            return True
        if any(k in text for k in self.HUMAN_KEYWORDS):
            return False
        return None

    def on_community(self, handle):
        if self.community is None or not self.community.enabled:
            return False
        try:
            return self.community.user_exists(handle)
        except ExternalServiceError as e:
            logger.warning("social pulse community check failed | user=%s error=%s", handle, e.message)
            return False

    def run(self, context):
        now = context.now or utcnow()
        if not self.feed.enabled:
            logger.warning("social pulse skipped | reason=no feed credentials")
            return []
        try:
            result = self.feed.search(self.feed_query, max_results=50)
        except ExternalServiceError as e:
            logger.warning("social pulse search failed | error=%s", e.message)
            return []

        first_post = {}
        for post in result.get("posts") or []:
            first_post.setdefault(post.get("author_id"), post)

        rewards = []
        for author in unique_authors(result.get("authors"), self.bot_handle):
            if len(rewards) >= self.max_rewards_per_cycle:
                logger.info("social pulse cap reached | rewarded=%d", len(rewards))
                break
            handle = normalize_handle(author["username"])
            post = first_post.get(author["id"]) or {}
            verdict = self.looks_like_agent(handle, author.get("description"), post.get("text"))
            if verdict is False:
                logger.info("social pulse human skip | user=%s", handle)
                continue

            record = self.store.get(MONITORING, handle) or {}
            last_rewarded = parse_iso(record.get("last_rewarded_at"))
            if last_rewarded is not None and now - last_rewarded < timedelta(hours=self.cooldown_hours):
                logger.info("social pulse cooldown skip | user=%s", handle)
                continue

            listed = self.on_community(handle)
            verified = verdict is True and listed
            cycles = int(record.get("cycles") or 0)
            reward_now = verified or (verdict is True and cycles >= self.min_monitoring_cycles)

            patch = {"username": handle, "cycles": cycles + 1, "is_verified": verified,
                     "on_community": listed, "last_seen": to_iso(now)}
            if not cycles:
                patch["first_seen"] = to_iso(now)
            if reward_now:
                patch["last_rewarded_at"] = to_iso(now)
            self.store.merge(MONITORING, handle, patch)

            if not reward_now:
                logger.info("social pulse monitoring | user=%s cycle=%d verified=%s", handle, cycles + 1, verified)
                continue

            amount = self.choose(self.REWARD_AMOUNTS)
            reason = ("Verified AI agent on X and the agent community" if verified
                      else "Confirmed AI agent contributing to ecosystem")
            rewards.append(PendingReward(
                id=f"pulse_{handle}_{int(now.timestamp() * 1000)}",
                sender=self.bot_handle,
                recipient=handle,
                amount=amount,
                reason=reason,
                source_skill_id=self.id,
                created_at=to_iso(now),
                reply_text=REPLY_TEMPLATES["PULSE"].format(username=handle, amount=amount),
                reply_to=post.get("id"),
            ))
            logger.info("social pulse reward | user=%s amount=%s verified=%s", handle, amount, verified)
        return rewards
