"""
Bounty assigner skill - writes a personalised bounty for a recently
rewarded agent and assigns it to them exclusively.

At most one bounty per cycle. Agents that still have an unfinished
assigned bounty are skipped. The LLM proposes title, description and
reward; the reward is clamped to the configured range.
"""

import json
import logging
import re
import threading
from datetime import timedelta
from decimal import Decimal

import ai_provider
from bounty_ledger import BountyLedger
from discovery import AGENTS, Skill
from errors import ExternalServiceError, ValidationError
from eval_logger import save_evaluation
from models import to_decimal, to_iso

logger = logging.getLogger(__name__)

# === Configuration ===
MIN_REWARD = Decimal("0.5")
MAX_REWARD = Decimal("2")
BOUNTY_DURATION_HOURS = 48
CANDIDATE_POOL = 10

CATEGORIES = [
    "AI Agent Development",
    "Moltbook Integration",
    "Agent-to-Agent Communication",
    "Autonomous Workflow",
    "AI Agent Documentation",
    "Agent Testing & Debugging",
    "Agent Analytics Dashboard",
    "Multi-Agent Coordination",
    "Agent Skill Plugin",
    "Agent Memory Systems",
]

BOUNTY_PROMPT = """You are ClawPay Agent, an autonomous AI agent that funds useful work by other agents.

Create a UNIQUE bounty task for this agent. The bounty must be AI agent focused.

AGENT: @{username}
CONTEXT: {context}

BOUNTY REQUIREMENTS:
1. Focus on AI AGENTS - not generic crypto/DeFi tasks
2. Suggested category: "{category}" (use this as inspiration)
3. Tasks could involve: building agent skills, agent documentation, inter-agent protocols, autonomous tools
4. Completable within {hours} hours
5. Reward: ${min_reward}-${max_reward} USDC

Create tasks that involve BUILDING, CODING, or CREATING something for the AI agent ecosystem.
Do NOT create generic "comparison guides" or "analysis reports".

Respond in JSON:
{{
  "title": "Brief title (max 60 chars, action-oriented)",
  "description": "Clear deliverables - what exactly to build/create",
  "reward": <{min_reward}-{max_reward}>,
  "tags": ["ai-agent", "tag2"],
  "reasoning": "Why this suits their skills"
}}

If no suitable bounty, respond: {{"skip": true, "reason": "..."}}"""

ANNOUNCEMENT = """BOUNTY_ASSIGNED

@{username}, ClawPay Agent has a task for you:

"{title}"

Reward: ${reward} USDC
Deadline: {hours} hours

Claim and submit at clawpay.fun/bounties"""


class CategoryRotator:
    """Cycles through bounty categories so consecutive bounties differ."""

    def __init__(self, categories=None):
        self.categories = list(categories or CATEGORIES)
        self._index = 0
        self._lock = threading.Lock()

    def next(self):
        with self._lock:
            category = self.categories[self._index % len(self.categories)]
            self._index += 1
            return category


def clamp_reward(value):
    amount = to_decimal(value, MIN_REWARD)
    return min(max(amount, MIN_REWARD), MAX_REWARD)


def parse_bounty_idea(output):
    """Pull the JSON object out of the reply. Returns None for skips and junk."""
    match = re.search(r"\{[\s\S]*\}", output or "")
    if not match:
        return None
    try:
        idea = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(idea, dict) or idea.get("skip"):
        return None
    title = str(idea.get("title") or "").strip()
    description = str(idea.get("description") or "").strip()
    if not title or not description:
        return None
    tags = idea.get("tags") if isinstance(idea.get("tags"), list) else []
    return {
        "title": title[:60],
        "description": description,
        "reward": clamp_reward(idea.get("reward")),
        "tags": [str(t) for t in tags],
        "reasoning": str(idea.get("reasoning") or ""),
    }


class BountyAssigner(Skill):
    id = "bounty_assigner"
    name = "BOUNTY_ASSIGNER"

    def __init__(self, store, ledger: BountyLedger, feed=None, call_ai=None, rotator=None, log_dir=None):
        self.store = store
        self.ledger = ledger
        self.feed = feed
        self._call_ai = call_ai or ai_provider.call_ai
        self.rotator = rotator or CategoryRotator()
        self._log_dir = log_dir

    def pick_agent(self):
        """Most recently evaluated REWARD-verdict agent without an unfinished assignment."""
        recent = self.store.query(AGENTS, where=lambda d: d.get("verdict") == "REWARD",
                                  order_by="last_evaluated_at", reverse=True, limit=CANDIDATE_POOL)
        for doc in recent:
            if self.ledger.open_assignment_for(doc["username"]) is None:
                return doc
        return None

    def run(self, context):
        if not context.ai_key:
            logger.info("bounty assigner skipped | reason=no ai key")
            return []

        agent = self.pick_agent()
        if agent is None:
            return []

        username = agent["username"]
        agent_context = "; ".join(agent.get("contributions") or []) or agent.get("bio") or (
            f"Agent @{username} was discovered doing valuable work in the agent ecosystem.")
        prompt = BOUNTY_PROMPT.format(
            username=username, context=agent_context[:1500], category=self.rotator.next(),
            hours=BOUNTY_DURATION_HOURS, min_reward=MIN_REWARD, max_reward=MAX_REWARD,
        )
        output, error = self._call_ai(prompt, api_key=context.ai_key, max_tokens=500)
        if error:
            logger.warning("bounty generation failed | user=%s error=%s", username, error)
            return []

        idea = parse_bounty_idea(output)
        if idea is None:
            logger.info("bounty generation skipped | user=%s", username)
            return []

        try:
            bounty = self.ledger.post_bounty(
                idea["title"], idea["description"], idea["reward"],
                creator=self.ledger.system_handle,
                tags=idea["tags"],
                assigned_to=username,
                deadline=to_iso(context.now + timedelta(hours=BOUNTY_DURATION_HOURS)),
            )
        except ValidationError as e:
            logger.warning("generated bounty rejected | user=%s error=%s", username, e.message)
            return []

        save_evaluation("bounty_generation", output, {"bounty_id": bounty.id, "username": username},
                        log_dir=self._log_dir)
        logger.info("bounty assigned | id=%s user=%s reward=%s", bounty.id, username, bounty.reward)
        self.announce(username, bounty)
        return []

    def announce(self, username, bounty):
        if self.feed is None:
            return
        text = ANNOUNCEMENT.format(username=username, title=bounty.title, reward=bounty.reward,
                                   hours=BOUNTY_DURATION_HOURS)
        try:
            self.feed.post_update(text)
        except ExternalServiceError as e:
            logger.warning("bounty announcement failed | id=%s error=%s", bounty.id, e.message)
