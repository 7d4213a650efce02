"""
Agent evaluator - scores an account's recent posts for "good work for the
greater good of AI agents".

With a scoring key, one LLM call grades the batch against a fixed rubric.
Without one, or when the call fails or returns junk, a deterministic keyword
heuristic produces the same result shape, so discovery never stalls on the
remote scorer.
"""

import json
import logging
import re
from decimal import Decimal

import ai_provider
from eval_logger import save_evaluation
from models import Evaluation

logger = logging.getLogger(__name__)

# === Configuration ===
HEURISTIC_BASE_SCORE = 30
MAX_TEXTS = 20
MAX_TEXT_CHARS = 1000

EVALUATION_PROMPT = """You are the evaluation engine for CLAW_PAY, an autonomous settlement agent on Solana. Your job is to assess whether an AI agent's public activity constitutes "good work for the greater good of AI agents."

You will receive a batch of posts from an account. Evaluate them against these criteria:

POSITIVE SIGNALS (increase score):
- Building or sharing open-source tools, libraries, or frameworks
- Helping other AI agents solve problems or integrate systems
- Contributing useful information to the Solana, crypto, or AI ecosystem
- Creating educational content that helps developers or agents
- Facilitating meaningful agent-to-agent collaboration
- Sharing research, insights, or analysis that benefits the community
- Demonstrating autonomous capability (trading, deploying, monitoring)

NEGATIVE SIGNALS (decrease score):
- Spam, repetitive promotional content with no substance
- Scam promotion or rug-pull activity
- Harassment or toxic engagement
- Fake engagement farming (empty replies, generic praise)
- Misleading claims about capabilities or partnerships
- Pure price speculation with no analysis

Respond with ONLY valid JSON (no markdown, no backticks):
{
  "score": <number 0-100>,
  "is_agent": <boolean - true if this appears to be an AI agent account>,
  "verdict": "<REWARD | WATCH | IGNORE | REJECT>",
  "reason": "<one sentence explaining the score>",
  "reward_amount": <suggested USDC reward: 0, 1, 2, 5, or 10 based on quality>,
  "contributions": ["<list of specific good contributions found>"]
}

Verdicts:
- REWARD (score 70+): Clear positive contributions, deserves funding
- WATCH (score 40-69): Some value but needs more evidence
- IGNORE (score 20-39): Neutral, not harmful but not contributing
- REJECT (score 0-19): Spam, scam, or harmful content"""

# (pattern, points, label), applied in order
POSITIVE_RULES = [
    (re.compile(r"open.?source|github|repo|library|framework|sdk"), 15, "open-source contribution"),
    (re.compile(r"built|deployed|launched|shipped|released"), 10, "building products"),
    (re.compile(r"solana|sol|spl.?token|on.?chain"), 8, "Solana ecosystem"),
    (re.compile(r"agent|autonomous|ai.?agent|multi.?agent"), 10, "AI agent ecosystem"),
    (re.compile(r"tutorial|guide|how.?to|explained|thread"), 8, "educational content"),
    (re.compile(r"collab|partner|integrat|connect"), 5, "collaboration"),
    (re.compile(r"research|paper|findings|analysis"), 8, "research sharing"),
    (re.compile(r"help|assist|support|fix|solve"), 5, "helping others"),
    (re.compile(r"openclaw|clawdbot|moltbot"), 10, "OpenClaw ecosystem"),
    (re.compile(r"swap|trade|defi|yield|liquidity"), 5, "DeFi activity"),
]

NEGATIVE_RULES = [
    (re.compile(r"scam|rug|fake|ponzi"), -30, "scam signals"),
    (re.compile(r"buy now|limited time|guaranteed|100x"), -15, "spam promotion"),
    (re.compile(r"send me|dm me|click link"), -10, "engagement farming"),
]

AGENT_SIGNAL = re.compile(r"bot|agent|ai|auto|daemon|assistant|gpt|claude|llm", re.IGNORECASE)


def verdict_for(score):
    """Map a 0..100 score to (verdict, reward_amount)."""
    if score >= 70:
        return "REWARD", Decimal(10 if score >= 85 else 5)
    if score >= 40:
        return "WATCH", Decimal(2 if score >= 55 else 1)
    if score < 20:
        return "REJECT", Decimal(0)
    return "IGNORE", Decimal(0)


def heuristic_evaluate(username, bio, texts):
    """Keyword scoring. Pure: the same input always gives the same Evaluation."""
    all_text = " ".join([bio or ""] + list(texts or [])).lower()

    score = HEURISTIC_BASE_SCORE
    contributions = []
    for pattern, points, label in POSITIVE_RULES:
        if pattern.search(all_text):
            score += points
            contributions.append(label)
    for pattern, points, label in NEGATIVE_RULES:
        if pattern.search(all_text):
            score += points
            contributions.append(f"WARNING: {label}")

    score = max(0, min(100, score))
    verdict, reward = verdict_for(score)
    is_agent = bool(AGENT_SIGNAL.search(bio or "") or AGENT_SIGNAL.search(username or ""))
    summary = ", ".join(contributions[:3]) if contributions else "no strong signals detected"

    return Evaluation(
        score=score,
        is_agent=is_agent,
        verdict=verdict,
        reason=f"Heuristic evaluation: {summary}",
        reward_amount=reward,
        contributions=contributions,
        method="heuristic",
    )


def parse_ai_evaluation(output):
    """
    Parse the scorer's reply. Strips markdown fences, then requires the
    full result shape. Raises ValueError on anything else.
    """
    json_text = (output or "").strip()
    if json_text.startswith("```"):
        json_text = json_text.split("\n", 1)[1] if "\n" in json_text else json_text[3:]
        if json_text.endswith("```"):
            json_text = json_text[:-3]
        json_text = json_text.strip()

    try:
        parsed = json.loads(json_text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON: {e}") from e
    return Evaluation.from_dict(parsed, method="ai")


class Evaluator:
    def __init__(self, call_ai=None, log_dir=None):
        self._call_ai = call_ai or ai_provider.call_ai
        self._log_dir = log_dir

    def build_prompt(self, username, bio, texts):
        numbered = "\n".join(
            f"[{i + 1}] {t[:MAX_TEXT_CHARS]}" for i, t in enumerate(texts[:MAX_TEXTS])
        )
        return (
            f"{EVALUATION_PROMPT}\n\n"
            f"Account: @{username}\nBio: {bio or 'No bio'}\n\nRecent posts:\n{numbered}"
        )

    def evaluate(self, username, bio, texts, remote_key=None):
        """Score one account. Never raises; falls back to the heuristic."""
        texts = [t for t in (texts or []) if t]
        if not remote_key:
            return heuristic_evaluate(username, bio, texts)

        output, error = self._call_ai(self.build_prompt(username, bio, texts), api_key=remote_key, max_tokens=512)
        if error or not output:
            logger.warning("ai evaluation unavailable | user=%s error=%s", username, error)
            return heuristic_evaluate(username, bio, texts)

        try:
            result = parse_ai_evaluation(output)
        except ValueError as e:
            logger.warning("ai evaluation malformed | user=%s error=%s", username, e)
            return heuristic_evaluate(username, bio, texts)

        save_evaluation("agent_evaluation", output, {
            "username": username,
            "score": result.score,
            "verdict": result.verdict,
        }, log_dir=self._log_dir)
        return result
