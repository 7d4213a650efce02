"""
AI Evaluation Logger
Persists raw AI scoring outputs (agent evaluations, generated bounties) so
prompt quality can be reviewed later. Failures are logged, never raised.
"""

import json
import logging
import os
from datetime import datetime, timezone

import config

logger = logging.getLogger(__name__)

# Evaluation type -> subdirectory mapping
EVAL_TYPES = {
    "agent_evaluation": "agent_evaluations",
    "bounty_generation": "bounty_generations",
}


def save_evaluation(eval_type, ai_response_text, metadata=None, log_dir=None):
    """
    Save an AI evaluation result for analysis.

    Args:
        eval_type: Key from EVAL_TYPES (e.g. "agent_evaluation")
        ai_response_text: Raw AI response string (usually JSON)
        metadata: Dict with context (username, score, verdict, etc.)

    Returns: (filepath, error) tuple
    """
    subdir = EVAL_TYPES.get(eval_type)
    if not subdir:
        return None, f"Unknown eval_type: {eval_type}"

    save_dir = os.path.join(log_dir or config.EVAL_LOG_DIR, subdir)
    now = datetime.now(timezone.utc)
    identifier = ""
    if metadata:
        if "username" in metadata:
            identifier = f"_{metadata['username']}"
        elif "bounty_id" in metadata:
            identifier = f"_{metadata['bounty_id']}"
    identifier = "".join(c for c in identifier if c.isalnum() or c in "_-")[:60]

    filename = f"{now.strftime('%Y%m%d_%H%M%S_%f')}{identifier}_{eval_type}.json"
    filepath = os.path.join(save_dir, filename)

    parsed_response = None
    try:
        parsed_response = json.loads(ai_response_text)
    except (json.JSONDecodeError, TypeError):
        pass

    record = {
        "timestamp": now.isoformat(),
        "eval_type": eval_type,
        "ai_response_raw": ai_response_text,
        "ai_response_parsed": parsed_response,
        "metadata": metadata or {},
    }

    try:
        os.makedirs(save_dir, exist_ok=True)
        with open(filepath, "w") as f:
            json.dump(record, f, indent=2, default=str)
        return filepath, None
    except OSError as e:
        logger.warning("eval log save failed | type=%s error=%s", eval_type, e)
        return None, str(e)
