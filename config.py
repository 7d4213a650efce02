"""
ClawPay configuration.

All settings come from environment variables (set in the deployment
dashboard). Module-level constants hold the production defaults;
load_config() returns them as a dict for app.config so tests can override
individual keys through create_app(overrides).
"""

import os

# =============================================================================
# STORAGE
# =============================================================================
DATA_DIR = os.getenv("DATA_DIR", "/app/data")
EVAL_LOG_DIR = os.getenv("EVAL_LOG_DIR", os.path.join(DATA_DIR, "eval_log"))

# =============================================================================
# SCHEDULER / DISCOVERY
# =============================================================================
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
SCAN_INTERVAL_SECONDS = int(os.getenv("SCAN_INTERVAL_SECONDS", "1800"))  # 30 min
DEFAULT_COOLDOWN_HOURS = float(os.getenv("DEFAULT_COOLDOWN_HOURS", "24"))
MIN_REWARD_SCORE = int(os.getenv("MIN_REWARD_SCORE", "40"))
MAX_REWARDS_PER_CYCLE = int(os.getenv("MAX_REWARDS_PER_CYCLE", "3"))
COMMUNITY_MAX_PER_CYCLE = int(os.getenv("COMMUNITY_MAX_PER_CYCLE", "3"))
BOT_HANDLE = os.getenv("BOT_HANDLE", "clawpay_agent").lstrip("@").lower()
SCAN_QUERY = os.getenv("SCAN_QUERY", f"@{BOT_HANDLE} -is:retweet")
PAYMENT_QUERY = os.getenv(
    "PAYMENT_QUERY", f"@{BOT_HANDLE} (send OR pay OR fund OR tip) -is:retweet -is:quote"
)
PULSE_MIN_MONITORING_CYCLES = int(os.getenv("PULSE_MIN_MONITORING_CYCLES", "2"))

# =============================================================================
# AGENT API GATE
# =============================================================================
RATE_LIMIT_WINDOW_MS = int(os.getenv("RATE_LIMIT_WINDOW_MS", "60000"))
DEFAULT_MAX_REQUESTS = int(os.getenv("DEFAULT_MAX_REQUESTS", "10"))
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
GLOBAL_RATE_LIMITS = os.getenv("GLOBAL_RATE_LIMITS", "1000 per hour;100 per minute")
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "https://clawpay.app,http://localhost:5173,http://localhost:3000",
)

# =============================================================================
# AI SCORING
# =============================================================================
AI_PROVIDER = os.getenv("AI_PROVIDER", "anthropic")  # "anthropic" or "openai"
AI_API_KEY = os.getenv("AI_API_KEY", "")
AI_MODEL = os.getenv("AI_MODEL", "claude-3-5-haiku-latest")
AI_BASE_URL = os.getenv("AI_BASE_URL", "")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))

# =============================================================================
# SOCIAL PLATFORMS
# =============================================================================
X_API_BASE = os.getenv("X_API_BASE", "https://api.twitter.com/2")
X_BEARER_TOKEN = os.getenv("X_BEARER_TOKEN", "")
X_USER_TOKEN = os.getenv("X_USER_TOKEN", "")
COMMUNITY_API_BASE = os.getenv("COMMUNITY_API_BASE", "https://www.moltbook.com/api/v1")
COMMUNITY_API_KEY = os.getenv("COMMUNITY_API_KEY", "")
COMMUNITY_TARGETS = os.getenv("COMMUNITY_TARGETS", "aiagents,agent-ops,solana,engineering")
HTTP_TIMEOUT = int(os.getenv("HTTP_TIMEOUT", "15"))

# =============================================================================
# SOLANA
# =============================================================================
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
TOKEN_MINT = os.getenv("TOKEN_MINT", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")  # USDC
TOKEN_DECIMALS = int(os.getenv("TOKEN_DECIMALS", "6"))
TOKEN_PROGRAM = os.getenv("TOKEN_PROGRAM", "spl-token")  # "spl-token" or "token-2022"
VAULT_PRIVATE_KEY = os.getenv("VAULT_PRIVATE_KEY", "")
CONFIRM_TIMEOUT_SECONDS = float(os.getenv("CONFIRM_TIMEOUT_SECONDS", "60"))
PRIORITY_FEE_MICROLAMPORTS = int(os.getenv("PRIORITY_FEE_MICROLAMPORTS", "50000"))
GAS_FUND_AMOUNT_SOL = os.getenv("GAS_FUND_AMOUNT_SOL", "0.003")  # one-time top-up per agent wallet


def load_config():
    """Return the current settings as a flat dict for app.config."""
    return {
        "DATA_DIR": DATA_DIR,
        "EVAL_LOG_DIR": EVAL_LOG_DIR,
        "SCHEDULER_ENABLED": SCHEDULER_ENABLED,
        "SCAN_INTERVAL_SECONDS": SCAN_INTERVAL_SECONDS,
        "DEFAULT_COOLDOWN_HOURS": DEFAULT_COOLDOWN_HOURS,
        "MIN_REWARD_SCORE": MIN_REWARD_SCORE,
        "MAX_REWARDS_PER_CYCLE": MAX_REWARDS_PER_CYCLE,
        "COMMUNITY_MAX_PER_CYCLE": COMMUNITY_MAX_PER_CYCLE,
        "BOT_HANDLE": BOT_HANDLE,
        "SCAN_QUERY": SCAN_QUERY,
        "PAYMENT_QUERY": PAYMENT_QUERY,
        "PULSE_MIN_MONITORING_CYCLES": PULSE_MIN_MONITORING_CYCLES,
        "RATE_LIMIT_WINDOW_MS": RATE_LIMIT_WINDOW_MS,
        "DEFAULT_MAX_REQUESTS": DEFAULT_MAX_REQUESTS,
        "ADMIN_API_KEY": ADMIN_API_KEY,
        "GLOBAL_RATE_LIMITS": GLOBAL_RATE_LIMITS,
        "CORS_ORIGINS": [o.strip() for o in CORS_ORIGINS.split(",") if o.strip()],
        "AI_PROVIDER": AI_PROVIDER,
        "AI_API_KEY": AI_API_KEY,
        "AI_MODEL": AI_MODEL,
        "AI_BASE_URL": AI_BASE_URL,
        "AI_TIMEOUT_SECONDS": AI_TIMEOUT_SECONDS,
        "X_API_BASE": X_API_BASE,
        "X_BEARER_TOKEN": X_BEARER_TOKEN,
        "X_USER_TOKEN": X_USER_TOKEN,
        "COMMUNITY_API_BASE": COMMUNITY_API_BASE,
        "COMMUNITY_API_KEY": COMMUNITY_API_KEY,
        "COMMUNITY_TARGETS": [t.strip() for t in COMMUNITY_TARGETS.split(",") if t.strip()],
        "HTTP_TIMEOUT": HTTP_TIMEOUT,
        "SOLANA_RPC_URL": SOLANA_RPC_URL,
        "TOKEN_MINT": TOKEN_MINT,
        "TOKEN_DECIMALS": TOKEN_DECIMALS,
        "TOKEN_PROGRAM": TOKEN_PROGRAM,
        "VAULT_PRIVATE_KEY": VAULT_PRIVATE_KEY,
        "CONFIRM_TIMEOUT_SECONDS": CONFIRM_TIMEOUT_SECONDS,
        "PRIORITY_FEE_MICROLAMPORTS": PRIORITY_FEE_MICROLAMPORTS,
        "GAS_FUND_AMOUNT_SOL": GAS_FUND_AMOUNT_SOL,
    }
