"""
Input validators shared by the HTTP surface and the ledgers.
"""

import re
from urllib.parse import urlparse

import base58

HANDLE_RE = re.compile(r"^[a-zA-Z0-9_]{1,50}$")
BOUNTY_ID_RE = re.compile(r"^bounty_[a-zA-Z0-9_]+$")
BOUNTY_ID_MAX = 100
REWARD_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,200}$")
LOG_FIELD_MAX = 200
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def is_valid_handle(handle):
    return isinstance(handle, str) and bool(HANDLE_RE.match(handle.lstrip("@")))


def is_valid_https_url(url):
    if not isinstance(url, str) or len(url) > 2048:
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme == "https" and bool(parsed.netloc)


def is_valid_bounty_id(bounty_id):
    return (
        isinstance(bounty_id, str)
        and len(bounty_id) <= BOUNTY_ID_MAX
        and bool(BOUNTY_ID_RE.match(bounty_id))
    )


def is_valid_reward_id(reward_id):
    return isinstance(reward_id, str) and bool(REWARD_ID_RE.fullmatch(reward_id))


# =============================================================================
# WALLET VALIDATION
# =============================================================================

def validate_solana_address(address):
    """
    Validate Solana wallet address format.
    Returns: (is_valid, error_message)
    """
    if not address or not isinstance(address, str):
        return False, "Wallet address is required"

    address = address.strip()

    if len(address) < 32 or len(address) > 44:
        return False, f"Invalid address length: {len(address)} (expected 32-44)"

    try:
        decoded = base58.b58decode(address)
    except ValueError as e:
        return False, f"Invalid base58 encoding: {e}"
    if len(decoded) != 32:
        return False, "Address decodes to wrong byte length"

    return True, None


def is_valid_wallet(address):
    return validate_solana_address(address)[0]


def sanitize_for_log(value, max_length=LOG_FIELD_MAX):
    """Strip control characters and truncate user input before it hits a log line."""
    if value is None:
        return ""
    return _CONTROL_CHARS.sub("", str(value))[:max_length]
