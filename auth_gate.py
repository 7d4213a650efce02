"""
Agent API authentication gate.

External agents call the /api/v1/agent/* surface with a single opaque API
key (Authorization: Bearer <key> or X-API-Key). Keys are stored by their
SHA-256 digest in the "api_keys" collection and must be admin-approved
before use. Every approved key gets its own fixed-window quota from the
RateLimiter. Audit records are written on a background worker so a slow or
broken audit store never affects the request.
"""

import hashlib
import logging
import math
import re
import secrets
from concurrent.futures import ThreadPoolExecutor
from functools import wraps

from flask import after_this_request, current_app, g, request

from errors import AuthError, ClawPayError, RateLimitError
from models import ApiKeyRecord, normalize_handle, to_iso, utcnow
from validation import sanitize_for_log

logger = logging.getLogger(__name__)

API_KEYS = "api_keys"
AUDIT_LOG = "audit_log"
KEY_MIN_LEN = 8
KEY_MAX_LEN = 128
_KEY_CHARSET = re.compile(r"^[A-Za-z0-9_\-]+$")


def hash_api_key(api_key):
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def extract_api_key(req):
    """Bearer token first, then X-API-Key. Returns '' when neither is present."""
    auth = req.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return req.headers.get("X-API-Key", "").strip()


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditLog:
    """Fire-and-forget audit writer."""

    def __init__(self, store):
        self.store = store
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")

    def record(self, event_type, handle=None, ip=None, path=None, method=None, reason=None, **extra):
        entry = {
            "type": event_type,
            "reason": reason,
            "handle": handle,
            "ip": ip,
            "path": sanitize_for_log(path),
            "method": method,
            "timestamp": to_iso(utcnow()),
        }
        entry.update(extra)
        try:
            self._executor.submit(self._write, entry)
        except RuntimeError:
            # Executor already shut down during app teardown.
            logger.warning("audit dropped | type=%s handle=%s", event_type, handle)

    def _write(self, entry):
        try:
            self.store.append(AUDIT_LOG, entry)
        except Exception as e:
            logger.error("audit write failed | type=%s error=%s", entry.get("type"), e)

    def flush(self, timeout=5):
        """Block until every queued record has been written."""
        self._executor.submit(lambda: None).result(timeout=timeout)

    def shutdown(self):
        self._executor.shutdown(wait=True)


# =============================================================================
# KEY MANAGEMENT
# =============================================================================

def issue_api_key(store, handle, rate_limit=None, permissions=None):
    """Create a pending key. Returns (plaintext_key, ApiKeyRecord); the plaintext is never stored."""
    api_key = f"cp_{secrets.token_urlsafe(32)}"
    record = ApiKeyRecord(
        key_hash=hash_api_key(api_key),
        handle=normalize_handle(handle),
        status="pending",
        permissions=list(permissions or ["read"]),
        rate_limit=rate_limit,
        created_at=to_iso(utcnow()),
    )
    store.set(API_KEYS, record.key_hash, record.to_doc())
    logger.info("api key issued | handle=%s hash=%.12s", record.handle, record.key_hash)
    return api_key, record


def set_api_key_status(store, key_hash, status):
    """Approve or revoke a key by its hash. Returns the updated record or None."""
    if status not in ("approved", "revoked"):
        raise ValueError(f"Unsupported key status: {status}")
    doc = store.conditional_update(API_KEYS, key_hash, lambda d: True, {"status": status})
    if doc is None:
        return None
    logger.info("api key %s | hash=%.12s handle=%s", status, key_hash, doc.get("handle"))
    return ApiKeyRecord.from_doc(doc)


# =============================================================================
# GATE
# =============================================================================

def rate_limit_headers(limit, result):
    reset_seconds = math.ceil(result.reset_in_ms / 1000)
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(reset_seconds),
    }


class AuthGate:
    def __init__(self, store, rate_limiter, audit_log, default_max_requests=10):
        self.store = store
        self.rate_limiter = rate_limiter
        self.audit_log = audit_log
        self.default_max_requests = default_max_requests

    def _lookup(self, api_key):
        try:
            doc = self.store.get(API_KEYS, hash_api_key(api_key))
            return ApiKeyRecord.from_doc(doc) if doc else None
        except Exception as e:
            logger.error("api key lookup failed | error=%s", e)
            raise ClawPayError("Authentication service error", 500, "auth_service_error") from e

    def authenticate(self, api_key, ip=None, path=None, method=None):
        """
        Validate a key and count the request against its quota.

        Returns (identity, headers). Raises AuthError (401/403),
        RateLimitError (429) or a generic 500 ClawPayError.
        """
        ctx = {"ip": ip, "path": path, "method": method}
        if not api_key:
            raise AuthError("Include an Authorization: Bearer <key> or X-API-Key header", code="api_key_required")
        if len(api_key) < KEY_MIN_LEN or len(api_key) > KEY_MAX_LEN or not _KEY_CHARSET.match(api_key):
            raise AuthError("Invalid API key format", code="invalid_api_key")

        record = self._lookup(api_key)
        if record is None:
            self.audit_log.record("auth_failed", reason="key_not_found",
                                  api_key_prefix=api_key[:8] + "...", **ctx)
            raise AuthError("Invalid API key", code="invalid_api_key")

        if record.status != "approved":
            self.audit_log.record("auth_failed", reason="key_not_approved", handle=record.handle,
                                  status=record.status, **ctx)
            if record.status == "pending":
                message = "Your API key is pending admin approval"
            else:
                message = "Your API key has been revoked"
            raise AuthError(message, forbidden=True, code=f"key_{record.status}")

        limit = record.rate_limit or self.default_max_requests
        result = self.rate_limiter.check(record.key_hash, limit)
        headers = rate_limit_headers(limit, result)
        if not result.allowed:
            retry_after = math.ceil(result.reset_in_ms / 1000)
            headers["Retry-After"] = str(retry_after)
            self.audit_log.record("rate_limited", handle=record.handle, **ctx)
            logger.info("agent rate limited | handle=%s retry_after=%s", record.handle, retry_after)
            raise RateLimitError(
                f"Too many requests. Please wait {retry_after} seconds.",
                retry_after=retry_after,
                headers=headers,
            )

        self.audit_log.record("request", handle=record.handle, **ctx)
        identity = {
            "handle": record.handle,
            "permissions": record.permissions,
            "createdAt": record.created_at,
        }
        return identity, headers


def require_agent_key(permission=None):
    """
    Route decorator: authenticate the caller and attach g.agent.

    permission: optional permission name the key must carry (403 otherwise).
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            gate = current_app.extensions["clawpay"].auth_gate
            identity, headers = gate.authenticate(
                extract_api_key(request),
                ip=request.remote_addr or "unknown",
                path=request.path,
                method=request.method,
            )
            if permission and permission not in identity["permissions"]:
                raise AuthError(f"API key lacks '{permission}' permission", forbidden=True,
                                code="insufficient_permissions")
            g.agent = identity

            @after_this_request
            def _add_rate_headers(response):
                response.headers.update(headers)
                return response

            return fn(*args, **kwargs)
        return wrapper
    return decorator
