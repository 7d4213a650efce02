"""
ClawPay error taxonomy.

Every error that can reach an HTTP caller derives from ClawPayError and
carries its status code and a short machine-readable code. The app factory
renders them as {"success": false, "error": code, "message": ...}.
"""


class ClawPayError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message, status_code=None, code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self):
        return {"success": False, "error": self.code, "message": self.message}


class AuthError(ClawPayError):
    """Missing, malformed, unknown or unapproved credential."""
    status_code = 401
    code = "unauthorized"

    def __init__(self, message, forbidden=False, code=None):
        if forbidden:
            super().__init__(message, status_code=403, code=code or "forbidden")
        else:
            super().__init__(message, code=code)


class RateLimitError(ClawPayError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message, retry_after, headers=None):
        super().__init__(message)
        self.retry_after = retry_after
        self.headers = headers or {}

    def to_dict(self):
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class ValidationError(ClawPayError):
    status_code = 400
    code = "validation_error"


class NotFoundError(ClawPayError):
    status_code = 404
    code = "not_found"


class ConflictError(ClawPayError):
    status_code = 409
    code = "conflict"


class ExternalServiceError(ClawPayError):
    """Feed, LLM or chain RPC unreachable. Pipelines log and fall back."""
    status_code = 502
    code = "external_service_error"


class PersistenceError(ClawPayError):
    status_code = 500
    code = "persistence_error"

    def to_dict(self):
        # Storage details stay in the logs.
        return {"success": False, "error": self.code, "message": "Storage unavailable"}
