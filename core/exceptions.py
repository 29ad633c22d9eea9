# core/exceptions.py
"""
Centralized exception definitions for the Gemini chat proxy.

Every error the API reports to a caller is a ChatProxyError subclass
carrying the HTTP status and the machine-readable code used in the
JSON error body, so route handlers never pick status codes themselves.
"""


# ============================================================
# Base Exceptions
# ============================================================

class ChatProxyError(Exception):
    """
    Root base exception for the entire application.
    All custom exceptions should inherit from this.
    """
    status_code = 500
    code = "INTERNAL_ERROR"
    public_message = "Internal error while processing the request"
    # When True the exception text itself is safe to show to the caller
    expose_message = False

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.public_message)
        if code is not None:
            self.code = code


class ChatValidationError(ChatProxyError):
    """
    Raised when an inbound request fails validation.
    Never retried; reported as 400.
    """
    status_code = 400
    code = "INVALID_REQUEST"
    public_message = "Invalid request"
    expose_message = True


class NotFoundError(ChatProxyError):
    status_code = 404
    code = "NOT_FOUND"
    public_message = "Resource not found"
    expose_message = True


class NoCredentialsError(ChatProxyError):
    """
    Raised at startup when no Gemini API key is configured.
    This is the only fatal error in the service.
    """
    code = "NO_API_KEYS"
    public_message = "GEMINI_API_KEYS (or GEMINI_API_KEY) is required"


# ============================================================
# Upstream (Gemini) Errors
# ============================================================

class UpstreamError(ChatProxyError):
    """
    Base exception for failures reported by the Gemini API.
    Raised only by the adapter in agents.gemini_client.
    """
    pass


class UpstreamAuthError(UpstreamError):
    status_code = 401
    code = "INVALID_API_KEY"
    public_message = "The configured Gemini API key was rejected"


class QuotaExceededError(UpstreamError):
    status_code = 429
    code = "QUOTA_EXCEEDED"
    public_message = "Gemini quota exceeded, try again later"


class SafetyBlockedError(UpstreamError):
    status_code = 400
    code = "SAFETY_BLOCKED"
    public_message = "The message was blocked by the content safety filter"


class BadUpstreamRequestError(UpstreamError):
    status_code = 400
    code = "BAD_REQUEST"
    public_message = "Gemini rejected the request as malformed"


class UpstreamUnknownError(UpstreamError):
    public_message = "Unexpected error from the Gemini API"


# ============================================================
# Response Shaping
# ============================================================

def error_body(exc: ChatProxyError, include_details: bool) -> dict:
    """
    JSON body for an error response: {error, code} plus the underlying
    message as `details` when verbose errors are enabled.
    """
    if exc.expose_message:
        return {"error": str(exc), "code": exc.code}

    body = {"error": exc.public_message, "code": exc.code}
    if include_details:
        body["details"] = str(exc)
    return body
