"""Authentication error classification for remote API failures."""

from __future__ import annotations

import re

_AUTH_STATUS_CODES = {401, 403}

# Anchored or phrase-level patterns; plain substring checks produce false positives
# on messages like "author not found".
_AUTH_ERROR_PATTERNS = [
    re.compile(r"^unauthorized[!.]*$", re.IGNORECASE),
    re.compile(r"^forbidden[!.]*$", re.IGNORECASE),
    re.compile(r"^unauthorized\s+\w+[!.]*$", re.IGNORECASE),
    re.compile(r"^forbidden\s+\w+[!.]*$", re.IGNORECASE),
    re.compile(r"^\w+\s+forbidden[!.]*$", re.IGNORECASE),
    re.compile(r"^\w+\s+unauthorized[!.]*$", re.IGNORECASE),
    re.compile(r"\bauthentication\s+failed\b", re.IGNORECASE),
    re.compile(r"\bauthentication\s+required\b", re.IGNORECASE),
    re.compile(r"\bnot\s+authenticated\b", re.IGNORECASE),
    re.compile(r"\binvalid\s+token\b", re.IGNORECASE),
    re.compile(r"\btoken\s+invalid\b", re.IGNORECASE),
    re.compile(r"\btoken\s+expired\b", re.IGNORECASE),
    re.compile(r"\baccess\s+denied\b", re.IGNORECASE),
    re.compile(r"\bauth\s+failed\b", re.IGNORECASE),
    re.compile(r"\bauth_required\b", re.IGNORECASE),
    re.compile(r"\btoken_invalid\b", re.IGNORECASE),
    re.compile(r"^40[13]\b"),
    re.compile(r"\berror:\s*40[13]\b", re.IGNORECASE),
]


def _status_code(error: BaseException) -> int | None:
    """Extract an HTTP status code from common error shapes."""
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None) or getattr(response, "status", None)
        if isinstance(code, int):
            return code
    return None


def is_authentication_error(error: BaseException) -> bool:
    """Return True for HTTP 401/403 errors and known auth failure messages."""
    if not isinstance(error, Exception):
        return False

    if _status_code(error) in _AUTH_STATUS_CODES:
        return True

    message = str(error).strip().lower()
    return any(pattern.search(message) for pattern in _AUTH_ERROR_PATTERNS)
