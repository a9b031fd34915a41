"""Log sanitizer - removes credentials from log messages.

The EVS adapters handle portal passwords, bearer tokens and session cookies.
None of these may reach the log file, even when a backend echoes them back
in an error body.
"""

import re
from typing import Union

# Patterns to detect and redact sensitive data
SENSITIVE_PATTERNS = [
    # Form / JSON / query style secrets: password=..., "token": "...", txtPassword=...
    (r'(password|passwd|txtPassword|secret|token|api_key|apikey|authorization)("?\s*[:=]\s*"?)[^\s,}"\'&]+',
     r'\1\2[REDACTED]'),

    # Bearer tokens
    (r'(Bearer|Basic)\s+[A-Za-z0-9\-_\.=]+', r'\1 [REDACTED]'),

    # JWT tokens (three base64 segments separated by dots)
    (r'eyJ[A-Za-z0-9\-_]+\.eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+', '[JWT_TOKEN]'),

    # Servlet session cookies from the legacy portal
    (r'(JSESSIONID|SESSIONID|SESSION)=[^;\s,]+', r'\1=[REDACTED]'),

    # Generic long alphanumeric strings that look like keys (40+ chars)
    (r'\b[A-Za-z0-9]{40,}\b', '[LONG_TOKEN]'),
]

# Compiled patterns for efficiency
_COMPILED_PATTERNS = [(re.compile(p, re.IGNORECASE), r) for p, r in SENSITIVE_PATTERNS]


def sanitize_log(text: str) -> str:
    """Remove sensitive data from text for safe logging.

    Args:
        text: The text to sanitize

    Returns:
        Sanitized text with sensitive data replaced by placeholders
    """
    if not text:
        return text

    result = text
    for pattern, replacement in _COMPILED_PATTERNS:
        result = pattern.sub(replacement, result)

    return result


def sanitize_for_log(value: Union[str, bytes, None], max_length: int = 200) -> str:
    """Sanitize and truncate a backend-supplied value for logging.

    Args:
        value: The value to sanitize (string or bytes)
        max_length: Maximum length of returned string

    Returns:
        Sanitized, truncated string safe for logging
    """
    if value is None:
        return "<None>"

    if isinstance(value, bytes):
        text = value.decode("utf-8", errors="replace")
    else:
        text = str(value)

    sanitized = sanitize_log(text)

    if len(sanitized) > max_length:
        return sanitized[:max_length] + f"... [{len(text)} chars total]"

    return sanitized


def mask_secret(secret: str, visible: int = 2) -> str:
    """Render a secret as its first few characters followed by asterisks."""
    if not secret:
        return ""
    return secret[:visible] + "*" * max(0, len(secret) - visible)
