"""
Redaction of diagnostic text.

Anything passed outward (logs, CLI output, operation results) goes through
``sanitize_diagnostic`` so secret values and absolute file paths never leave
the process.
"""

import re
from typing import Iterable, Optional

REDACTED = "[REDACTED]"
REDACTED_PATH = "<path>"

_SECRET_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(r"(AccountKey=)[^;\s]+", re.IGNORECASE),
    re.compile(r"(SharedKey(?:Lite)?\s+[^:\s]+:)[A-Za-z0-9+/=]+", re.IGNORECASE),
    re.compile(r"([?&]sig=)[^&\s]+", re.IGNORECASE),
    re.compile(r"(client_secret=)[^&\s]+", re.IGNORECASE),
]

# POSIX absolute paths with at least two segments, Windows drive paths, UNC paths
_PATH_PATTERNS = [
    re.compile(r"(?<![\w:/.])/(?:[^\s/'\"]+/)+[^\s/'\"]*"),
    re.compile(r"\b[A-Za-z]:\\(?:[^\s\\'\"]+\\)*[^\s\\'\"]*"),
    re.compile(r"\\\\[^\s\\'\"]+(?:\\[^\s\\'\"]+)+"),
]

_URL_PATTERN = re.compile(r"[a-z][a-z0-9+.-]*://[^\s'\"]+", re.IGNORECASE)


def redact_secrets(text: str, secrets: Optional[Iterable[str]] = None) -> str:
    """Replace known secret values and credential-shaped substrings."""
    if not text:
        return text
    result = text
    for secret in secrets or ():
        if secret and secret.strip():
            result = result.replace(secret, REDACTED)
    for pattern in _SECRET_PATTERNS:
        result = pattern.sub(lambda m: m.group(1) + REDACTED, result)
    return result


def redact_paths(text: str) -> str:
    """Replace absolute file paths, leaving URLs intact."""
    if not text:
        return text

    urls = []

    def _stash(match):
        urls.append(match.group(0))
        return f"\x00{len(urls) - 1}\x00"

    result = _URL_PATTERN.sub(_stash, text)
    for pattern in _PATH_PATTERNS:
        result = pattern.sub(REDACTED_PATH, result)
    return re.sub(r"\x00(\d+)\x00", lambda m: urls[int(m.group(1))], result)


def sanitize_diagnostic(text: str, secrets: Optional[Iterable[str]] = None) -> str:
    return redact_paths(redact_secrets(text, secrets))


def describe_error(error: BaseException, secrets: Optional[Iterable[str]] = None) -> str:
    """Stringify an exception safely for logs and results."""
    message = str(error) or type(error).__name__
    return sanitize_diagnostic(message, secrets)
