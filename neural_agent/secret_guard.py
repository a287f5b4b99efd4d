"""Heuristic detector for credential-shaped text in writes and commands."""

import re

SECRET_BLOCKED_MESSAGE = "Potential credential/secret content detected. Use save_provider_key for API keys."

_SECRET_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bAIza[0-9A-Za-z\-_]{20,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{10,}\b"),
    re.compile(
        r"\b(?:api[_-]?key|access[_-]?token|secret|private[_-]?key)\b\s*[:=]\s*[\"']?[A-Za-z0-9_\-]{16,}[\"']?",
        re.IGNORECASE,
    ),
]

_LONG_TOKEN = re.compile(r"[A-Za-z0-9_\-]{32,}")
_MIN_DISTINCT_CHARS = 18


def _has_high_entropy_token(text: str) -> bool:
    return any(len(set(token)) >= _MIN_DISTINCT_CHARS for token in _LONG_TOKEN.findall(text))


def looks_sensitive_secret(value) -> bool:
    """True when *value* matches a known key shape or contains a high-entropy run."""
    if value is None:
        return False
    text = value if isinstance(value, str) else str(value)
    if not text:
        return False
    if any(pattern.search(text) for pattern in _SECRET_PATTERNS):
        return True
    return _has_high_entropy_token(text)
