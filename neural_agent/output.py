"""Bounded text helpers shared by tools and the shell runner."""

import math

DEFAULT_TRUNCATION_HINT = "[truncated output; refine the query or use narrower path constraints]"


def clamp_int(value, *, min_value: int | None = None, max_value: int | None = None, fallback: int) -> int:
    """Coerce *value* to an int in [min_value, max_value]; non-numbers use *fallback*."""
    try:
        number = float(value) if value is not None and not isinstance(value, bool) else float(fallback)
    except (TypeError, ValueError):
        number = float(fallback)
    if not math.isfinite(number):
        number = float(fallback)
    result = math.floor(number)
    if min_value is not None:
        result = max(min_value, result)
    if max_value is not None:
        result = min(max_value, result)
    return result


def as_text(value) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return str(value)


def truncate_output(text: str, max_chars: int, hint: str) -> str:
    source = as_text(text)
    if len(source) <= max_chars:
        return source
    return f"{source[:max_chars]}\n\n{hint}"


def build_tool_result_text(prefix: str, body, max_chars: int, continuation_hint: str = "") -> str:
    body_text = as_text(body)
    combined = f"{prefix}\n{body_text}" if prefix else body_text
    return truncate_output(combined, max_chars, continuation_hint or DEFAULT_TRUNCATION_HINT)


class LimitedBuffer:
    """Accumulates decoded output up to *max_chars*; the rest is dropped."""

    def __init__(self, max_chars: int):
        self.max_chars = max_chars
        self.text = ""
        self.truncated = False

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        remaining = self.max_chars - len(self.text)
        if remaining <= 0:
            self.truncated = True
            return
        if len(chunk) > remaining:
            self.text += chunk[:remaining]
            self.truncated = True
        else:
            self.text += chunk
