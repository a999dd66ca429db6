from __future__ import annotations

import re
from collections.abc import Iterable

REDACTED = "[REDACTED]"

# jwt tokens travel as bearer headers, login bodies and ?auth= query params
_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\b(bearer\s+)([^\s,;\"']+)"), r"\1" + REDACTED),
    (
        re.compile(r"(?i)\b(jwt|auth|token|password|password_verify|passwd|secret)\b(\"?\s*[:=]\s*\"?)([^\s,;\"'}]+)"),
        r"\1\2" + REDACTED,
    ),
    (re.compile(r"(?i)([?&](?:jwt|auth|token|password)=)([^&\s]+)"), r"\1" + REDACTED),
)


def redact_sensitive_text(value: str | None, known_secrets: Iterable[str | None] = ()) -> str | None:
    """Mask credentials in text headed for logs, errors or evidence files.

    ``known_secrets`` are literal values (the shared seed password, issued
    tokens) masked wherever they appear, even outside a recognisable
    ``key=value`` shape.
    """

    if value is None:
        return None

    redacted = value
    for secret in known_secrets:
        if secret:
            redacted = redacted.replace(secret, REDACTED)
    for pattern, replacement in _RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted
