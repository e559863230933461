from __future__ import annotations

import re

REDACTED = "[REDACTED]"
URL_CREDENTIALS_RE = re.compile(r"(\b[a-zA-Z][a-zA-Z0-9+.-]*://[^:/\s@]+:)[^@\s]+@")
SAS_QUERY_RE = re.compile(r"\?[^\s?]*\b(?:sig|se|st|sp)=[^\s]*")
SECRET_FIELD_RE = re.compile(r"(password|pass|signature|key|token|secret)\s*[:=]\s*\S*", re.IGNORECASE)


def redact(text: str) -> str:
    text = URL_CREDENTIALS_RE.sub(rf"\g<1>{REDACTED}@", text)
    text = SAS_QUERY_RE.sub(f"?{REDACTED}", text)
    return SECRET_FIELD_RE.sub(rf"\g<1>: {REDACTED}", text)
