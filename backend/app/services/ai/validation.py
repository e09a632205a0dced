"""
Content checks on provider answers before they reach the caller or the cache.

Each answer is scanned for:
- credentials written out as ``password: ...`` / ``api_key=...``
- card-number and SSN shaped digit runs
- ``<script>`` blocks
- excessive length (over MAX_CONTENT_CHARS)

Matches are redacted or removed and every finding is reported as a flag.
Answers with sensitive flags are never cached.
"""
import re
from dataclasses import dataclass, field
from typing import List

MAX_CONTENT_CHARS = 50_000
REDACTED = "[REDACTED]"
TRUNCATION_MARKER = "..."

SENSITIVE_FLAGS = {"credential", "card_number", "ssn", "script_tag"}

# Values end at whitespace, quotes and separators.
_CREDENTIAL = re.compile(
    r"\b(password|passwd|secret|token|api[_-]?key|credential)(\s*[:=]\s*)[^\s\"',;]+",
    re.IGNORECASE,
)
_CARD_NUMBER = re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")
_SSN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
_SCRIPT = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)


@dataclass
class ContentReview:
    content: str
    flags: List[str] = field(default_factory=list)

    @property
    def cacheable(self) -> bool:
        return not SENSITIVE_FLAGS.intersection(self.flags)


def review_content(content: str) -> ContentReview:
    """Sanitize ``content`` and report what was changed."""
    flags: List[str] = []

    content, count = _SCRIPT.subn("", content)
    if count:
        flags.append("script_tag")

    content, count = _CREDENTIAL.subn(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", content)
    if count:
        flags.append("credential")

    content, count = _CARD_NUMBER.subn(REDACTED, content)
    if count:
        flags.append("card_number")

    content, count = _SSN.subn(REDACTED, content)
    if count:
        flags.append("ssn")

    if len(content) > MAX_CONTENT_CHARS:
        content = content[:MAX_CONTENT_CHARS] + TRUNCATION_MARKER
        flags.append("truncated")

    return ContentReview(content=content, flags=flags)
