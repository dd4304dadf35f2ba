"""Admission gate for raw SQL statements.

The gate is a pure function of its input and its configured deny-list. It
never raises: malformed or empty statements produce an invalid verdict with a
reason, and unclassifiable statements are treated as writes.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from routinegate.models import StatementKind, ValidationResult

DEFAULT_DENIED_KEYWORDS: tuple[str, ...] = ("DROP DATABASE", "ALTER SYSTEM", "xp_cmdshell")

WRITE_VERBS = frozenset(
    {"INSERT", "UPDATE", "DELETE", "MERGE", "TRUNCATE", "CREATE", "ALTER", "DROP"}
)

# Whitespace, line comments and block comments ahead of the first keyword.
LEADING_NOISE = r"(?:\s+|--[^\n]*(?:\n|$)|/\*.*?\*/)*"

_LEADING_NOISE_RE = re.compile(rf"^{LEADING_NOISE}", re.DOTALL)
_LEADING_WORD_RE = re.compile(r"[A-Za-z_]+")
_WRITE_VERB_RE = re.compile(
    r"\b(?:" + "|".join(sorted(WRITE_VERBS)) + r")\b",
    re.IGNORECASE,
)

_SUSPICIOUS_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "Statement terminator followed by a destructive command",
        re.compile(r";\s*(?:DROP|DELETE|TRUNCATE)\b", re.IGNORECASE),
    ),
    (
        "Dynamic execution of a parameter-built string",
        re.compile(
            r"\bEXEC(?:UTE)?\s*\(?\s*(?:@\w|\$\d|'[^']*'\s*\|\|)",
            re.IGNORECASE,
        ),
    ),
    (
        "Dynamic execution through sp_executesql",
        re.compile(r"\bsp_executesql\b", re.IGNORECASE),
    ),
    (
        "Command shell escape",
        re.compile(r"\bxp_cmdshell\b", re.IGNORECASE),
    ),
    (
        "Quoted literal followed by an always-true condition",
        re.compile(r"'\s*\)?\s*OR\s+('?)(\w+)\1\s*=\s*\1\2(?!\w)", re.IGNORECASE),
    ),
]


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    words = [re.escape(word) for word in keyword.split()]
    return re.compile(r"\b" + r"\s+".join(words) + r"\b", re.IGNORECASE)


def strip_leading_noise(statement: str) -> str:
    """Remove whitespace and comments ahead of the first keyword."""
    return _LEADING_NOISE_RE.sub("", statement, count=1)


class AdmissionGate:
    """Accepts or rejects statements and classifies them as read or write."""

    def __init__(self, denied_keywords: Iterable[str] = DEFAULT_DENIED_KEYWORDS) -> None:
        self.denied_keywords = [kw.strip() for kw in denied_keywords if kw and kw.strip()]
        self._keyword_patterns = [
            (keyword, _keyword_pattern(keyword)) for keyword in self.denied_keywords
        ]

    def validate(self, statement: str) -> ValidationResult:
        """Check a statement against the deny-list and suspicious patterns."""
        if not statement or not statement.strip():
            return ValidationResult(valid=False, reasons=["Statement is empty"])

        reasons: list[str] = []
        for keyword, pattern in self._keyword_patterns:
            if pattern.search(statement):
                reasons.append(f"Denied keyword found: {keyword}")

        for reason, pattern in _SUSPICIOUS_PATTERNS:
            if pattern.search(statement) and reason not in reasons:
                reasons.append(reason)

        return ValidationResult(valid=not reasons, reasons=reasons)

    def classify(self, statement: str) -> StatementKind:
        """Classify by leading verb; anything unrecognizable counts as a write."""
        body = strip_leading_noise(statement or "")
        match = _LEADING_WORD_RE.match(body)
        if match is None:
            return StatementKind.WRITE

        verb = match.group(0).upper()
        if verb in WRITE_VERBS:
            return StatementKind.WRITE
        if verb == "WITH":
            # Data-modifying CTEs hide the write behind the WITH clause.
            if _WRITE_VERB_RE.search(body, match.end()):
                return StatementKind.WRITE
        return StatementKind.READ

    def is_write(self, statement: str) -> bool:
        return self.classify(statement) is StatementKind.WRITE
