"""Namespace rewrites between the draft schema and production.

Both rewrites are plain text substitutions with a fixed blast radius:

* ``rewrite_for_draft`` touches only the target identifier of the leading
  ``CREATE [OR REPLACE] {PROCEDURE|FUNCTION}`` clause.
* ``rewrite_for_production`` replaces every ``<draft_schema>.`` prefix,
  including any inside the body, with ``<schema>.``.

Neither parses SQL.
"""

from __future__ import annotations

import re

from routinegate.errors import ValidationError
from routinegate.gate import LEADING_NOISE

_IDENT = r'(?:"[^"]+"|[A-Za-z_][A-Za-z0-9_$]*)'

ROUTINE_DEFINITION_RE = re.compile(
    rf"^{LEADING_NOISE}"
    r"CREATE\s+(?:OR\s+REPLACE\s+)?(?P<kind>PROCEDURE|FUNCTION)\s+"
    rf"(?P<target>{_IDENT}(?:\s*\.\s*{_IDENT})?)",
    re.IGNORECASE | re.DOTALL,
)


def rewrite_for_draft(definition: str, draft_schema: str, name: str) -> str:
    """Point the defining clause at ``<draft_schema>.<name>``."""
    match = ROUTINE_DEFINITION_RE.match(definition or "")
    if match is None:
        raise ValidationError(
            "Definition must start with CREATE [OR REPLACE] PROCEDURE or FUNCTION"
        )
    start, end = match.span("target")
    return f"{definition[:start]}{draft_schema}.{name}{definition[end:]}"


def rewrite_for_production(definition: str, draft_schema: str, schema: str) -> str:
    """Replace every ``<draft_schema>.`` prefix with ``<schema>.``."""
    pattern = re.compile(re.escape(f"{draft_schema}."), re.IGNORECASE)
    return pattern.sub(lambda _: f"{schema}.", definition)
