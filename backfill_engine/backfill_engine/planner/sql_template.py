"""Chunk statement templates.

Templates use ``{{ name }}`` placeholders.  Both ``{{ key }}`` and
``'{{ key }}'`` (quoted) forms are supported; the quoted form is replaced
with an escaped single-quoted literal.
"""

from __future__ import annotations

import re

from backfill_engine.errors import BackfillConfigError, BackfillIdempotencyError

_PARAM_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_DANGEROUS_UNQUOTED = re.compile(
    r"[;]|--|\b(DROP|DELETE|INSERT|UPDATE|ALTER|GRANT|REVOKE|EXEC|TRUNCATE)\b",
    re.IGNORECASE,
)

TOKEN_PLACEHOLDER = "idempotency_token"

KNOWN_PLACEHOLDERS: frozenset[str] = frozenset(
    {
        "target",
        "start",
        "end",
        "time_column",
        "plan_id",
        "chunk_id",
        TOKEN_PLACEHOLDER,
    }
)

DEFAULT_TEMPLATE = "\n".join(
    [
        "/* chkit backfill plan={{ plan_id }} chunk={{ chunk_id }} token={{ idempotency_token }} */",
        "INSERT INTO {{ target }}",
        "SELECT *",
        "FROM {{ target }}",
        "WHERE {{ time_column }} >= parseDateTimeBestEffort('{{ start }}')",
        "  AND {{ time_column }} < parseDateTimeBestEffort('{{ end }}')",
        "SETTINGS async_insert=0, insert_deduplication_token='{{ idempotency_token }}'",
    ]
)


def template_placeholders(template: str) -> set[str]:
    """Return the set of placeholder names referenced by *template*."""
    return set(_PARAM_PATTERN.findall(template))


def validate_template(template: str, *, require_idempotency_token: bool) -> None:
    """Reject empty templates, unknown placeholders, and missing token references.

    Raises
    ------
    BackfillConfigError
        If the template is empty or references an unknown placeholder.
    BackfillIdempotencyError
        If *require_idempotency_token* is set and the template never
        references ``{{ idempotency_token }}``.
    """
    if not template.strip():
        raise BackfillConfigError("Statement template must not be empty.")

    names = template_placeholders(template)
    unknown = sorted(names - KNOWN_PLACEHOLDERS)
    if unknown:
        raise BackfillConfigError(
            f"Statement template references unknown placeholder(s): {', '.join(unknown)}. "
            f"Known placeholders: {', '.join(sorted(KNOWN_PLACEHOLDERS))}."
        )

    if require_idempotency_token and TOKEN_PLACEHOLDER not in names:
        raise BackfillIdempotencyError(
            "Statement template must reference {{ idempotency_token }} while "
            "defaults.require_idempotency_token is enabled."
        )


def _sanitize_value(key: str, value: str, *, quoted: bool) -> str:
    if quoted:
        return value.replace("'", "''")
    if _DANGEROUS_UNQUOTED.search(value):
        raise BackfillConfigError(f"Parameter '{key}' contains potentially dangerous SQL content: '{value[:80]}'")
    return value


def render_template(template: str, parameters: dict[str, str]) -> str:
    """Replace ``{{ key }}`` placeholders in *template* with *parameters*."""
    result = template
    for key, value in parameters.items():
        quoted = _sanitize_value(key, value, quoted=True)
        # Quoted form: '{{ key }}' -> 'escaped_value'
        result = re.sub(
            rf"'\{{\{{\s*{re.escape(key)}\s*\}}\}}'",
            lambda _m, v=quoted: f"'{v}'",
            result,
        )
        if re.search(rf"\{{\{{\s*{re.escape(key)}\s*\}}\}}", result):
            unquoted = _sanitize_value(key, value, quoted=False)
            result = re.sub(
                rf"\{{\{{\s*{re.escape(key)}\s*\}}\}}",
                lambda _m, v=unquoted: v,
                result,
            )
    return result
