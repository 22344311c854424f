"""
Read-only Operation Gatekeeper

Decides whether a query may run against a backend whose contract is
read-only. Steps:

1. Strip block and line comments so keywords cannot hide inside them
2. Require the first token to be SELECT (case-insensitive)
3. Scan for blocked keywords with word-boundary matching, so identifiers
   such as ``DropColumn`` or ``updated_at`` are not false positives
"""
import re
from dataclasses import dataclass
from typing import Optional

import structlog

from resource_broker.shared.core.exceptions import QueryRejected

logger = structlog.get_logger()

BLOCKED_KEYWORDS: dict[str, tuple[str, ...]] = {
    "write operation": ("INSERT", "UPDATE", "DELETE", "MERGE"),
    "schema change": ("DROP", "CREATE", "ALTER", "TRUNCATE"),
    "command execution": ("EXEC", "EXECUTE", "SP_EXECUTESQL"),
    "permission change": ("GRANT", "REVOKE", "DENY"),
    "SELECT INTO": ("INTO",),
    "linked server access": ("OPENQUERY", "OPENROWSET", "OPENDATASOURCE"),
}

# Literals and quoted identifiers are matched first so comment markers inside
# them are left alone; an unterminated block comment runs to the end.
_LEXEME = re.compile(
    r"(?P<literal>'(?:[^']|'')*'"
    r"|\"(?:[^\"]|\"\")*\""
    r"|\[[^\]]*\])"
    r"|(?P<comment>/\*.*?(?:\*/|\Z)|--[^\r\n]*)",
    re.DOTALL,
)
_FIRST_TOKEN = re.compile(r"\s*([A-Za-z_]+)")
_SYSTEM_PROCEDURE = re.compile(r"\b(?:sp|xp)_\w+", re.IGNORECASE)

_KEYWORD_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (
        category,
        re.compile(r"\b(?:" + "|".join(keywords) + r")\b", re.IGNORECASE),
    )
    for category, keywords in BLOCKED_KEYWORDS.items()
)


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: Optional[str] = None
    category: Optional[str] = None
    keyword: Optional[str] = None

    @classmethod
    def accept(cls) -> "ValidationResult":
        return cls(ok=True)

    @classmethod
    def reject(
        cls, reason: str, category: str | None = None, keyword: str | None = None
    ) -> "ValidationResult":
        return cls(ok=False, reason=reason, category=category, keyword=keyword)


def _drop_comment(match: re.Match[str]) -> str:
    return " " if match.group("comment") is not None else match.group(0)


def strip_comments(operation: str) -> str:
    """
    Replace ``/* ... */`` blocks and ``--`` line comments with a space.

    String literals, double-quoted and bracketed identifiers are kept verbatim,
    including any comment markers they contain.
    """
    return _LEXEME.sub(_drop_comment, operation)


def validate(operation: str) -> ValidationResult:
    cleaned = strip_comments(operation or "").strip()
    if not cleaned:
        return ValidationResult.reject("Query is empty")

    first = _FIRST_TOKEN.match(cleaned)
    if first is None or first.group(1).upper() != "SELECT":
        return ValidationResult.reject("Only SELECT queries are permitted")

    for category, pattern in _KEYWORD_PATTERNS:
        match = pattern.search(cleaned)
        if match:
            keyword = match.group(0).upper()
            return ValidationResult.reject(
                f"Query contains a blocked {category} keyword: {keyword}",
                category=category,
                keyword=keyword,
            )

    procedure = _SYSTEM_PROCEDURE.search(cleaned)
    if procedure:
        return ValidationResult.reject(
            f"Query references a system procedure: {procedure.group(0)}",
            category="system procedure",
            keyword=procedure.group(0),
        )

    return ValidationResult.accept()


def enforce(operation: str) -> None:
    """Raise QueryRejected unless ``operation`` passes validate()."""
    result = validate(operation)
    if not result.ok:
        logger.warning(
            "query_rejected",
            category=result.category,
            keyword=result.keyword,
            reason=result.reason,
        )
        raise QueryRejected(
            result.reason or "Query rejected",
            details={"category": result.category, "keyword": result.keyword},
        )
