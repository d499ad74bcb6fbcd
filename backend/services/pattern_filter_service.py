"""Heuristic denylist scan of query parameters and JSON bodies.

This is a defense-in-depth layer only. Handlers still rely on typed request
models and parameterized queries; false negatives here are expected.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


class PatternFamily(enum.StrEnum):
    """High-level category of a suspicious token."""

    SQL = "sql"
    DOCUMENT_OPERATOR = "document-operator"
    SCRIPT = "script"


class PatternSource(enum.Flag):
    """Where in the request a pattern is looked for."""

    QUERY = 1
    BODY = 2
    ANY = 3


@dataclass(frozen=True)
class SuspiciousPattern:
    """One lower-case substring and the family it belongs to."""

    family: PatternFamily
    token: str
    sources: PatternSource = PatternSource.ANY


def _patterns(
    family: PatternFamily, tokens: Iterable[str], sources: PatternSource = PatternSource.ANY
) -> list[SuspiciousPattern]:
    return [SuspiciousPattern(family, token.lower(), sources) for token in tokens]


DEFAULT_PATTERNS: tuple[SuspiciousPattern, ...] = (
    *_patterns(
        PatternFamily.SQL,
        ("' or ", "' and ", "union select", "drop table", "delete from", "insert into"),
    ),
    *_patterns(
        PatternFamily.DOCUMENT_OPERATOR,
        ("$ne", "$gt", "$lt", "$regex", "$where", "$eval"),
    ),
    # Logical operators are too common as plain query text; only flag them as JSON keys.
    *_patterns(
        PatternFamily.DOCUMENT_OPERATOR,
        ('"$or":', '"$and":', '"$not":', '"$nor":', '"$exists":'),
        PatternSource.BODY,
    ),
    *_patterns(
        PatternFamily.SCRIPT,
        ("<script", "javascript:", "onload=", "onerror="),
    ),
    *_patterns(
        PatternFamily.SCRIPT,
        ("function(", "eval(", "settimeout("),
        PatternSource.BODY,
    ),
)


@dataclass(frozen=True)
class ScanResult:
    """Outcome of a scan. ``family`` is for server-side logs only."""

    blocked: bool
    family: PatternFamily | None = None
    source: str | None = None


_CLEAN = ScanResult(blocked=False)


def is_json_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", maxsplit=1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


class SuspiciousPatternFilter:
    """Case-insensitive substring scanner over (family, pattern) pairs."""

    def __init__(self, patterns: Iterable[SuspiciousPattern] | None = None) -> None:
        selected = tuple(patterns) if patterns is not None else DEFAULT_PATTERNS
        self._query_patterns = tuple(p for p in selected if p.sources & PatternSource.QUERY)
        self._body_patterns = tuple(p for p in selected if p.sources & PatternSource.BODY)

    def scan(
        self,
        query_params: Iterable[tuple[str, str]] = (),
        *,
        method: str = "GET",
        content_type: str | None = None,
        body: bytes | str | None = None,
    ) -> ScanResult:
        """Scan query parameter names and values, then the raw JSON body if there is one."""
        for name, value in query_params:
            for text in (name, value):
                match = self._first_match(text, self._query_patterns)
                if match is not None:
                    return ScanResult(blocked=True, family=match.family, source="query")

        if body and method.upper() in _BODY_METHODS and is_json_content_type(content_type):
            text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
            match = self._first_match(text, self._body_patterns)
            if match is not None:
                return ScanResult(blocked=True, family=match.family, source="body")

        return _CLEAN

    @staticmethod
    def _first_match(
        text: str, patterns: tuple[SuspiciousPattern, ...]
    ) -> SuspiciousPattern | None:
        if not text:
            return None
        lowered = text.lower()
        for pattern in patterns:
            if pattern.token in lowered:
                return pattern
        return None
