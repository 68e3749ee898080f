from dataclasses import dataclass, field as dc_field
from enum import Enum
from typing import Any, Optional, Tuple, Union


class Field(str, Enum):
    """Observable response features a leaf can test."""
    STATUS_CODE = "status-code"
    HEADER = "header"
    BODY = "body"
    TITLE = "title"
    FAVICON_HASH = "favicon-hash"
    TLS_SUBJECT = "tls-subject"
    TLS_ISSUER = "tls-issuer"
    BANNER = "banner"


class Operator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    REGEX_MATCH = "regex-match"
    HASH_EQUALS = "hash-equals"


TEXT_OPERATORS = frozenset({Operator.EQUALS, Operator.CONTAINS, Operator.REGEX_MATCH})

# Which operators each field accepts; anything else is rejected at load time
ALLOWED_OPERATORS = {
    Field.STATUS_CODE: frozenset({Operator.EQUALS, Operator.REGEX_MATCH}),
    Field.HEADER: TEXT_OPERATORS,
    Field.BODY: TEXT_OPERATORS,
    Field.TITLE: TEXT_OPERATORS,
    Field.TLS_SUBJECT: TEXT_OPERATORS,
    Field.TLS_ISSUER: TEXT_OPERATORS,
    Field.BANNER: TEXT_OPERATORS,
    Field.FAVICON_HASH: frozenset({Operator.HASH_EQUALS}),
}


@dataclass(frozen=True)
class Leaf:
    """Atomic field/operator/value comparison."""
    field: Field
    operator: Operator
    value: Any
    name: Optional[str] = None  # Header name, only for Field.HEADER
    # Compiled regex, filled in by the rule store for regex-match leaves
    pattern: Any = dc_field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class And:
    children: Tuple["MatchExpression", ...]


@dataclass(frozen=True)
class Or:
    children: Tuple["MatchExpression", ...]


@dataclass(frozen=True)
class Not:
    child: "MatchExpression"


MatchExpression = Union[Leaf, And, Or, Not]


@dataclass(frozen=True)
class ProbeRequest:
    """A request some rules need instead of the plain GET of the root page."""
    path: str = "/"
    method: str = "GET"
    headers: Tuple[Tuple[str, str], ...] = ()
    body: bytes = b""


@dataclass(frozen=True)
class FingerprintRule:
    """A named boolean expression identifying one technology.

    Rules with a ``request`` are evaluated only against the response to that
    request; all others against the root page and the pages redirecting to it.
    """
    id: str
    name: str
    expression: MatchExpression
    priority: int = 0  # Higher sorts first in match results
    request: Optional[ProbeRequest] = None
