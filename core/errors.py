"""Exceptions raised by the fingerprint engine."""
from typing import Optional

from models.outcome import ErrorKind


class LoadError(ValueError):
    """A rule definition failed validation; no partial rule set is used."""

    def __init__(self, message: str, rule_id: Optional[str] = None):
        self.rule_id = rule_id
        if rule_id is not None:
            message = f"rule '{rule_id}': {message}"
        super().__init__(message)


class ProbeError(Exception):
    """A probe failed in a classified way. Never escapes the prober."""

    def __init__(self, kind: ErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)


class MatchEngineError(RuntimeError):
    """Internal invariant violation while evaluating a validated expression."""
