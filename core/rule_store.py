"""Immutable, validated collection of fingerprint rules."""
import base64
import binascii
import dataclasses
import logging
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import regex

from core.errors import LoadError
from models.rule import (
    ALLOWED_OPERATORS,
    And,
    Field,
    FingerprintRule,
    Leaf,
    MatchExpression,
    Not,
    Operator,
    Or,
    ProbeRequest,
)

logger = logging.getLogger(__name__)

RuleDefinition = Union[Mapping[str, Any], FingerprintRule]

# Fields whose population costs an extra request or handshake inspection
EXPENSIVE_FIELDS = frozenset({Field.FAVICON_HASH, Field.TLS_SUBJECT, Field.TLS_ISSUER})

REQUEST_METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})
REQUEST_KEYS = frozenset({"path", "method", "headers", "data"})


class RuleStore:
    """Rules in load order plus an index of which rules reference which fields.

    Instances are built only through ``load`` and never mutated afterwards, so
    they can be shared by any number of concurrent workers.
    """

    def __init__(self, rules: Tuple[FingerprintRule, ...]):
        self._rules = rules
        self._by_id: Dict[str, FingerprintRule] = {rule.id: rule for rule in rules}
        by_field: Dict[Field, List[FingerprintRule]] = {}
        for rule in rules:
            for f in sorted(referenced_fields(rule.expression), key=lambda f: f.value):
                by_field.setdefault(f, []).append(rule)
        self._by_field = {f: tuple(rs) for f, rs in by_field.items()}
        self.required_fields: FrozenSet[Field] = frozenset(self._by_field)

        self.root_rules: Tuple[FingerprintRule, ...] = tuple(r for r in rules if r.request is None)
        by_request: Dict[ProbeRequest, List[FingerprintRule]] = {}
        for rule in rules:
            if rule.request is not None:
                by_request.setdefault(rule.request, []).append(rule)
        # Request -> the rules judged on its response, in first-use order
        self.requests: Dict[ProbeRequest, Tuple[FingerprintRule, ...]] = {
            request: tuple(rs) for request, rs in by_request.items()
        }

    @classmethod
    def load(cls, definitions: Iterable[RuleDefinition]) -> "RuleStore":
        """Validate rule definitions and build a store.

        Args:
            definitions: Decoded rule records (mappings with ``id``, ``name``,
                ``priority``, ``match`` and an optional ``request``) or
                ``FingerprintRule`` instances

        Returns:
            A RuleStore holding every rule

        Raises:
            LoadError: On the first invalid rule; nothing is partially loaded
        """
        rules: List[FingerprintRule] = []
        seen_ids = set()
        for index, definition in enumerate(definitions):
            rule = _build_rule(definition, index)
            if rule.id in seen_ids:
                raise LoadError("duplicate rule id", rule.id)
            seen_ids.add(rule.id)
            rules.append(rule)

        store = cls(tuple(rules))
        logger.info(f"Loaded {len(store)} fingerprint rules (fields: {', '.join(sorted(f.value for f in store.required_fields))})")
        return store

    def all_rules(self) -> Tuple[FingerprintRule, ...]:
        return self._rules

    def get(self, rule_id: str) -> Optional[FingerprintRule]:
        return self._by_id.get(rule_id)

    def rules_using(self, field: Field) -> Tuple[FingerprintRule, ...]:
        """Rules whose expression references ``field`` anywhere."""
        return self._by_field.get(field, ())

    def needs(self, field: Field) -> bool:
        return field in self.required_fields

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[FingerprintRule]:
        return iter(self._rules)


def referenced_fields(expression: MatchExpression) -> FrozenSet[Field]:
    if isinstance(expression, Leaf):
        return frozenset({expression.field})
    if isinstance(expression, Not):
        return referenced_fields(expression.child)
    fields: FrozenSet[Field] = frozenset()
    for child in expression.children:
        fields |= referenced_fields(child)
    return fields


def _build_rule(definition: RuleDefinition, index: int) -> FingerprintRule:
    if isinstance(definition, FingerprintRule):
        rule_id = definition.id
        if not rule_id or not isinstance(rule_id, str):
            raise LoadError(f"rule #{index} has no id")
        rule = dataclasses.replace(
            definition,
            expression=_build_expression(definition.expression, rule_id),
            priority=_parse_priority(definition.priority, rule_id),
        )
        if rule.request is not None:
            rule = dataclasses.replace(rule, request=_check_request(rule, rule.request))
        return rule

    if not isinstance(definition, Mapping):
        raise LoadError(f"rule #{index} is not a mapping: {type(definition).__name__}")

    rule_id = definition.get("id")
    if not rule_id or not isinstance(rule_id, str):
        raise LoadError(f"rule #{index} has no id")
    name = definition.get("name")
    if not name or not isinstance(name, str):
        raise LoadError("missing name", rule_id)
    if "match" not in definition:
        raise LoadError("missing match expression", rule_id)

    rule = FingerprintRule(
        id=rule_id,
        name=name,
        expression=_build_expression(definition["match"], rule_id),
        priority=_parse_priority(definition.get("priority", 0), rule_id),
    )
    if definition.get("request") is not None:
        rule = dataclasses.replace(rule, request=_check_request(rule, _build_request(definition["request"], rule_id)))
    return rule


def _build_request(raw: Any, rule_id: str) -> ProbeRequest:
    """Decode a ``request`` block: path, method, headers and base64 ``data``."""
    if not isinstance(raw, Mapping):
        raise LoadError(f"request must be a mapping, got {type(raw).__name__}", rule_id)
    unknown = set(raw) - REQUEST_KEYS
    if unknown:
        raise LoadError(f"unknown request keys: {', '.join(sorted(unknown))}", rule_id)

    headers = raw.get("headers") or {}
    if not isinstance(headers, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
    ):
        raise LoadError("request headers must map names to strings", rule_id)

    data = raw.get("data") or ""
    if not isinstance(data, str):
        raise LoadError("request data must be a base64 string", rule_id)
    try:
        body = base64.b64decode(data, validate=True)
    except binascii.Error as e:
        raise LoadError(f"request data is not valid base64: {e}", rule_id) from e

    return ProbeRequest(
        path=raw.get("path", "/"),
        method=raw.get("method", "GET"),
        headers=tuple(headers.items()),
        body=body,
    )


def _check_request(rule: FingerprintRule, request: ProbeRequest) -> Optional[ProbeRequest]:
    """Validate a rule's request; a plain GET of / is the root fetch itself."""
    if not isinstance(request.path, str) or not request.path.startswith("/"):
        raise LoadError(f"request path must start with '/', got {request.path!r}", rule.id)
    method = request.method.upper() if isinstance(request.method, str) else request.method
    if method not in REQUEST_METHODS:
        raise LoadError(f"unsupported request method {request.method!r}", rule.id)
    request = dataclasses.replace(request, method=method)
    if request == ProbeRequest():
        return None
    if Field.FAVICON_HASH in referenced_fields(rule.expression):
        # Favicons are only fetched alongside the root page
        raise LoadError("favicon-hash cannot be used by a rule with its own request", rule.id)
    return request


def _parse_priority(value: Any, rule_id: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise LoadError(f"priority must be an integer, got {value!r}", rule_id)
    return value


def _build_expression(raw: Any, rule_id: str) -> MatchExpression:
    """Turn a decoded expression (or an already-built tree) into a validated tree."""
    if isinstance(raw, Leaf):
        return _build_leaf(raw.field, raw.operator, raw.value, raw.name, rule_id)
    if isinstance(raw, (And, Or)):
        return _build_group(type(raw), list(raw.children), rule_id)
    if isinstance(raw, Not):
        return Not(_build_expression(raw.child, rule_id))

    if not isinstance(raw, Mapping):
        raise LoadError(f"expression must be a mapping, got {type(raw).__name__}", rule_id)

    if "and" in raw or "or" in raw or "not" in raw:
        if len(raw) != 1:
            raise LoadError(f"boolean node must have exactly one key, got {sorted(raw)}", rule_id)
        if "not" in raw:
            return Not(_build_expression(raw["not"], rule_id))
        key = "and" if "and" in raw else "or"
        children = raw[key]
        if not isinstance(children, (list, tuple)):
            raise LoadError(f"'{key}' must hold a list of expressions", rule_id)
        return _build_group(And if key == "and" else Or, list(children), rule_id)

    if "field" not in raw or "operator" not in raw or "value" not in raw:
        raise LoadError(f"leaf needs field, operator and value: {dict(raw)}", rule_id)
    return _build_leaf(raw["field"], raw["operator"], raw["value"], raw.get("name"), rule_id)


def _build_group(kind, children: List[Any], rule_id: str) -> MatchExpression:
    if not children:
        raise LoadError(f"empty '{kind.__name__.lower()}' group", rule_id)
    return kind(tuple(_build_expression(child, rule_id) for child in children))


def _build_leaf(raw_field: Any, raw_operator: Any, value: Any, name: Optional[str], rule_id: str) -> Leaf:
    try:
        field = Field(raw_field)
    except ValueError:
        raise LoadError(f"unknown field {raw_field!r}", rule_id) from None
    try:
        operator = Operator(raw_operator)
    except ValueError:
        raise LoadError(f"unknown operator {raw_operator!r}", rule_id) from None

    if operator not in ALLOWED_OPERATORS[field]:
        raise LoadError(f"operator '{operator.value}' not allowed on field '{field.value}'", rule_id)

    if field is Field.HEADER:
        if not name or not isinstance(name, str):
            raise LoadError("header leaf needs a header name", rule_id)
        name = name.lower()
    elif name is not None:
        raise LoadError(f"'name' is only valid on header leaves, not '{field.value}'", rule_id)

    pattern = None
    if operator is Operator.REGEX_MATCH:
        if not isinstance(value, str):
            raise LoadError(f"regex value must be a string, got {value!r}", rule_id)
        try:
            pattern = regex.compile(value)
        except regex.error as e:
            raise LoadError(f"invalid regex {value!r}: {e}", rule_id) from e
    elif field is Field.STATUS_CODE:
        value = _parse_status(value, rule_id)
    elif operator is Operator.HASH_EQUALS:
        if not isinstance(value, str) or not value.strip():
            raise LoadError(f"hash value must be a non-empty string, got {value!r}", rule_id)
        value = value.strip().lower()
    elif not isinstance(value, str):
        raise LoadError(f"comparand must be a string, got {value!r}", rule_id)

    return Leaf(field=field, operator=operator, value=value, name=name, pattern=pattern)


def _parse_status(value: Any, rule_id: str) -> int:
    if isinstance(value, bool):
        raise LoadError(f"status code must be an integer, got {value!r}", rule_id)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or not 100 <= value <= 999:
        raise LoadError(f"status code must be an integer in 100-999, got {value!r}", rule_id)
    return value
