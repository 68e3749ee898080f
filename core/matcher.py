"""Evaluation of rule expressions against a feature set."""
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from core.context import FeatureSet
from core.errors import MatchEngineError
from models.outcome import MatchedRule
from models.rule import And, Field, FingerprintRule, Leaf, MatchExpression, Not, Operator, Or

logger = logging.getLogger(__name__)

# Hard limit per regex search to contain catastrophic backtracking
REGEX_TIMEOUT_SECONDS = 0.8


def evaluate(features: FeatureSet, expression: MatchExpression) -> bool:
    """True when ``expression`` holds for ``features``.

    And stops at the first false child and Or at the first true one. Missing
    features make a leaf false, so ``Not`` over a missing header is true.
    """
    if isinstance(expression, Leaf):
        return _evaluate_leaf(features, expression)
    if isinstance(expression, And):
        return all(evaluate(features, child) for child in expression.children)
    if isinstance(expression, Or):
        return any(evaluate(features, child) for child in expression.children)
    if isinstance(expression, Not):
        return not evaluate(features, expression.child)
    raise MatchEngineError(f"unexpected expression node: {expression!r}")


def match_all(features: FeatureSet, rules: Iterable[FingerprintRule]) -> Tuple[MatchedRule, ...]:
    """Every rule that holds, by descending priority then rule id.

    ``rules`` is usually a RuleStore or one of its rule groups; each rule is
    evaluated independently.
    """
    matched = [
        MatchedRule(rule_id=rule.id, name=rule.name, priority=rule.priority)
        for rule in rules
        if evaluate(features, rule.expression)
    ]
    matched.sort(key=lambda m: (-m.priority, m.rule_id))
    if matched:
        logger.debug(f"{features.url}: matched {', '.join(m.rule_id for m in matched)}")
    return tuple(matched)


def match_facets(facets: Iterable[FeatureSet], rules: Iterable[FingerprintRule]) -> Tuple[MatchedRule, ...]:
    """Rules holding on any of several responses of one target, each listed once."""
    rules = tuple(rules)
    matched: List[MatchedRule] = []
    for features in facets:
        matched.extend(match_all(features, rules))
    return dedupe_matches(matched)


def dedupe_matches(matches: Iterable[MatchedRule]) -> Tuple[MatchedRule, ...]:
    """Unique by rule id (first wins), by descending priority then id."""
    unique: Dict[str, MatchedRule] = {}
    for match in matches:
        unique.setdefault(match.rule_id, match)
    return tuple(sorted(unique.values(), key=lambda m: (-m.priority, m.rule_id)))


def _evaluate_leaf(features: FeatureSet, leaf: Leaf) -> bool:
    field = leaf.field

    if field is Field.STATUS_CODE:
        if leaf.operator is Operator.EQUALS:
            return features.status_code == leaf.value
        return _regex(leaf, str(features.status_code))

    if field is Field.FAVICON_HASH:
        if leaf.operator is not Operator.HASH_EQUALS:
            raise MatchEngineError(f"operator {leaf.operator} on favicon hash")
        # Any of the page's icons may carry the hash
        return leaf.value in features.favicon_hashes

    if field is Field.HEADER:
        return any(_compare_text(leaf, value) for value in features.header(leaf.name))

    if field is Field.BODY:
        return _compare_text(leaf, features.body_prefix, features.body_lower)
    if field is Field.BANNER:
        return _compare_text(leaf, features.banner, features.banner_lower)
    if field is Field.TITLE:
        return features.title is not None and _compare_text(leaf, features.title)
    if field is Field.TLS_SUBJECT:
        return features.tls_subject is not None and _compare_text(leaf, features.tls_subject)
    if field is Field.TLS_ISSUER:
        return features.tls_issuer is not None and _compare_text(leaf, features.tls_issuer)

    raise MatchEngineError(f"unexpected leaf field: {field!r}")


def _compare_text(leaf: Leaf, text: str, lowered: Optional[str] = None) -> bool:
    """equals/contains ignore case; regexes carry their own flags."""
    if leaf.operator is Operator.REGEX_MATCH:
        return _regex(leaf, text)
    if lowered is None:
        lowered = text.lower()
    if leaf.operator is Operator.EQUALS:
        return lowered.strip() == leaf.value.lower().strip()
    if leaf.operator is Operator.CONTAINS:
        return leaf.value.lower() in lowered
    raise MatchEngineError(f"operator {leaf.operator} on text field {leaf.field}")


def _regex(leaf: Leaf, text: str) -> bool:
    if leaf.pattern is None:
        raise MatchEngineError(f"regex leaf without compiled pattern: {leaf.value!r}")
    try:
        return leaf.pattern.search(text, timeout=REGEX_TIMEOUT_SECONDS) is not None
    except TimeoutError:
        logger.warning(f"Regex {leaf.value!r} on {leaf.field.value} timed out after {REGEX_TIMEOUT_SECONDS}s")
        return False
