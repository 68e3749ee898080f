import logging
import os
import re
from typing import Any, Dict, List

import yaml

from core.errors import LoadError
from core.rule_store import RuleStore

logger = logging.getLogger(__name__)

_SLUG = re.compile(r"[^a-z0-9]+")

# Flat request fields -> keys of a rule's request block
LEGACY_REQUEST_KEYS = {
    "path": "path",
    "method": "request_method",
    "headers": "request_headers",
    "data": "request_data",
}


def load_rule_records(path: str = "rules") -> List[Dict[str, Any]]:
    """
    Decodes rule records from a .yaml/.yml file or every such file in a directory.

    Records are either expression records (``id``, ``name``, ``priority``,
    ``match``) or flat legacy records (``name``, ``priority``,
    ``match_rules``), which are converted to expression records.
    """
    if os.path.isdir(path):
        files = [
            os.path.join(path, filename)
            for filename in sorted(os.listdir(path))
            if filename.endswith(".yaml") or filename.endswith(".yml")
        ]
    else:
        files = [path]

    records: List[Dict[str, Any]] = []
    for filepath in files:
        with open(filepath, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise LoadError(f"invalid YAML in {filepath}: {e}") from e
        if not data:
            continue
        if isinstance(data, dict):
            data = data.get("rules") or []
        if not isinstance(data, list):
            raise LoadError(f"{filepath} must hold a list of rules")

        for item in data:
            if isinstance(item, dict) and "match_rules" in item and "match" not in item:
                item = convert_legacy_record(item, len(records))
            records.append(item)
        logger.debug(f"Decoded {len(data)} rules from {filepath}")
    return records


def load_rule_store(path: str = "rules") -> RuleStore:
    return RuleStore.load(load_rule_records(path))


def convert_legacy_record(record: Dict[str, Any], index: int = 0) -> Dict[str, Any]:
    """
    Converts a flat record into an expression record.

    All conditions are combined with ``and``: ``status_code`` (0 means any),
    each ``headers`` entry, each body ``keyword``, and any one of the
    ``favicon_hash`` values. A ``headers`` entry requires the named header
    and, unless its value is ``*``, finds the value anywhere in the banner
    (status line plus every header line), not only in that header's value.
    The search ignores case except for ``set-cookie`` entries, whose values
    must appear verbatim. The flat request fields (``path``,
    ``request_method``, ``request_headers``, ``request_data``) become a
    ``request`` block.
    """
    name = record.get("name")
    if not name or not isinstance(name, str):
        raise LoadError(f"legacy rule #{index} has no name")
    rule_id = record.get("id") or f"{_slug(name)}-{index}"
    match_rules = record.get("match_rules") or {}

    conditions: List[Dict[str, Any]] = []
    status_code = match_rules.get("status_code") or 0
    if status_code:
        conditions.append({"field": "status-code", "operator": "equals", "value": status_code})
    for header, value in (match_rules.get("headers") or {}).items():
        value = str(value)
        conditions.append({"field": "header", "name": header, "operator": "regex-match", "value": ""})
        if value == "*":
            continue
        if header.lower() == "set-cookie":
            conditions.append({"field": "banner", "operator": "regex-match", "value": re.escape(value)})
        else:
            conditions.append({"field": "banner", "operator": "contains", "value": value})
    for keyword in match_rules.get("keyword") or []:
        conditions.append({"field": "body", "operator": "contains", "value": str(keyword)})
    hashes = match_rules.get("favicon_hash") or []
    if hashes:
        conditions.append({"or": [{"field": "favicon-hash", "operator": "hash-equals", "value": h} for h in hashes]})

    if not conditions:
        raise LoadError("legacy rule has no match conditions", rule_id)

    converted = {
        "id": rule_id,
        "name": name,
        "priority": record.get("priority", 0),
        "match": conditions[0] if len(conditions) == 1 else {"and": conditions},
    }
    request = {
        key: record[legacy_key]
        for key, legacy_key in LEGACY_REQUEST_KEYS.items()
        if record.get(legacy_key)
    }
    if request:
        converted["request"] = request
    return converted


def _slug(name: str) -> str:
    return _SLUG.sub("-", name.lower()).strip("-") or "rule"
