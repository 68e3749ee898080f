import argparse
import dataclasses
import json
import logging
import sys
from typing import Dict, List, Tuple

from core.engine import run_scan
from core.errors import LoadError
from core.rule_store import RuleStore
from core.settings_loader import build_job, load_config, resolve_settings
from models.outcome import ErrorKind, ScanReport
from models.target import ScanJob, Target
from rules.rules_loader import load_rule_store


def _read_targets(args, parser) -> Tuple[List[Target], Dict[str, Target]]:
    """
    Parse the target arguments.

    Input without a scheme is tried over https first; the returned mapping
    holds the http target to fall back to, keyed by the https URL.
    """
    raw_targets = list(args.targets or [])
    if args.targets_file:
        with open(args.targets_file, "r") as f:
            raw_targets.extend(line.strip() for line in f if line.strip() and not line.startswith("#"))
    if not raw_targets:
        parser.error("at least one target (or --targets-file) is required")

    targets = []
    fallbacks: Dict[str, Target] = {}
    for raw in raw_targets:
        try:
            target = Target.parse(raw, default_scheme="https")
            if "://" not in raw:
                fallbacks[target.url] = Target.parse(raw, default_scheme="http")
        except ValueError as e:
            logging.getLogger(__name__).warning(f"Skipping target: {e}")
            continue
        targets.append(target)
    return targets, fallbacks


def _scan(job: ScanJob, store: RuleStore, fallbacks: Dict[str, Target]) -> ScanReport:
    """Run the scan, retrying failed scheme-less targets over http."""
    report = run_scan(job, store)
    retry = [
        fallbacks[url]
        for url, entry in report.failures().items()
        if url in fallbacks
        and entry.failure is not ErrorKind.DEADLINE_EXCEEDED
        and fallbacks[url].url not in report
    ]
    if not retry:
        return report

    logging.getLogger(__name__).info(f"Retrying {len(retry)} targets over http")
    retried = run_scan(dataclasses.replace(job, targets=tuple(retry)), store)
    entries = {}
    for url, entry in report.entries.items():
        fallback = fallbacks.get(url)
        second = retried.get(fallback) if fallback is not None and not entry.ok else None
        if second is not None and second.ok:
            entries[fallback.url] = second
        else:
            entries[url] = entry
    return ScanReport(entries=entries)


def main():
    parser = argparse.ArgumentParser(description="Web fingerprint identification across many targets")
    parser.add_argument("targets", nargs="*", help="Target URLs (e.g., https://example.com); without a scheme https is tried, then http")
    parser.add_argument("--targets-file", type=str, help="File with one target URL per line")
    parser.add_argument("--rules", type=str, default="rules", help="Rule file or directory of .yaml rule files (default: rules)")
    parser.add_argument("--config", type=str, help="YAML settings file (concurrency, timeout, deadline, proxy)")
    parser.add_argument("--concurrency", type=int, help="Maximum targets probed at once (default: 50)")
    parser.add_argument("--timeout", type=float, help="Per-request timeout in seconds (default: 10)")
    parser.add_argument("--deadline", type=float, help="Global scan deadline in seconds")
    parser.add_argument("--proxy", type=str, help="Proxy URL, e.g. http://127.0.0.1:8080 or socks5://127.0.0.1:1080")
    parser.add_argument("--list-rules", action="store_true", help="List loaded rules and exit")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging verbosity level (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=getattr(logging, args.log_level),
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )
    logger = logging.getLogger(__name__)

    try:
        store = load_rule_store(args.rules)
    except (LoadError, OSError) as e:
        logger.error(f"Could not load rules from {args.rules}: {e}")
        sys.exit(2)

    if args.list_rules:
        for rule in sorted(store.all_rules(), key=lambda r: (-r.priority, r.id)):
            request = f"  [{rule.request.method} {rule.request.path}]" if rule.request else ""
            print(f"{rule.priority:>4}  {rule.id:<24} {rule.name}{request}")
        return

    try:
        settings = resolve_settings(
            load_config(args.config) if args.config else {},
            {"concurrency": args.concurrency, "timeout": args.timeout, "deadline": args.deadline, "proxy": args.proxy},
        )
        targets, fallbacks = _read_targets(args, parser)
        job = build_job(targets, settings)
    except (ValueError, OSError) as e:
        logger.error(f"Invalid scan settings: {e}")
        sys.exit(2)

    report = _scan(job, store, fallbacks)
    print(json.dumps(report.to_dict(), indent=2))


if __name__ == "__main__":
    main()
