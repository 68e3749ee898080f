"""Loading of scan settings (concurrency, timeouts, proxy) from YAML files."""
import os
from typing import Any, Dict, Iterable, Optional

import yaml

from models.target import ProxyConfig, ScanJob, Target

SETTING_KEYS = ("concurrency", "timeout", "deadline", "proxy")


def load_config(config_file: str) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_file: Path to the YAML configuration file

    Returns:
        Dictionary containing the configuration data ({} if the file is missing)
    """
    if not os.path.exists(config_file):
        return {}

    with open(config_file, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {config_file}: {e}") from e
    if data and not isinstance(data, dict):
        raise ValueError(f"{config_file} must contain a mapping")
    return data if data else {}


def resolve_settings(file_settings: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Settings from the file, with non-None overrides (e.g. CLI flags) on top."""
    unknown = set(file_settings) - set(SETTING_KEYS)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
    settings = dict(file_settings)
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return settings


def build_job(targets: Iterable[Target], settings: Dict[str, Any]) -> ScanJob:
    proxy: Optional[str] = settings.get("proxy")
    return ScanJob(
        targets=tuple(targets),
        concurrency_limit=int(settings.get("concurrency", 50)),
        per_request_timeout=float(settings.get("timeout", 10.0)),
        global_deadline=float(settings["deadline"]) if settings.get("deadline") else None,
        proxy=ProxyConfig(proxy) if proxy else None,
    )
