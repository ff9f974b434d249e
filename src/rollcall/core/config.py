"""Default config generation and validation."""

from __future__ import annotations

import copy
import json
from typing import TypedDict

from rollcall.core.ids import generate_client_id


class RetryConfig(TypedDict, total=False):
    max_attempts: int
    base_delay: float
    max_delay: float
    jitter: float


class ConnectivityConfig(TypedDict, total=False):
    stability_window: float
    probe_interval: float


class RollcallConfig(TypedDict, total=False):
    schema_version: int
    client_id: str
    api_url: str
    request_timeout: float
    retry: RetryConfig
    connectivity: ConnectivityConfig


DEFAULT_API_URL = "http://127.0.0.1:3000/api"


def default_config() -> RollcallConfig:
    """Return the default rollcall configuration.

    The returned dict, when serialized with
    ``json.dumps(data, sort_keys=True, indent=2) + "\\n"``,
    produces the canonical default config.json.  A fresh ``client_id`` is
    minted on every call.
    """
    return {
        "schema_version": 1,
        "client_id": generate_client_id(),
        "api_url": DEFAULT_API_URL,
        "request_timeout": 10.0,
        "retry": {
            "max_attempts": 3,
            "base_delay": 1.0,
            "max_delay": 60.0,
            "jitter": 0.25,
        },
        "connectivity": {
            "stability_window": 2.0,
            "probe_interval": 15.0,
        },
    }


def serialize_config(config: RollcallConfig | dict[str, object]) -> str:
    """Serialize a config dict to the canonical JSON format."""
    return json.dumps(config, sort_keys=True, indent=2) + "\n"


def load_config(raw: str) -> dict:
    """Parse a JSON config string and merge it over the defaults.

    This is a pure function (no I/O).  The CLI layer reads the file
    and passes the raw string here.  Nested sections are merged key by
    key so a config that only overrides ``retry.max_attempts`` keeps the
    other retry defaults.
    """
    loaded = json.loads(raw)
    if not isinstance(loaded, dict):
        raise ValueError("config.json must contain a JSON object")
    merged: dict = copy.deepcopy(dict(default_config()))
    for key, value in loaded.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def validate_config(config: dict) -> list[str]:
    """Return a list of problems with *config*; empty when it is usable."""
    problems: list[str] = []

    api_url = config.get("api_url")
    if not isinstance(api_url, str) or not api_url.startswith(("http://", "https://")):
        problems.append("api_url must be an http:// or https:// URL")

    timeout = config.get("request_timeout")
    if not _positive(timeout):
        problems.append("request_timeout must be a positive number")

    retry = config.get("retry", {})
    max_attempts = retry.get("max_attempts")
    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
        problems.append("retry.max_attempts must be an integer >= 1")
    for name in ("base_delay", "max_delay"):
        if not _non_negative(retry.get(name)):
            problems.append(f"retry.{name} must be a non-negative number")
    jitter = retry.get("jitter")
    if not _non_negative(jitter) or jitter > 1:
        problems.append("retry.jitter must be between 0 and 1")

    connectivity = config.get("connectivity", {})
    if not _non_negative(connectivity.get("stability_window")):
        problems.append("connectivity.stability_window must be a non-negative number")
    if not _positive(connectivity.get("probe_interval")):
        problems.append("connectivity.probe_interval must be a positive number")

    return problems


def _non_negative(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0


def _positive(value: object) -> bool:
    return _non_negative(value) and value > 0
