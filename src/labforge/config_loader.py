# src/labforge/config_loader.py

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict
import yaml

from .core.ports import ProviderKind
from .resilience.retry import RetryPolicy


class ConfigError(ValueError):
    pass


_RETRY_KEYS = ("max_retries", "base_delay", "busy_base_delay", "busy_jitter", "sleep_tick")


def _require(d: Dict[str, Any], dotted: str, typ: type) -> Any:
    cur: Any = d
    for k in dotted.split("."):
        if not isinstance(cur, dict) or k not in cur:
            raise ConfigError(f"Missing config key: {dotted}")
        cur = cur[k]
    if typ is bool and not isinstance(cur, bool):
        raise ConfigError(f"'{dotted}' must be a boolean")
    if typ is str and not isinstance(cur, str):
        raise ConfigError(f"'{dotted}' must be a string")
    return cur


def load_config(path: Path) -> Dict[str, Any]:
    if not path or not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text())
    if not isinstance(raw, dict) or not raw:
        raise ConfigError(f"Config is empty or invalid YAML: {path}")

    # Validate required keys (no defaults here)
    _require(raw, "provider.name", str)
    _require(raw, "storage.backend", str)      # 'file' or 'none'
    _require(raw, "storage.history_dir", str)  # path string
    _require(raw, "runtime.stream", bool)

    # Normalise enumerations
    try:
        provider = ProviderKind.parse(raw["provider"]["name"]).value
    except ValueError:
        raise ConfigError(
            f"Unknown provider.name '{raw['provider']['name']}' (expected 'gemini', 'openai' or 'ollama')."
        )
    backend = str(raw["storage"]["backend"]).lower()
    if backend not in ("file", "none"):
        raise ConfigError(f"Unknown storage.backend '{backend}' (expected 'file' or 'none').")
    raw["provider"]["name"] = provider
    raw["storage"]["backend"] = backend

    for key in ("model", "ollama_base_url"):
        val = raw["provider"].get(key)
        if val is not None and not isinstance(val, str):
            raise ConfigError(f"'provider.{key}' must be a string")

    retry = raw.get("retry") or {}
    if not isinstance(retry, dict):
        raise ConfigError("'retry' must be a mapping")
    unknown = sorted(set(retry) - set(_RETRY_KEYS))
    if unknown:
        raise ConfigError(f"Unknown retry settings: {unknown}")
    for key, val in retry.items():
        if isinstance(val, bool) or not isinstance(val, (int, float)) or val < 0:
            raise ConfigError(f"'retry.{key}' must be a non-negative number")

    wf = raw.get("workflow") or {}
    if not isinstance(wf, dict):
        raise ConfigError("'workflow' must be a mapping")
    if "mode" in wf:
        wf["mode"] = str(wf["mode"]).lower()
        if wf["mode"] not in ("topic", "document"):
            raise ConfigError(f"Unknown workflow.mode '{wf['mode']}' (expected 'topic' or 'document').")
    if "creation_mode" in wf:
        wf["creation_mode"] = str(wf["creation_mode"]).lower()
        if wf["creation_mode"] not in ("series", "single"):
            raise ConfigError(
                f"Unknown workflow.creation_mode '{wf['creation_mode']}' (expected 'series' or 'single')."
            )
    for key in ("num_labs", "num_requirements"):
        if key in wf and (isinstance(wf[key], bool) or not isinstance(wf[key], int) or wf[key] < 1):
            raise ConfigError(f"'workflow.{key}' must be a positive integer")
    if "lab_pause" in wf and (isinstance(wf["lab_pause"], bool)
                              or not isinstance(wf["lab_pause"], (int, float)) or wf["lab_pause"] < 0):
        raise ConfigError("'workflow.lab_pause' must be a non-negative number")
    if wf.get("export_dir") is not None and not isinstance(wf["export_dir"], str):
        raise ConfigError("'workflow.export_dir' must be a string")
    raw["workflow"] = wf

    # Leave paths as provided; resolve them later in bootstrap
    return raw


def workflow_options(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """LabWorkflow keyword arguments from the optional 'workflow' section (export_dir excluded)."""
    wf = cfg.get("workflow") or {}
    return {k: wf[k] for k in ("mode", "creation_mode", "num_labs", "num_requirements", "lab_pause") if k in wf}


def retry_policy_from_config(cfg: Dict[str, Any]) -> RetryPolicy:
    retry = dict(cfg.get("retry") or {})
    if "max_retries" in retry:
        retry["max_retries"] = int(retry["max_retries"])
    return RetryPolicy(**retry)
