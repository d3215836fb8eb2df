from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from dotenv import load_dotenv

from .config_loader import load_config, retry_policy_from_config
from .core.ports import AIService, ProviderConfig, ProviderKind
from .prompts.store import PromptStore
from .providers.factory import create_ai_service
from .resilience.retry import RetryPolicy
from .secrets.sources import SecretsResolver
from .storage.history import RunHistory

logger = logging.getLogger(__name__)

DEFAULT_SECRET_MAPPING = {
    "gemini": {"api_key": "GEMINI_API_KEY"},
    "openai": {"api_key": "OPENAI_API_KEY"},
}


def _resolve(raw: str, base: Path) -> Path:
    p = Path(raw)
    return p if p.is_absolute() else (base / p).resolve()


def provider_config_from(cfg: Dict[str, Any], resolver: SecretsResolver) -> ProviderConfig:
    pcfg = cfg["provider"]
    kind = ProviderKind.parse(pcfg["name"])
    api_key = resolver.secret(kind.value) if kind.is_cloud else None
    kwargs: Dict[str, Any] = {"provider": kind, "api_key": api_key or "", "model": pcfg.get("model") or ""}
    if pcfg.get("ollama_base_url"):
        kwargs["ollama_base_url"] = pcfg["ollama_base_url"]
    return ProviderConfig(**kwargs)


def build_service(
    cfg: Dict[str, Any],
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> Tuple[AIService, ProviderConfig, RetryPolicy]:
    """Provider config (with optional overrides), retry policy and the service built from them."""
    if provider:
        cfg["provider"]["name"] = ProviderKind.parse(provider).value
        if not model:
            # a model name from the config file belongs to the configured provider
            cfg["provider"]["model"] = None
    if model:
        cfg["provider"]["model"] = model

    secrets_cfg = cfg.get("secrets") or {}
    mapping = {**DEFAULT_SECRET_MAPPING, **(secrets_cfg.get("mapping") or {})}
    resolver = SecretsResolver(method=secrets_cfg.get("method", "env"), mapping=mapping)

    provider_cfg = provider_config_from(cfg, resolver)
    policy = retry_policy_from_config(cfg)
    service = create_ai_service(provider_cfg, retry_policy=policy)
    logger.info("using %s model %s", provider_cfg.provider.display_name, provider_cfg.resolved_model)
    return service, provider_cfg, policy


def build_app(
    config_path: Path,
    repo_root: Optional[Path] = None,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Composition root: load YAML, build the AI service, prompt store and run history.
    Returns: dict with cfg, paths, provider_config, retry_policy, service, prompts, history.
    """
    load_dotenv()
    config_path = Path(config_path)
    cfg = load_config(config_path)
    config_dir = config_path.resolve().parent
    repo_root = repo_root or Path(__file__).resolve().parents[2]

    service, provider_cfg, policy = build_service(cfg, provider=provider, model=model)

    # ----- Paths -----
    history_dir = _resolve(cfg["storage"]["history_dir"], repo_root)
    prompts_dir = _resolve((cfg.get("prompts") or {}).get("dir") or "prompts", config_dir)
    export_raw = (cfg.get("workflow") or {}).get("export_dir")
    export_dir = _resolve(export_raw, repo_root) if export_raw else None

    # ----- Run history -----
    history = RunHistory(
        run_id=cfg["storage"].get("resume"),
        root_dir=(history_dir if cfg["storage"]["backend"] == "file" else None),
        header_meta={
            "config_path": str(config_path),
            "provider": provider_cfg.provider.value,
            "model": provider_cfg.resolved_model,
        },
    )

    return {
        "cfg": cfg,
        "paths": {
            "config_dir": config_dir,
            "repo_root": repo_root,
            "history_dir": history_dir,
            "prompts_dir": prompts_dir,
            "export_dir": export_dir,
        },
        "provider_config": provider_cfg,
        "retry_policy": policy,
        "service": service,
        "prompts": PromptStore(prompts_dir),
        "history": history,
    }
