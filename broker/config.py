import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "BROKER_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
GIB = 1024 * 1024 * 1024


class OllamaBackendConfig(BaseModel):
    enabled: bool = True
    base_url: str = "http://localhost:11434"
    probe_timeout_s: float = 2.0
    list_timeout_s: float = 5.0
    request_timeout_s: float = 300.0
    keep_alive: str = "5m"

    model_config = {"protected_namespaces": ()}


class BuiltinBackendConfig(BaseModel):
    enabled: bool = True
    cache_dir: str = "model-cache"
    device: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class HuggingFaceBackendConfig(BaseModel):
    enabled: bool = True
    api_key: Optional[str] = None
    api_base: str = "https://router.huggingface.co"
    probe_model: str = "mistralai/Mistral-7B-Instruct-v0.3"
    probe_timeout_s: float = 10.0
    request_timeout_s: float = 120.0
    max_tokens: int = 1024

    model_config = {"protected_namespaces": ()}


class BrokerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    database_path: str = "broker_data.db"

    ollama: OllamaBackendConfig = Field(default_factory=OllamaBackendConfig)
    builtin: BuiltinBackendConfig = Field(default_factory=BuiltinBackendConfig)
    huggingface: HuggingFaceBackendConfig = Field(default_factory=HuggingFaceBackendConfig)
    backend_order: List[str] = Field(default_factory=lambda: ["ollama", "transformers", "huggingface"])

    # Resource governor
    memory_budget_bytes: Optional[int] = None
    memory_budget_fraction: float = 0.5
    default_budget_bytes: int = 4 * GIB
    stats_cache_s: float = 5.0
    idle_unload_s: float = 300.0
    idle_sweep_interval_s: float = 60.0

    # Hardware profiler
    hardware_cache_s: float = 60.0

    # Flows
    flow_max_step_runs: int = 256
    flow_image_max_size: int = 1024
    flow_pdf_max_chars: int = 20000
    flow_text_max_chars: int = 50000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if (data.get("huggingface") or {}).get("api_key"):
            data["huggingface"]["api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "host": os.getenv("BROKER_HOST"),
        "port": os.getenv("BROKER_PORT"),
        "database_path": os.getenv("BROKER_DATABASE_PATH"),
        "memory_budget_bytes": os.getenv("BROKER_MEMORY_BUDGET_BYTES"),
        "ollama_base_url": os.getenv("OLLAMA_HOST"),
        "huggingface_api_key": os.getenv("HF_TOKEN") or os.getenv("HUGGINGFACE_API_KEY"),
        "transformers_cache": os.getenv("BROKER_TRANSFORMERS_CACHE"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "memory_budget_bytes" in cleaned:
        cleaned["memory_budget_bytes"] = int(cleaned["memory_budget_bytes"])
    if "ollama_base_url" in cleaned:
        url = str(cleaned["ollama_base_url"])
        if not url.startswith(("http://", "https://")):
            url = f"http://{url}"
        cleaned["ollama_base_url"] = url.rstrip("/")
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _apply_backend_env(merged: Dict[str, Any], env_data: Dict[str, Any], allow_env_overrides: bool) -> None:
    """Fold flat env values into the nested backend blocks."""

    def place(section: str, key: str, env_key: str) -> None:
        value = env_data.get(env_key)
        if value is None:
            return
        block = merged.get(section)
        if not isinstance(block, dict):
            block = {}
        if allow_env_overrides or not block.get(key):
            block[key] = value
        merged[section] = block

    place("ollama", "base_url", "ollama_base_url")
    place("huggingface", "api_key", "huggingface_api_key")
    place("builtin", "cache_dir", "transformers_cache")
    for key in ("ollama_base_url", "huggingface_api_key", "transformers_cache"):
        merged.pop(key, None)


def load_settings(config_path: Optional[Path] = None) -> BrokerSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    _apply_backend_env(merged, env_data, allow_env_overrides)
    return BrokerSettings(**merged)


def save_settings(settings: BrokerSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
