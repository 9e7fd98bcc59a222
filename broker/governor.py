import asyncio
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

from .telemetry import ResourceTelemetry, _to_float

logger = logging.getLogger("uvicorn.error")

DEFAULT_BUDGET_BYTES = 4 * 1024 * 1024 * 1024
DEFAULT_IDLE_S = 5 * 60


def format_bytes(value: float) -> str:
    size = float(value or 0)
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    idx = 0
    while size >= 1024 and idx < len(units) - 1:
        size /= 1024.0
        idx += 1
    text = f"{size:.1f}".rstrip("0").rstrip(".")
    return f"{text} {units[idx]}"


@dataclass(frozen=True)
class LoadedModelHandle:
    model_id: str
    backend: str
    loaded_at: float
    last_used_at: float
    memory_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "backend": self.backend,
            "loaded_at": self.loaded_at,
            "last_used_at": self.last_used_at,
            "memory_bytes": self.memory_bytes,
            "memory_label": format_bytes(self.memory_bytes),
        }


class ResourceGovernor:
    """Track loaded-model memory against a budget and recommend LRU evictions.

    The governor never unloads anything itself; callers act on its advice.
    """

    def __init__(
        self,
        telemetry: Optional[ResourceTelemetry] = None,
        *,
        max_budget_bytes: Optional[int] = None,
        budget_fraction: float = 0.5,
        default_budget_bytes: int = DEFAULT_BUDGET_BYTES,
        stats_cache_s: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.telemetry = telemetry or ResourceTelemetry()
        self.stats_cache_s = stats_cache_s
        self._clock = clock
        self._lock = threading.Lock()
        self._handles: Dict[str, LoadedModelHandle] = {}
        self._stats_cache: Optional[Dict[str, Any]] = None
        self._stats_at = 0.0
        if max_budget_bytes is not None:
            self.max_budget_bytes = int(max_budget_bytes)
        else:
            self.max_budget_bytes = self._detect_budget(budget_fraction, default_budget_bytes)
        logger.info("Model memory budget set to %s", format_bytes(self.max_budget_bytes))

    def _detect_budget(self, fraction: float, default: int) -> int:
        try:
            ram = self.telemetry.snapshot().get("ram") or {}
            available = _to_float(ram.get("available_bytes"))
        except Exception:
            available = 0.0
        if available <= 0:
            logger.warning("Memory detection failed, using default %s budget", format_bytes(default))
            return int(default)
        return int(available * fraction)

    def set_budget(self, max_budget_bytes: int) -> None:
        self.max_budget_bytes = int(max_budget_bytes)

    def loaded_models(self) -> List[LoadedModelHandle]:
        with self._lock:
            return list(self._handles.values())

    def is_loaded(self, model_id: str) -> bool:
        with self._lock:
            return model_id in self._handles

    def memory_usage(self, model_id: str) -> int:
        with self._lock:
            handle = self._handles.get(model_id)
        return handle.memory_bytes if handle else 0

    def total_usage(self) -> int:
        with self._lock:
            return sum(h.memory_bytes for h in self._handles.values())

    def track_loaded(self, model_id: str, backend: str, memory_bytes: int) -> LoadedModelHandle:
        now = self._clock()
        with self._lock:
            existing = self._handles.get(model_id)
            if existing is not None:
                handle = replace(existing, last_used_at=now)
            else:
                handle = LoadedModelHandle(
                    model_id=model_id,
                    backend=backend,
                    loaded_at=now,
                    last_used_at=now,
                    memory_bytes=int(memory_bytes or 0),
                )
            self._handles = {**self._handles, model_id: handle}
        if existing is None:
            logger.info("Model loaded: %s (%s)", model_id, format_bytes(handle.memory_bytes))
        return handle

    def track_used(self, model_id: str) -> None:
        now = self._clock()
        with self._lock:
            handle = self._handles.get(model_id)
            if handle is None:
                return
            self._handles = {**self._handles, model_id: replace(handle, last_used_at=now)}

    def track_unloaded(self, model_id: str) -> None:
        with self._lock:
            handle = self._handles.get(model_id)
            if handle is None:
                return
            self._handles = {k: v for k, v in self._handles.items() if k != model_id}
        logger.info("Model unloaded: %s (%s)", model_id, format_bytes(handle.memory_bytes))

    def clear(self) -> None:
        with self._lock:
            self._handles = {}

    def can_load(self, size_bytes: int) -> bool:
        return self.total_usage() + int(size_bytes or 0) <= self.max_budget_bytes

    def models_to_evict(self, required_bytes: int) -> List[str]:
        with self._lock:
            handles = list(self._handles.values())
        required = int(required_bytes or 0)
        current = sum(h.memory_bytes for h in handles)
        if current + required <= self.max_budget_bytes:
            return []
        victims: List[str] = []
        freed = 0
        for handle in sorted(handles, key=lambda h: h.last_used_at):
            if current - freed + required <= self.max_budget_bytes:
                break
            victims.append(handle.model_id)
            freed += handle.memory_bytes
        return victims

    def idle_models(self, max_idle_s: float = DEFAULT_IDLE_S) -> List[str]:
        now = self._clock()
        with self._lock:
            handles = list(self._handles.values())
        return [h.model_id for h in handles if now - h.last_used_at > max_idle_s]

    def memory_summary(self) -> Dict[str, Any]:
        with self._lock:
            used = sum(h.memory_bytes for h in self._handles.values())
            count = len(self._handles)
        budget = self.max_budget_bytes
        return {
            "used": used,
            "max": budget,
            "percent": round((used / budget) * 100) if budget > 0 else 0,
            "model_count": count,
            "used_label": format_bytes(used),
            "max_label": format_bytes(budget),
        }

    async def system_stats(self) -> Dict[str, Any]:
        now = self._clock()
        cached = self._stats_cache
        if cached is not None and (now - self._stats_at) < self.stats_cache_s:
            return cached
        try:
            sample = await asyncio.to_thread(self.telemetry.snapshot)
        except Exception as exc:
            logger.warning("System stats failed: %s", exc)
            return {"cpu": {"usage": 0.0}, "memory": {"total": 0, "used": 0, "free": 0, "percent": 0.0}}
        stats = _stats_from_sample(sample)
        self._stats_cache = stats
        self._stats_at = now
        return stats


def _stats_from_sample(sample: Dict[str, Any]) -> Dict[str, Any]:
    ram = sample.get("ram") or {}
    cpu = sample.get("cpu") or {}
    stats: Dict[str, Any] = {
        "cpu": {"usage": _to_float(cpu.get("usage_pct"))},
        "memory": {
            "total": int(_to_float(ram.get("total_bytes"))),
            "used": int(_to_float(ram.get("used_bytes"))),
            "free": int(_to_float(ram.get("free_bytes"))),
            "percent": _to_float(ram.get("used_pct")),
        },
        "captured_at": sample.get("captured_at"),
    }
    gpus = sample.get("gpus") or []
    if gpus:
        gpu = gpus[0]
        stats["gpu"] = {
            "usage": _to_float(gpu.get("util")) if gpu.get("util") is not None else None,
            "memory": int(_to_float(gpu.get("vram_used_mb")) * 1024 * 1024),
            "memory_total": int(_to_float(gpu.get("vram_total_mb")) * 1024 * 1024),
            "temperature": gpu.get("temperature"),
            "name": gpu.get("name"),
        }
    return stats
