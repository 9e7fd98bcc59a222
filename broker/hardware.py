import logging
import os
import platform
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional

from .telemetry import ResourceTelemetry, _to_float, _utc_iso

logger = logging.getLogger("uvicorn.error")

GIB = 1024 * 1024 * 1024
UNIFIED_MEMORY_FRACTION = 0.7


class HardwareTier(IntEnum):
    LEAN = 0
    STEADY = 1
    HEAVY = 2
    SURPLUS = 3

    @classmethod
    def parse(cls, value: Any, default: Optional["HardwareTier"] = None) -> "HardwareTier":
        if isinstance(value, HardwareTier):
            return value
        if isinstance(value, int):
            return cls(max(0, min(3, value)))
        text = str(value or "").strip().upper()
        if text.startswith("T") and text[1:].isdigit():
            return cls(max(0, min(3, int(text[1:]))))
        if text in cls.__members__:
            return cls[text]
        if default is not None:
            return default
        raise ValueError(f"Unknown hardware tier: {value}")


# (tier, min VRAM GB, min RAM GB), checked from the top down.
TIER_THRESHOLDS = [
    (HardwareTier.SURPLUS, 24, 64),
    (HardwareTier.HEAVY, 12, 32),
    (HardwareTier.STEADY, 6, 16),
]

_MODELS_BY_TIER: Dict[HardwareTier, Dict[str, List[Dict[str, str]]]] = {
    HardwareTier.SURPLUS: {
        "vision": [{"id": "llava:34b", "size": "20GB", "speed": "medium"}, {"id": "llama3.2-vision:11b", "size": "8GB", "speed": "fast"}],
        "language": [{"id": "deepseek-r1:70b", "size": "40GB", "speed": "medium"}, {"id": "qwen2.5:32b", "size": "20GB", "speed": "fast"}],
        "audio": [{"id": "whisper-large-v3", "size": "3GB", "speed": "medium"}],
    },
    HardwareTier.HEAVY: {
        "vision": [{"id": "llama3.2-vision:11b", "size": "8GB", "speed": "fast"}, {"id": "llava:13b", "size": "8GB", "speed": "medium"}],
        "language": [{"id": "qwen2.5:14b", "size": "9GB", "speed": "fast"}, {"id": "deepseek-r1:14b", "size": "9GB", "speed": "fast"}],
        "audio": [{"id": "whisper-medium", "size": "1.5GB", "speed": "fast"}],
    },
    HardwareTier.STEADY: {
        "vision": [{"id": "llava:7b", "size": "4.5GB", "speed": "fast"}, {"id": "moondream", "size": "1.7GB", "speed": "very-fast"}],
        "language": [{"id": "mistral:7b", "size": "4GB", "speed": "fast"}, {"id": "phi4", "size": "9GB", "speed": "medium"}],
        "audio": [{"id": "whisper-base", "size": "150MB", "speed": "fast"}],
    },
    HardwareTier.LEAN: {
        "vision": [{"id": "moondream", "size": "1.7GB", "speed": "medium"}],
        "language": [{"id": "llama3.2:3b", "size": "2GB", "speed": "fast"}, {"id": "phi3:mini", "size": "2.3GB", "speed": "medium"}],
        "audio": [{"id": "whisper-tiny", "size": "75MB", "speed": "fast"}],
    },
}


def calculate_tier(ram_gb: float, vram_gb: float) -> HardwareTier:
    # Dedicated GPU memory wins over system RAM when both are known.
    for tier, min_vram, _ in TIER_THRESHOLDS:
        if vram_gb >= min_vram:
            return tier
    for tier, _, min_ram in TIER_THRESHOLDS:
        if ram_gb >= min_ram:
            return tier
    return HardwareTier.LEAN


def primary_model(tier: HardwareTier, model_type: str) -> str:
    """First-choice model id of a type ("vision", "language", "audio") for a tier."""
    entries = _MODELS_BY_TIER.get(tier, {}).get(model_type) or _MODELS_BY_TIER[HardwareTier.LEAN][model_type]
    return entries[0]["id"]


def _detect_vendor(name: str, vendor_hint: str = "") -> str:
    model = (name or "").lower()
    hint = (vendor_hint or "").lower()
    if "nvidia" in model or "nvidia" in hint:
        return "nvidia"
    if "amd" in model or "radeon" in model or "amd" in hint:
        return "amd"
    if "apple" in model or "apple" in hint or any(chip in model for chip in ("m1", "m2", "m3", "m4")):
        return "apple"
    if "intel" in model or "intel" in hint:
        return "intel"
    return "unknown"


def _compute_family(vendor: str, model: str) -> Optional[str]:
    model = (model or "").lower()
    if vendor == "nvidia":
        if "4090" in model or "4080" in model:
            return "ada"
        if "3090" in model or "3080" in model or "3070" in model:
            return "ampere"
        if "2080" in model or "2070" in model:
            return "turing"
        return "cuda"
    if vendor == "amd":
        return "rocm"
    if vendor == "apple":
        return "metal"
    return None


def _accel_backend(vendor: str) -> str:
    return {"nvidia": "cuda", "amd": "rocm", "apple": "metal"}.get(vendor, "cpu")


def build_recommendations(tier: HardwareTier, gpu_vendor: str) -> Dict[str, Any]:
    models: Dict[str, List[Dict[str, Any]]] = {"vision": [], "language": [], "embeddings": [], "audio": []}
    models["embeddings"].append(
        {"id": "nomic-embed-text", "size": "274MB", "speed": "fast", "tier": HardwareTier.LEAN.name, "recommended": True}
    )
    for model_type in ("vision", "language", "audio"):
        seen = set()
        for level in range(int(tier), -1, -1):
            current = HardwareTier(level)
            for entry in _MODELS_BY_TIER[current][model_type]:
                if entry["id"] in seen:
                    continue
                seen.add(entry["id"])
                models[model_type].append({**entry, "tier": current.name, "recommended": current == tier})
    return {
        "models": models,
        "parallel_capable": tier >= HardwareTier.HEAVY,
        "gpu_accelerated": gpu_vendor not in ("none", "intel", "unknown"),
        "backend": _accel_backend(gpu_vendor),
    }


@dataclass
class HardwareSnapshot:
    tier: HardwareTier
    ram_total_gb: float
    ram_free_gb: float
    ram_available_gb: float
    vram_gb: float
    gpu: Dict[str, Any] = field(default_factory=dict)
    cpu: Dict[str, Any] = field(default_factory=dict)
    platform: Dict[str, Any] = field(default_factory=dict)
    recommendations: Dict[str, Any] = field(default_factory=dict)
    captured_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.name,
            "tier_level": int(self.tier),
            "memory": {
                "total_gb": self.ram_total_gb,
                "free_gb": self.ram_free_gb,
                "available_gb": self.ram_available_gb,
            },
            "vram_gb": self.vram_gb,
            "gpu": dict(self.gpu),
            "cpu": dict(self.cpu),
            "platform": dict(self.platform),
            "recommendations": self.recommendations,
            "captured_at": self.captured_at,
        }


def _cpu_info() -> Dict[str, Any]:
    info: Dict[str, Any] = {
        "brand": platform.processor() or platform.machine() or "unknown",
        "cores": os.cpu_count() or 0,
        "physical_cores": None,
        "speed_mhz": None,
        "speed_max_mhz": None,
    }
    try:
        import psutil  # type: ignore

        info["cores"] = psutil.cpu_count(logical=True) or info["cores"]
        info["physical_cores"] = psutil.cpu_count(logical=False)
        freq = psutil.cpu_freq()
        if freq:
            info["speed_mhz"] = round(_to_float(freq.current), 1)
            info["speed_max_mhz"] = round(_to_float(freq.max), 1)
    except Exception:
        pass
    return info


class HardwareProfiler:
    """Detect CPU/RAM/GPU and map them to a tier; results are cached briefly."""

    def __init__(
        self,
        telemetry: Optional[ResourceTelemetry] = None,
        *,
        cache_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.telemetry = telemetry or ResourceTelemetry()
        self.cache_s = cache_s
        self._clock = clock
        self._cache: Optional[HardwareSnapshot] = None
        self._cache_at = 0.0
        self._lock = threading.Lock()

    def detect(self, force_refresh: bool = False) -> HardwareSnapshot:
        with self._lock:
            now = self._clock()
            if self._cache is not None and not force_refresh and (now - self._cache_at) < self.cache_s:
                return self._cache
            snapshot = self._probe()
            self._cache = snapshot
            self._cache_at = now
            return snapshot

    def _probe(self) -> HardwareSnapshot:
        try:
            sample = self.telemetry.snapshot()
        except Exception as exc:
            logger.warning("Hardware telemetry failed: %s", exc)
            sample = {"ram": {}, "gpus": []}
        ram = sample.get("ram") or {}
        ram_total_gb = round(_to_float(ram.get("total_bytes")) / GIB)
        gpu = self._parse_gpu(sample.get("gpus") or [], ram_total_gb)
        tier = calculate_tier(ram_total_gb, gpu["vram_gb"])
        try:
            cpu = _cpu_info()
        except Exception:
            cpu = {}
        snapshot = HardwareSnapshot(
            tier=tier,
            ram_total_gb=ram_total_gb,
            ram_free_gb=round(_to_float(ram.get("free_bytes")) / GIB),
            ram_available_gb=round(_to_float(ram.get("available_bytes")) / GIB),
            vram_gb=gpu["vram_gb"],
            gpu=gpu,
            cpu=cpu,
            platform={"os": platform.system().lower(), "arch": platform.machine(), "release": platform.release()},
            recommendations=build_recommendations(tier, gpu["vendor"]),
            captured_at=sample.get("captured_at") or _utc_iso(),
        )
        logger.info("Hardware tier %s (ram=%sGB vram=%sGB gpu=%s)", tier.name, ram_total_gb, gpu["vram_gb"], gpu["name"])
        return snapshot

    @staticmethod
    def _parse_gpu(gpus: List[Dict[str, Any]], ram_total_gb: float) -> Dict[str, Any]:
        if not gpus:
            return {"vendor": "none", "name": "No GPU detected", "vram_gb": 0, "compute": None}
        discrete = [
            g
            for g in gpus
            if "intel" not in str(g.get("name") or "").lower() and "integrated" not in str(g.get("name") or "").lower()
        ]
        gpu = discrete[0] if discrete else gpus[0]
        name = str(gpu.get("name") or "Unknown GPU")
        vendor = _detect_vendor(name, str(gpu.get("vendor") or ""))
        vram_gb = _to_float(gpu.get("vram_total_mb")) / 1024.0
        if vendor == "apple" and vram_gb <= 0:
            vram_gb = ram_total_gb * UNIFIED_MEMORY_FRACTION
        return {
            "vendor": vendor,
            "name": name,
            "vram_gb": round(vram_gb),
            "compute": _compute_family(vendor, name),
        }
