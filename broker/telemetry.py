import json
import platform
import shutil
import subprocess
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

GpuProvider = Callable[[], Optional[List[Dict[str, Any]]]]


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_float(val: Any, default: float = 0.0) -> float:
    try:
        return float(val)
    except Exception:
        return default


def _parse_mb(val: Any) -> Optional[float]:
    if val is None:
        return None
    try:
        return float(val)
    except Exception:
        text = str(val)
        num = ""
        for ch in text:
            if ch.isdigit() or ch == ".":
                num += ch
            elif num:
                break
        return float(num) if num else None


def _gpu_entry(
    gpu_id: int,
    name: Optional[str],
    vendor: str,
    total_mb: float,
    used_mb: float,
    util: Optional[float] = None,
    temperature: Optional[float] = None,
) -> Dict[str, Any]:
    return {
        "gpu_id": gpu_id,
        "name": name or None,
        "vendor": vendor,
        "vram_total_mb": total_mb,
        "vram_used_mb": used_mb,
        "vram_free_mb": max(total_mb - used_mb, 0.0),
        "util": util,
        "temperature": temperature,
    }


def _gpu_snapshot_nvml() -> Optional[List[Dict[str, Any]]]:
    try:
        import pynvml  # type: ignore
    except Exception:
        return None
    try:
        pynvml.nvmlInit()
    except Exception:
        return None
    gpus: List[Dict[str, Any]] = []
    try:
        count = int(pynvml.nvmlDeviceGetCount())
        for idx in range(count):
            try:
                handle = pynvml.nvmlDeviceGetHandleByIndex(idx)
                mem = pynvml.nvmlDeviceGetMemoryInfo(handle)
                name = pynvml.nvmlDeviceGetName(handle)
                if isinstance(name, bytes):
                    name = name.decode("utf-8", "replace")
                util = None
                temp = None
                try:
                    util = _to_float(pynvml.nvmlDeviceGetUtilizationRates(handle).gpu)
                except Exception:
                    util = None
                try:
                    temp = _to_float(pynvml.nvmlDeviceGetTemperature(handle, pynvml.NVML_TEMPERATURE_GPU))
                except Exception:
                    temp = None
                gpus.append(
                    _gpu_entry(
                        idx,
                        str(name) if name else None,
                        "nvidia",
                        _to_float(mem.total) / (1024.0 * 1024.0),
                        _to_float(mem.used) / (1024.0 * 1024.0),
                        util,
                        temp,
                    )
                )
            except Exception:
                continue
    finally:
        try:
            pynvml.nvmlShutdown()
        except Exception:
            pass
    return gpus or None


def _gpu_snapshot_nvidia_smi() -> Optional[List[Dict[str, Any]]]:
    smi_path = shutil.which("nvidia-smi")
    if not smi_path:
        return None
    queries = [
        "index,name,memory.total,memory.used,utilization.gpu",
        "index,name,memory.total,memory.used",
    ]
    raw = None
    for query in queries:
        try:
            cmd = [smi_path, f"--query-gpu={query}", "--format=csv,noheader,nounits"]
            raw = subprocess.check_output(cmd, text=True, stderr=subprocess.STDOUT, timeout=2)
            if raw:
                break
        except Exception:
            raw = None
    if not raw:
        return None
    gpus: List[Dict[str, Any]] = []
    for idx, line in enumerate(raw.strip().splitlines()):
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 4:
            continue
        gpu_id = int(parts[0]) if parts[0].isdigit() else idx
        util = _parse_mb(parts[4]) if len(parts) >= 5 else None
        gpus.append(
            _gpu_entry(
                gpu_id,
                parts[1],
                "nvidia",
                _parse_mb(parts[2]) or 0.0,
                _parse_mb(parts[3]) or 0.0,
                util,
            )
        )
    return gpus or None


def _gpu_snapshot_rocm_smi() -> Optional[List[Dict[str, Any]]]:
    exe = shutil.which("rocm-smi")
    if not exe:
        return None
    try:
        raw = subprocess.check_output(
            [exe, "--showmeminfo", "vram", "--showproductname", "--json"],
            text=True,
            stderr=subprocess.STDOUT,
            timeout=2,
        )
        payload = json.loads(raw)
    except Exception:
        return None
    if not isinstance(payload, dict):
        return None
    gpus: List[Dict[str, Any]] = []
    for key, info in payload.items():
        if not isinstance(info, dict):
            continue
        name = info.get("Card series") or info.get("Card Series") or info.get("Card model") or info.get("Product Name")
        total = None
        used = None
        for k, v in info.items():
            label = str(k).lower()
            if "vram total" in label and total is None:
                total = _parse_mb(v)
            if "vram used" in label and used is None:
                used = _parse_mb(v)
        if total is None and used is None:
            continue
        # rocm-smi reports bytes
        total_mb = _to_float(total) / (1024.0 * 1024.0)
        used_mb = _to_float(used) / (1024.0 * 1024.0)
        digits = "".join(ch for ch in str(key) if ch.isdigit())
        gpu_id = int(digits) if digits else len(gpus)
        gpus.append(_gpu_entry(gpu_id, str(name) if name else None, "amd", total_mb, used_mb))
    return gpus or None


def _gpu_snapshot_system_profiler() -> Optional[List[Dict[str, Any]]]:
    if platform.system() != "Darwin":
        return None
    exe = shutil.which("system_profiler")
    if not exe:
        return None
    try:
        raw = subprocess.check_output(
            [exe, "SPDisplaysDataType", "-json"],
            text=True,
            stderr=subprocess.STDOUT,
            timeout=5,
        )
        payload = json.loads(raw)
    except Exception:
        return None
    gpus: List[Dict[str, Any]] = []
    for idx, item in enumerate(payload.get("SPDisplaysDataType") or []):
        if not isinstance(item, dict):
            continue
        name = item.get("sppci_model") or item.get("_name")
        vendor_raw = str(item.get("spdisplays_vendor") or name or "").lower()
        vendor = "apple" if "apple" in vendor_raw or str(name or "").lower().startswith("apple") else "unknown"
        vram_text = item.get("spdisplays_vram") or item.get("spdisplays_vram_shared") or ""
        total_mb = _parse_mb(vram_text) or 0.0
        if "gb" in str(vram_text).lower():
            total_mb *= 1024.0
        gpus.append(_gpu_entry(idx, str(name) if name else None, vendor, total_mb, 0.0))
    return gpus or None


DEFAULT_GPU_PROVIDERS: List[GpuProvider] = [
    _gpu_snapshot_nvml,
    _gpu_snapshot_nvidia_smi,
    _gpu_snapshot_rocm_smi,
    _gpu_snapshot_system_profiler,
]


class ResourceTelemetry:
    """Collect live CPU/RAM/VRAM stats from psutil and the first GPU provider that answers."""

    def __init__(self, gpu_providers: Optional[List[GpuProvider]] = None) -> None:
        self._gpu_providers = gpu_providers if gpu_providers is not None else list(DEFAULT_GPU_PROVIDERS)

    def gpus(self) -> List[Dict[str, Any]]:
        for provider in self._gpu_providers:
            try:
                result = provider()
            except Exception:
                result = None
            if result:
                return result
        return []

    def snapshot(self) -> Dict[str, Any]:
        ram: Dict[str, Any] = {}
        cpu: Dict[str, Any] = {}
        try:
            import psutil  # type: ignore

            mem = psutil.virtual_memory()
            total = int(mem.total)
            available = int(getattr(mem, "available", 0))
            used = int(getattr(mem, "used", total - available))
            free = int(getattr(mem, "free", 0))
            ram = {
                "total_bytes": total,
                "used_bytes": used,
                "free_bytes": free,
                "available_bytes": available,
                "used_pct": round(_to_float(mem.percent), 2),
            }
            cpu = {"usage_pct": round(_to_float(psutil.cpu_percent(interval=None)), 1)}
        except Exception:
            ram = {}
            cpu = {}
        return {"cpu": cpu, "ram": ram, "gpus": self.gpus(), "captured_at": _utc_iso()}
