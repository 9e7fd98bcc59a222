import pytest

from broker.hardware import HardwareProfiler, HardwareTier, calculate_tier, primary_model
from tests.fakes import FakeClock, FakeTelemetry


def test_tier_from_mid_range_gpu():
    telemetry = FakeTelemetry(total_gb=16, gpus=[{"name": "NVIDIA GeForce RTX 3070", "vendor": "nvidia", "vram_total_mb": 8192}])
    snapshot = HardwareProfiler(telemetry).detect()
    assert snapshot.tier == HardwareTier.STEADY
    assert snapshot.vram_gb == 8
    assert snapshot.ram_total_gb == 16
    assert snapshot.gpu["vendor"] == "nvidia"
    assert snapshot.gpu["compute"] == "ampere"
    assert snapshot.to_dict()["tier"] == "STEADY"
    assert snapshot.to_dict()["tier_level"] == 1


@pytest.mark.parametrize(
    "ram_gb,vram_gb,expected",
    [
        (8, 0, HardwareTier.LEAN),
        (16, 0, HardwareTier.STEADY),
        (32, 0, HardwareTier.HEAVY),
        (64, 0, HardwareTier.SURPLUS),
        (8, 6, HardwareTier.STEADY),
        (8, 12, HardwareTier.HEAVY),
        (8, 24, HardwareTier.SURPLUS),
        (128, 4, HardwareTier.SURPLUS),
        (12, 5, HardwareTier.LEAN),
    ],
)
def test_calculate_tier_thresholds(ram_gb, vram_gb, expected):
    assert calculate_tier(ram_gb, vram_gb) == expected


def test_tier_never_drops_when_memory_grows():
    for vram in range(0, 40, 2):
        for ram in range(4, 130, 4):
            assert calculate_tier(ram, vram) >= calculate_tier(ram - 4, vram)
    for ram in (0, 8, 12):
        for vram in range(2, 40, 2):
            assert calculate_tier(ram, vram) >= calculate_tier(ram, vram - 2)


def test_vram_tier_wins_over_ram_tier():
    assert calculate_tier(64, 8) == HardwareTier.STEADY
    assert calculate_tier(16, 24) == HardwareTier.SURPLUS


def test_no_gpu_falls_back_to_ram():
    snapshot = HardwareProfiler(FakeTelemetry(total_gb=32)).detect()
    assert snapshot.gpu["vendor"] == "none"
    assert snapshot.vram_gb == 0
    assert snapshot.tier == HardwareTier.HEAVY


def test_apple_unified_memory_counts_as_vram():
    telemetry = FakeTelemetry(total_gb=32, gpus=[{"name": "Apple M2 Pro", "vendor": "apple", "vram_total_mb": 0}])
    snapshot = HardwareProfiler(telemetry).detect()
    assert snapshot.gpu["vendor"] == "apple"
    assert snapshot.vram_gb == 22
    assert snapshot.tier == HardwareTier.HEAVY


def test_integrated_gpu_is_skipped_for_discrete():
    gpus = [
        {"name": "Intel UHD Graphics 630", "vendor": "intel", "vram_total_mb": 1024},
        {"name": "NVIDIA GeForce RTX 4090", "vendor": "nvidia", "vram_total_mb": 24576},
    ]
    snapshot = HardwareProfiler(FakeTelemetry(total_gb=64, gpus=gpus)).detect()
    assert snapshot.gpu["name"] == "NVIDIA GeForce RTX 4090"
    assert snapshot.tier == HardwareTier.SURPLUS
    assert snapshot.recommendations["parallel_capable"] is True
    assert snapshot.recommendations["backend"] == "cuda"


def test_detect_is_cached_until_refresh():
    telemetry = FakeTelemetry(total_gb=16)
    clock = FakeClock()
    profiler = HardwareProfiler(telemetry, cache_s=60, clock=clock)
    first = profiler.detect()
    assert profiler.detect() is first
    assert telemetry.calls == 1

    telemetry.total_gb = 64
    refreshed = profiler.detect(force_refresh=True)
    assert telemetry.calls == 2
    assert refreshed.tier == HardwareTier.SURPLUS

    clock.advance(61)
    profiler.detect()
    assert telemetry.calls == 3


def test_recommendations_include_lower_tiers():
    snapshot = HardwareProfiler(FakeTelemetry(total_gb=16)).detect()
    language = snapshot.recommendations["models"]["language"]
    ids = [m["id"] for m in language]
    assert ids[0] == "mistral:7b"
    assert "llama3.2:3b" in ids
    assert language[0]["recommended"] is True
    assert all(not m["recommended"] for m in language if m["tier"] == "LEAN")
    assert snapshot.recommendations["models"]["embeddings"][0]["id"] == "nomic-embed-text"


def test_primary_model_per_tier():
    assert primary_model(HardwareTier.LEAN, "vision") == "moondream"
    assert primary_model(HardwareTier.STEADY, "language") == "mistral:7b"
    assert primary_model(HardwareTier.HEAVY, "audio") == "whisper-medium"
    assert primary_model(HardwareTier.SURPLUS, "language") == "deepseek-r1:70b"


def test_tier_parse_accepts_labels():
    assert HardwareTier.parse("T2") == HardwareTier.HEAVY
    assert HardwareTier.parse("surplus") == HardwareTier.SURPLUS
    assert HardwareTier.parse(0) == HardwareTier.LEAN
    assert HardwareTier.parse("bogus", HardwareTier.STEADY) == HardwareTier.STEADY
    with pytest.raises(ValueError):
        HardwareTier.parse("bogus")
