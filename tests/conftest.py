from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from broker.config import BrokerSettings, BuiltinBackendConfig, HuggingFaceBackendConfig, OllamaBackendConfig
from broker.governor import ResourceGovernor
from broker.hardware import HardwareProfiler
from broker.main import create_app
from broker.preferences import PreferenceStore
from broker.router import CapabilityRouter
from tests.fakes import GIB, FakeBackend, FakeTelemetry


def make_settings(tmp_path: Path, **overrides) -> BrokerSettings:
    settings = BrokerSettings(
        host="127.0.0.1",
        port=8000,
        database_path=str(tmp_path / "test.db"),
        ollama=OllamaBackendConfig(base_url="http://ollama.test"),
        builtin=BuiltinBackendConfig(cache_dir=str(tmp_path / "model-cache")),
        huggingface=HuggingFaceBackendConfig(api_key=None),
        memory_budget_bytes=10 * GIB,
        idle_sweep_interval_s=3600,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        backends: list | None = None,
        telemetry: FakeTelemetry | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        telemetry = telemetry or FakeTelemetry(total_gb=16, available_gb=8)
        governor = ResourceGovernor(telemetry, max_budget_bytes=settings.memory_budget_bytes, stats_cache_s=0)
        if backends is None:
            backends = [FakeBackend("ollama", governor=governor), FakeBackend("transformers", governor=governor)]
        for backend in backends:
            backend.governor = governor
        capability_router = CapabilityRouter(backends, governor, order=settings.backend_order)
        profiler = HardwareProfiler(telemetry, cache_s=60)
        store = PreferenceStore(settings.database_path)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            profiler=profiler,
            capability_router=capability_router,
            store=store,
            config_path=cfg_path,
        )
        return app, cfg_path, capability_router, backends

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, capability_router, backends = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.router = capability_router  # type: ignore[attr-defined]
            http_client.backends = backends  # type: ignore[attr-defined]
            yield http_client
