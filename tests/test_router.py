import asyncio
import base64
import io

import pytest
from PIL import Image

from broker.builtin_backend import BuiltinBackend
from broker.errors import (
    InvocationFailure,
    NoProviderForCapability,
    ResourceExhausted,
    UnknownModel,
    UnsupportedOperation,
)
from broker.governor import ResourceGovernor
from broker.hardware import HardwareTier
from broker.provider_types import (
    CHAT,
    EMBED,
    GENERATE,
    OP_CHAT,
    OP_GENERATE,
    OP_PULL,
    ChatMessage,
    ChatRequest,
    EmbedRequest,
    GenerateRequest,
    ModelDescriptor,
    VisionRequest,
)
from broker.router import CapabilityRouter, ProgressBus
from tests.fakes import GIB, FakeBackend, FakeClock, FakePipelineFactory, FakeTelemetry


def make_governor(budget_gb: float = 10, clock: FakeClock | None = None) -> ResourceGovernor:
    return ResourceGovernor(FakeTelemetry(), max_budget_bytes=int(budget_gb * GIB), clock=clock or FakeClock())


async def make_router(*backends, governor=None, **kwargs) -> CapabilityRouter:
    governor = governor or make_governor()
    for backend in backends:
        backend.governor = governor
    router = CapabilityRouter(list(backends), governor, order=[b.kind for b in backends], **kwargs)
    await router.refresh_status()
    return router


def chat_request(text: str = "hi", **kwargs) -> ChatRequest:
    return ChatRequest(messages=[ChatMessage(role="user", content=text)], **kwargs)


def png_data_url() -> str:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), "blue").save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.mark.asyncio
async def test_first_available_backend_in_order_serves_generate():
    ollama = FakeBackend("ollama", available=False)
    builtin = FakeBackend("transformers", capabilities=[GENERATE])
    router = await make_router(ollama, builtin)

    response = await router.generate(GenerateRequest(prompt="hello"))

    assert response.provider == "transformers"
    assert response.response == "ok:hello"
    assert ollama.calls == []


@pytest.mark.asyncio
async def test_preferred_backend_wins_when_available():
    ollama = FakeBackend("ollama")
    cloud = FakeBackend("huggingface")
    router = await make_router(ollama, cloud)

    response = await router.chat(chat_request(preferred_backend="huggingface"))
    assert response.provider == "huggingface"


@pytest.mark.asyncio
async def test_unavailable_preferred_backend_falls_through():
    ollama = FakeBackend("ollama")
    cloud = FakeBackend("huggingface", available=False)
    router = await make_router(ollama, cloud)

    response = await router.chat(chat_request(preferred_backend="huggingface"))
    assert response.provider == "ollama"


@pytest.mark.asyncio
async def test_model_prefix_selects_backend():
    ollama = FakeBackend("ollama")
    builtin = FakeBackend("transformers")
    router = await make_router(ollama, builtin)

    response = await router.chat(chat_request(model="transformers:flan-t5-small"))
    assert response.provider == "transformers"
    assert builtin.calls[0]["request"].model == "transformers:flan-t5-small"


@pytest.mark.asyncio
async def test_model_for_other_backend_is_dropped_when_preferred_differs():
    ollama = FakeBackend("ollama")
    builtin = FakeBackend("transformers")
    router = await make_router(ollama, builtin)

    await router.chat(chat_request(model="transformers:flan-t5-small", preferred_backend="ollama"))
    assert ollama.calls[0]["request"].model is None


@pytest.mark.asyncio
async def test_family_default_model_used_without_explicit_choice():
    ollama = FakeBackend("ollama")
    builtin = FakeBackend("transformers")
    router = await make_router(ollama, builtin, default_models={"text": "transformers:flan-t5-small"})

    response = await router.chat(chat_request())
    assert response.provider == "transformers"
    assert response.model == "transformers:flan-t5-small"


@pytest.mark.asyncio
async def test_no_provider_raises_after_one_refresh():
    ollama = FakeBackend("ollama", available=False)
    router = await make_router(ollama)
    probes_before = ollama.probe_count

    with pytest.raises(NoProviderForCapability) as excinfo:
        await router.chat(chat_request())

    assert ollama.probe_count == probes_before + 1
    assert excinfo.value.status_code == 503
    assert excinfo.value.to_dict()["capability"] == CHAT


@pytest.mark.asyncio
async def test_backend_that_comes_up_is_found_on_refresh():
    ollama = FakeBackend("ollama", available=False)
    router = await make_router(ollama)
    ollama.available = True

    response = await router.chat(chat_request())
    assert response.provider == "ollama"


@pytest.mark.asyncio
async def test_backend_without_operation_is_not_routed():
    embed_only = FakeBackend("ollama", operations=frozenset({OP_CHAT, OP_PULL}))
    builtin = FakeBackend("transformers")
    router = await make_router(embed_only, builtin)

    response = await router.embed(EmbedRequest(text=["a", "b"]))
    assert response.provider == "transformers"
    assert response.embeddings == [[0.1, 0.2], [0.1, 0.2]]


@pytest.mark.asyncio
async def test_unsupported_capability_has_no_provider():
    backend = FakeBackend("ollama", capabilities=[CHAT])
    router = await make_router(backend)
    with pytest.raises(NoProviderForCapability):
        await router.vision(VisionRequest(image="data:image/png;base64,AAAA", task="object-detection"))


@pytest.mark.asyncio
async def test_loading_evicts_lru_model_first():
    clock = FakeClock(start=0)
    governor = make_governor(10, clock)
    ollama = FakeBackend("ollama")
    builtin = FakeBackend("transformers", load_bytes=4 * GIB)
    router = await make_router(ollama, builtin, governor=governor)
    clock.now = 1
    governor.track_loaded("ollama:A", "ollama", 4 * GIB)
    clock.now = 2
    governor.track_loaded("ollama:B", "ollama", 4 * GIB)
    clock.now = 3

    await router.chat(chat_request(model="transformers:C"))

    assert ollama.unloaded == ["ollama:A"]
    assert {h.model_id for h in governor.loaded_models()} == {"ollama:B", "transformers:C"}
    assert governor.total_usage() <= governor.max_budget_bytes


@pytest.mark.asyncio
async def test_model_larger_than_budget_is_exhausted():
    governor = make_governor(2)
    builtin = FakeBackend("transformers", load_bytes=4 * GIB)
    router = await make_router(builtin, governor=governor)

    with pytest.raises(ResourceExhausted) as excinfo:
        await router.chat(chat_request(model="transformers:big"))
    assert excinfo.value.status_code == 507
    assert builtin.calls == []


@pytest.mark.asyncio
async def test_already_loaded_model_needs_no_capacity():
    governor = make_governor(4)
    builtin = FakeBackend("transformers", load_bytes=4 * GIB)
    router = await make_router(builtin, governor=governor)
    await router.chat(chat_request(model="transformers:big"))
    await router.chat(chat_request(model="transformers:big"))
    assert len(builtin.calls) == 2
    assert builtin.unloaded == []


@pytest.mark.asyncio
async def test_unexpected_backend_errors_become_invocation_failures():
    class Exploding(FakeBackend):
        async def chat(self, request):
            raise RuntimeError("kaboom")

    router = await make_router(Exploding("ollama"))
    with pytest.raises(InvocationFailure) as excinfo:
        await router.chat(chat_request())
    assert excinfo.value.status_code == 502
    assert "kaboom" in excinfo.value.message


@pytest.mark.asyncio
async def test_pull_fans_out_progress_to_subscribers():
    router = await make_router(FakeBackend("ollama"))
    per_model = await router.progress.subscribe("ollama:small")
    everything = await router.progress.subscribe()
    seen = []

    ok = await router.pull_model("ollama:small", seen.append)

    assert ok is True
    assert [p.percent for p in seen] == [50, 100]
    assert per_model.qsize() == 2
    assert everything.qsize() == 2
    assert (await per_model.get()).phase == "downloading"


@pytest.mark.asyncio
async def test_pull_requires_a_backend_prefix_or_kind():
    router = await make_router(FakeBackend("ollama"))
    with pytest.raises(UnknownModel):
        await router.pull_model("llama3.2:3b")
    assert await router.pull_model("llama3.2:3b", backend_kind="ollama") is True


@pytest.mark.asyncio
async def test_lifecycle_operation_missing_on_backend_is_unsupported():
    cloud = FakeBackend("huggingface", operations=frozenset({OP_CHAT, OP_GENERATE, OP_PULL}))
    router = await make_router(cloud)
    with pytest.raises(UnsupportedOperation):
        await router.delete_model("huggingface:some/model")
    with pytest.raises(UnsupportedOperation):
        await router.load_model("huggingface:some/model")


@pytest.mark.asyncio
async def test_progress_bus_unsubscribe_stops_delivery():
    bus = ProgressBus()
    queue = await bus.subscribe("m")
    await bus.unsubscribe(queue, "m")
    assert bus.subscribers == {}


@pytest.mark.asyncio
async def test_recommended_model_respects_tier():
    models = [
        ModelDescriptor(id="ollama:tiny", name="tiny", provider="ollama", capabilities=[CHAT], tier=HardwareTier.LEAN),
        ModelDescriptor(id="ollama:mid", name="mid", provider="ollama", capabilities=[CHAT], tier=HardwareTier.STEADY),
        ModelDescriptor(id="ollama:huge", name="huge", provider="ollama", capabilities=[CHAT], tier=HardwareTier.SURPLUS),
    ]
    router = await make_router(FakeBackend("ollama", models=models), tier=HardwareTier.HEAVY)
    assert router.recommended_model(CHAT).id == "ollama:mid"
    router.set_tier(HardwareTier.LEAN)
    assert router.recommended_model(CHAT).id == "ollama:tiny"
    assert router.recommended_model(EMBED) is None


@pytest.mark.asyncio
async def test_status_reports_recommended_provider():
    router = await make_router(FakeBackend("ollama", available=False), FakeBackend("transformers"))
    status = router.get_status()
    assert status["recommended_provider"] == "transformers"
    assert status["has_available_provider"] is True
    assert status["providers"]["ollama"]["status"] == "unavailable"
    assert status["providers"]["ollama"]["error"] == "Ollama is not running"


@pytest.mark.asyncio
async def test_list_models_marks_loaded_and_skips_failing_backend():
    class Broken(FakeBackend):
        async def list_models(self):
            raise RuntimeError("down")

    governor = make_governor()
    router = await make_router(FakeBackend("ollama"), Broken("transformers"), governor=governor)
    governor.track_loaded("ollama:small", "ollama", GIB)

    models = await router.list_all_models()
    assert [m.id for m in models] == ["ollama:small"]
    assert models[0].is_loaded is True


@pytest.mark.asyncio
async def test_unload_idle_unloads_through_backend():
    clock = FakeClock(start=0)
    governor = make_governor(10, clock)
    ollama = FakeBackend("ollama")
    router = await make_router(ollama, governor=governor)
    governor.track_loaded("ollama:old", "ollama", GIB)
    clock.advance(400)

    assert await router.unload_idle(300) == ["ollama:old"]
    assert ollama.unloaded == ["ollama:old"]
    assert governor.loaded_models() == []


@pytest.mark.asyncio
async def test_concurrent_calls_share_router():
    router = await make_router(FakeBackend("ollama"))
    results = await asyncio.gather(*(router.chat(chat_request(str(i))) for i in range(5)))
    assert sorted(r.text for r in results) == [f"ok:{i}" for i in range(5)]


def builtin_backend(tmp_path, factory=None) -> BuiltinBackend:
    return BuiltinBackend(
        cache_dir=str(tmp_path / "cache"), pipeline_factory=factory or FakePipelineFactory(), clock=FakeClock()
    )


@pytest.mark.asyncio
async def test_builtin_pull_evicts_lru_model_to_fit_budget(tmp_path):
    clock = FakeClock(start=0)
    governor = ResourceGovernor(FakeTelemetry(), max_budget_bytes=700_000_000, clock=clock)
    router = await make_router(builtin_backend(tmp_path), governor=governor)
    clock.now = 1
    assert await router.load_model("transformers:flan-t5-small") is True
    clock.now = 2
    assert await router.load_model("transformers:distilgpt2") is True
    clock.now = 3

    assert await router.pull_model("transformers:whisper-small") is True

    assert {h.model_id for h in governor.loaded_models()} == {
        "transformers:distilgpt2",
        "transformers:whisper-small",
    }
    assert governor.total_usage() <= governor.max_budget_bytes


@pytest.mark.asyncio
async def test_builtin_pull_over_budget_reports_error_without_loading(tmp_path):
    factory = FakePipelineFactory()
    governor = ResourceGovernor(FakeTelemetry(), max_budget_bytes=300_000_000, clock=FakeClock())
    router = await make_router(builtin_backend(tmp_path, factory), governor=governor)
    seen = []

    assert await router.pull_model("transformers:whisper-small", seen.append) is False

    assert seen[-1].phase == "error"
    assert "Not enough memory" in seen[-1].error
    assert factory.created == []
    assert governor.loaded_models() == []


@pytest.mark.asyncio
async def test_pull_without_load_skips_capacity_check():
    governor = make_governor(1)
    governor.track_loaded("ollama:resident", "ollama", GIB)
    ollama = FakeBackend("ollama", load_bytes=4 * GIB)
    router = await make_router(ollama, governor=governor)

    assert await router.pull_model("ollama:big") is True
    assert ollama.unloaded == []
    assert governor.is_loaded("ollama:resident")


@pytest.mark.asyncio
async def test_generate_with_images_reserves_and_loads_captioner(tmp_path):
    factory = FakePipelineFactory()
    governor = ResourceGovernor(FakeTelemetry(), max_budget_bytes=10 * GIB, clock=FakeClock())
    router = await make_router(builtin_backend(tmp_path, factory), governor=governor)

    response = await router.generate(GenerateRequest(prompt="what is this?", images=[png_data_url()]))

    assert response.response == "a cat on a mat"
    assert [p.task for p in factory.created] == ["image-to-text"]
    assert governor.memory_usage("transformers:vit-gpt2-image-captioning") == 500_000_000


@pytest.mark.asyncio
async def test_close_forgets_tracked_models():
    governor = make_governor()
    ollama = FakeBackend("ollama")
    router = await make_router(ollama, governor=governor)
    governor.track_loaded("ollama:small", "ollama", GIB)

    await router.close()

    assert ollama.closed is True
    assert governor.loaded_models() == []
