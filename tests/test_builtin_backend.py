import asyncio
import base64
import io
import threading

import pytest
from PIL import Image

from broker.builtin_backend import DEFAULT_CHAT_MODEL, BuiltinBackend
from broker.errors import InvocationFailure, UnknownModel, UnsupportedOperation
from broker.governor import ResourceGovernor
from broker.provider_types import (
    CHAT,
    EMBED,
    IMAGE_TO_TEXT,
    AudioRequest,
    ChatMessage,
    ChatRequest,
    EmbedRequest,
    GenerateRequest,
    VisionRequest,
)
from tests.fakes import GIB, FakeClock, FakePipelineFactory, FakeTelemetry


def make_backend(tmp_path, factory=None, governor=None, clock=None) -> BuiltinBackend:
    return BuiltinBackend(
        cache_dir=str(tmp_path / "cache"),
        governor=governor,
        pipeline_factory=factory or FakePipelineFactory(),
        clock=clock or FakeClock(),
    )


def png_data_url() -> str:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), "red").save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.mark.asyncio
async def test_probe_is_available_with_injected_factory(tmp_path):
    backend = make_backend(tmp_path)
    assert await backend.probe() is True
    ids = {m.id for m in backend.status().models}
    assert DEFAULT_CHAT_MODEL in ids
    assert "transformers:all-MiniLM-L6-v2" in ids


@pytest.mark.asyncio
async def test_chat_loads_pipeline_once_and_tracks_memory(tmp_path):
    factory = FakePipelineFactory()
    governor = ResourceGovernor(FakeTelemetry(), max_budget_bytes=10 * GIB)
    backend = make_backend(tmp_path, factory, governor)

    request = ChatRequest(messages=[ChatMessage(role="system", content="be nice"), ChatMessage(content="hello")])
    first = await backend.chat(request)
    second = await backend.chat(request)

    assert first.text == "google/flan-t5-small says hi"
    assert second.model == DEFAULT_CHAT_MODEL
    assert len(factory.created) == 1
    assert factory.created[0].task == "text2text-generation"
    assert factory.created[0].calls[0]["args"] == ("hello",)
    assert governor.memory_usage(DEFAULT_CHAT_MODEL) == 146_000_000
    assert backend.pending_load_bytes(CHAT, None) == 0


@pytest.mark.asyncio
async def test_chat_with_unknown_model_falls_back(tmp_path):
    backend = make_backend(tmp_path)
    response = await backend.chat(ChatRequest(model="transformers:missing", messages=[ChatMessage(content="hi")]))
    assert response.model == "transformers:distilgpt2"


@pytest.mark.asyncio
async def test_generate_unknown_model_raises(tmp_path):
    backend = make_backend(tmp_path)
    with pytest.raises(UnknownModel):
        await backend.generate(GenerateRequest(prompt="hi", model="transformers:missing"))


@pytest.mark.asyncio
async def test_generate_strips_echoed_prompt(tmp_path):
    backend = make_backend(tmp_path)
    response = await backend.generate(GenerateRequest(prompt="openai-community/gpt2", model="transformers:gpt2"))
    assert response.response == "says hi"


@pytest.mark.asyncio
async def test_embed_mean_pools_and_normalizes(tmp_path):
    backend = make_backend(tmp_path)
    response = await backend.embed(EmbedRequest(text=["a", "b"]))
    assert len(response.embeddings) == 2
    for vector in response.embeddings:
        assert vector == pytest.approx([0.70710678, 0.70710678])
    assert backend.pending_load_bytes(EMBED, None) == 0


@pytest.mark.asyncio
async def test_vision_captions_data_url_image(tmp_path):
    backend = make_backend(tmp_path)
    response = await backend.vision(VisionRequest(image=png_data_url(), task=IMAGE_TO_TEXT))
    assert response.results == "a cat on a mat"
    assert response.model == "transformers:vit-gpt2-image-captioning"


@pytest.mark.asyncio
async def test_audio_transcription_returns_text_and_chunks(tmp_path):
    backend = make_backend(tmp_path)
    response = await backend.audio(AudioRequest(audio="data:audio/wav;base64,AAAA"))
    assert response.result == {"text": "hello world", "chunks": []}
    assert response.text == "hello world"


@pytest.mark.asyncio
async def test_pull_reports_progress_then_is_idempotent(tmp_path):
    factory = FakePipelineFactory()
    backend = make_backend(tmp_path, factory)
    events = []
    assert await backend.pull("transformers:flan-t5-small", events.append) is True
    assert [(e.phase, e.percent) for e in events] == [("downloading", 0), ("complete", 100)]

    events.clear()
    assert await backend.pull("flan-t5-small", events.append) is True
    assert [(e.phase, e.percent) for e in events] == [("complete", 100)]
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_pull_unknown_model_emits_error(tmp_path):
    backend = make_backend(tmp_path)
    events = []
    assert await backend.pull("transformers:nope", events.append) is False
    assert events[0].phase == "error"


@pytest.mark.asyncio
async def test_pull_failure_returns_false(tmp_path):
    backend = make_backend(tmp_path, FakePipelineFactory(fail=True))
    events = []
    assert await backend.pull("transformers:gpt2", events.append) is False
    assert events[-1].phase == "error"
    with pytest.raises(InvocationFailure):
        await backend.generate(GenerateRequest(prompt="hi", model="transformers:gpt2"))


@pytest.mark.asyncio
async def test_delete_removes_cache_directory(tmp_path):
    backend = make_backend(tmp_path)
    model_dir = tmp_path / "cache" / "models--google--flan-t5-small"
    (model_dir / "snapshots").mkdir(parents=True)
    (model_dir / "snapshots" / "weights.bin").write_bytes(b"0")
    assert backend.is_downloaded("transformers:flan-t5-small")

    assert await backend.delete("transformers:flan-t5-small") is True
    assert not model_dir.exists()
    assert await backend.delete("transformers:flan-t5-small") is False


@pytest.mark.asyncio
async def test_load_and_unload_update_governor(tmp_path):
    governor = ResourceGovernor(FakeTelemetry(), max_budget_bytes=10 * GIB)
    backend = make_backend(tmp_path, governor=governor)
    assert await backend.load("transformers:gpt2") is True
    assert governor.is_loaded("transformers:gpt2")
    assert await backend.unload("gpt2") is True
    assert not governor.is_loaded("transformers:gpt2")
    assert await backend.unload("gpt2") is False
    assert await backend.load("transformers:nope") is False


@pytest.mark.asyncio
async def test_custom_model_registration(tmp_path):
    factory = FakePipelineFactory()
    backend = make_backend(tmp_path, factory)
    model = backend.add_custom_model("acme/tiny-chat", "Tiny Chat", [CHAT], "text-generation")
    assert model.id == "transformers:acme/tiny-chat"
    assert backend.get_model("acme/tiny-chat") is model

    await backend.generate(GenerateRequest(prompt="x", model="transformers:acme/tiny-chat"))
    assert factory.created[-1].model == "acme/tiny-chat"

    assert backend.remove_custom_model("acme/tiny-chat") is True
    assert backend.get_model("acme/tiny-chat") is None
    assert backend.remove_custom_model("acme/tiny-chat") is False



@pytest.mark.asyncio
async def test_generate_with_image_runs_captioning_model(tmp_path):
    factory = FakePipelineFactory()
    backend = make_backend(tmp_path, factory)
    response = await backend.generate(GenerateRequest(prompt="What is shown?", images=[png_data_url()]))
    assert response.response == "a cat on a mat"
    assert response.model == "transformers:vit-gpt2-image-captioning"
    assert [p.task for p in factory.created] == ["image-to-text"]


@pytest.mark.asyncio
async def test_generate_with_image_rejects_text_only_model(tmp_path):
    factory = FakePipelineFactory()
    backend = make_backend(tmp_path, factory)
    with pytest.raises(UnsupportedOperation):
        await backend.generate(
            GenerateRequest(prompt="describe", images=[png_data_url()], model="transformers:flan-t5-small")
        )
    assert factory.created == []


class GatedFactory(FakePipelineFactory):
    """Holds creation of one model until `release` is set."""

    def __init__(self, slow_model: str) -> None:
        super().__init__()
        self.slow_model = slow_model
        self.release = threading.Event()

    def __call__(self, task, model, **kwargs):
        if model == self.slow_model:
            self.release.wait(5)
        return super().__call__(task, model, **kwargs)


@pytest.mark.asyncio
async def test_slow_load_does_not_block_loaded_model(tmp_path):
    factory = GatedFactory("openai-community/gpt2")
    backend = make_backend(tmp_path, factory)
    assert await backend.load("transformers:distilgpt2") is True

    slow = asyncio.create_task(backend.load("transformers:gpt2"))
    await asyncio.sleep(0)
    try:
        response = await asyncio.wait_for(
            backend.generate(GenerateRequest(prompt="p", model="transformers:distilgpt2")), timeout=1
        )
        assert response.response == "distilbert/distilgpt2 says hi"
        assert not slow.done()
    finally:
        factory.release.set()
    assert await slow is True


@pytest.mark.asyncio
async def test_concurrent_loads_create_one_pipeline(tmp_path):
    factory = GatedFactory("openai-community/gpt2")
    backend = make_backend(tmp_path, factory)
    first = asyncio.create_task(backend.load("transformers:gpt2"))
    second = asyncio.create_task(backend.load("gpt2"))
    await asyncio.sleep(0)
    factory.release.set()
    assert await asyncio.gather(first, second) == [True, True]
    assert [p.model for p in factory.created] == ["openai-community/gpt2"]
