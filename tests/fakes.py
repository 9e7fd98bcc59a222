import json
from typing import Any, Dict, List, Optional

from broker.errors import InvocationFailure
from broker.hardware import HardwareTier
from broker.provider_types import (
    AVAILABLE,
    CHAT,
    EMBED,
    GENERATE,
    IMAGE_TO_TEXT,
    OP_AUDIO,
    OP_CHAT,
    OP_DELETE,
    OP_EMBED,
    OP_GENERATE,
    OP_IMAGE_GEN,
    OP_LOAD,
    OP_PULL,
    OP_UNLOAD,
    OP_VISION,
    PHASE_COMPLETE,
    PHASE_DOWNLOADING,
    UNAVAILABLE,
    AudioResponse,
    ChatResponse,
    EmbedResponse,
    GenerateResponse,
    ImageGenResponse,
    ModelDescriptor,
    ProviderStatus,
    PullProgress,
    VisionResponse,
    emit_progress,
    recommend_from_registry,
)

GIB = 1024 * 1024 * 1024

ALL_OPERATIONS = frozenset(
    {OP_CHAT, OP_GENERATE, OP_EMBED, OP_VISION, OP_AUDIO, OP_IMAGE_GEN, OP_PULL, OP_DELETE, OP_LOAD, OP_UNLOAD}
)


class FakeTelemetry:
    def __init__(
        self,
        total_gb: float = 16,
        available_gb: float = 8,
        gpus: Optional[List[Dict[str, Any]]] = None,
        cpu_pct: float = 12.5,
    ) -> None:
        self.total_gb = total_gb
        self.available_gb = available_gb
        self.gpu_list = gpus or []
        self.cpu_pct = cpu_pct
        self.calls = 0

    def gpus(self) -> List[Dict[str, Any]]:
        return list(self.gpu_list)

    def snapshot(self) -> Dict[str, Any]:
        self.calls += 1
        total = int(self.total_gb * GIB)
        available = int(self.available_gb * GIB)
        return {
            "cpu": {"usage_pct": self.cpu_pct},
            "ram": {
                "total_bytes": total,
                "used_bytes": total - available,
                "free_bytes": available,
                "available_bytes": available,
                "used_pct": round((total - available) / total * 100, 2) if total else 0.0,
            },
            "gpus": self.gpus(),
            "captured_at": "2026-01-01T00:00:00Z",
        }


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory backend that records every call and answers with canned text."""

    def __init__(
        self,
        kind: str,
        *,
        available: bool = True,
        capabilities: Optional[List[str]] = None,
        operations: Optional[frozenset] = None,
        models: Optional[List[ModelDescriptor]] = None,
        load_bytes: int = 0,
        loads_on_pull: bool = False,
        governor: Any = None,
        reply: str = "ok",
        fail_with: Optional[str] = None,
    ) -> None:
        self.kind = kind
        self.name = kind.title()
        self.is_local = True
        self.tier = HardwareTier.STEADY
        self.operations = operations if operations is not None else ALL_OPERATIONS
        self.capabilities = set(capabilities if capabilities is not None else [CHAT, GENERATE, EMBED, IMAGE_TO_TEXT])
        self.models = models or [
            ModelDescriptor(id=f"{kind}:small", name="small", provider=kind, capabilities=sorted(self.capabilities))
        ]
        self.load_bytes = load_bytes
        self.loads_on_pull = loads_on_pull
        self.governor = governor
        self.reply = reply
        self.fail_with = fail_with
        self.available = available
        self.probe_count = 0
        self.calls: List[Dict[str, Any]] = []
        self.unloaded: List[str] = []
        self.closed = False
        self._status = ProviderStatus(kind=kind, name=self.name)

    def status(self) -> ProviderStatus:
        return self._status

    async def probe(self) -> bool:
        self.probe_count += 1
        self._status = ProviderStatus(
            kind=self.kind,
            name=self.name,
            availability=AVAILABLE if self.available else UNAVAILABLE,
            last_error=None if self.available else f"{self.name} is not running",
            models=tuple(self.models),
        )
        return self.available

    async def list_models(self) -> List[ModelDescriptor]:
        return list(self.models)

    def supports_capability(self, capability: str) -> bool:
        return capability in self.capabilities

    def recommend_model(self, capability: str, tier: HardwareTier) -> Optional[ModelDescriptor]:
        return recommend_from_registry(self.models, capability, tier)

    def pending_load_bytes(self, capability: str, model_id: Optional[str]) -> int:
        key = model_id or f"{self.kind}:default"
        if self.governor is not None and self.governor.is_loaded(key):
            return 0
        return self.load_bytes

    def _record(self, operation: str, request: Any) -> str:
        self.calls.append({"operation": operation, "request": request})
        if self.fail_with:
            raise InvocationFailure(self.fail_with, backend=self.kind)
        model = request.model or f"{self.kind}:default"
        if self.governor is not None and self.load_bytes:
            self.governor.track_loaded(model, self.kind, self.load_bytes)
        return model

    async def chat(self, request: Any) -> ChatResponse:
        model = self._record(OP_CHAT, request)
        last = request.messages[-1].content if request.messages else ""
        return ChatResponse(model=model, provider=self.kind, message={"role": "assistant", "content": f"{self.reply}:{last}"})

    async def generate(self, request: Any) -> GenerateResponse:
        model = self._record(OP_GENERATE, request)
        return GenerateResponse(model=model, provider=self.kind, response=f"{self.reply}:{request.prompt}")

    async def embed(self, request: Any) -> EmbedResponse:
        model = self._record(OP_EMBED, request)
        return EmbedResponse(model=model, provider=self.kind, embeddings=[[0.1, 0.2] for _ in request.texts()])

    async def vision(self, request: Any) -> VisionResponse:
        model = self._record(OP_VISION, request)
        return VisionResponse(model=model, provider=self.kind, task=request.task, results=f"{self.reply}:image")

    async def audio(self, request: Any) -> AudioResponse:
        model = self._record(OP_AUDIO, request)
        return AudioResponse(model=model, provider=self.kind, task=request.task, result={"text": f"{self.reply}:audio"})

    async def image_gen(self, request: Any) -> ImageGenResponse:
        model = self._record(OP_IMAGE_GEN, request)
        return ImageGenResponse(model=model, provider=self.kind, image="data:image/png;base64,AAAA")

    async def pull(self, model_id: str, on_progress: Any = None) -> bool:
        self.calls.append({"operation": OP_PULL, "model_id": model_id})
        await emit_progress(on_progress, PullProgress(model_id, self.kind, 50, PHASE_DOWNLOADING))
        await emit_progress(on_progress, PullProgress(model_id, self.kind, 100, PHASE_COMPLETE))
        return True

    async def delete(self, model_id: str) -> bool:
        self.calls.append({"operation": OP_DELETE, "model_id": model_id})
        return True

    async def load(self, model_id: str) -> bool:
        self.calls.append({"operation": OP_LOAD, "model_id": model_id})
        if self.governor is not None:
            self.governor.track_loaded(model_id, self.kind, self.load_bytes)
        return True

    async def unload(self, model_id: str) -> bool:
        self.unloaded.append(model_id)
        if self.governor is not None:
            self.governor.track_unloaded(model_id)
        return True

    async def close(self) -> None:
        self.closed = True


class FakePipeline:
    def __init__(self, task: str, model: str, output: Any = None) -> None:
        self.task = task
        self.model = model
        self.output = output
        self.calls: List[Any] = []

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        self.calls.append({"args": args, "kwargs": kwargs})
        if self.output is not None:
            return self.output
        if self.task == "feature-extraction":
            return [[[1.0, 0.0], [0.0, 1.0]]]
        if self.task in ("text2text-generation", "text-generation", "summarization"):
            key = "summary_text" if self.task == "summarization" else "generated_text"
            return [{key: f"{self.model} says hi"}]
        if self.task == "automatic-speech-recognition":
            return {"text": "hello world"}
        if self.task == "image-to-text":
            return [{"generated_text": "a cat on a mat"}]
        return [{"label": "cat", "score": 0.9}]


class FakePipelineFactory:
    def __init__(self, fail: bool = False) -> None:
        self.created: List[FakePipeline] = []
        self.fail = fail

    def __call__(self, task: str, model: str, **kwargs: Any) -> FakePipeline:
        if self.fail:
            raise RuntimeError(f"cannot load {model}")
        pipe = FakePipeline(task, model)
        self.created.append(pipe)
        return pipe


def sse_events(body: str) -> List[Dict[str, Any]]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]
