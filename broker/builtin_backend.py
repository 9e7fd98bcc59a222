import asyncio
import base64
import importlib.util
import io
import logging
import math
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from PIL import Image

from .errors import InvocationFailure, UnknownModel, UnsupportedOperation
from .governor import ResourceGovernor
from .hardware import HardwareTier
from .provider_types import (
    AUDIO_CLASSIFICATION,
    AVAILABLE,
    CHAT,
    CHECKING,
    CLASSIFY,
    DEPTH_ESTIMATION,
    EMBED,
    GENERATE,
    IMAGE_CLASSIFICATION,
    IMAGE_TO_TEXT,
    OBJECT_DETECTION,
    OP_AUDIO,
    OP_CHAT,
    OP_DELETE,
    OP_EMBED,
    OP_GENERATE,
    OP_LOAD,
    OP_PULL,
    OP_UNLOAD,
    OP_VISION,
    PHASE_COMPLETE,
    PHASE_DOWNLOADING,
    PHASE_ERROR,
    QUESTION_ANSWERING,
    SPEECH_TO_TEXT,
    SUMMARIZE,
    TEXT_CLASSIFICATION,
    TRANSLATE,
    UNAVAILABLE,
    ZERO_SHOT_CLASSIFICATION,
    AudioRequest,
    AudioResponse,
    ChatRequest,
    ChatResponse,
    EmbedRequest,
    EmbedResponse,
    GenerateRequest,
    GenerateResponse,
    ModelDescriptor,
    ProgressCallback,
    ProviderStatus,
    PullProgress,
    VisionRequest,
    VisionResponse,
    emit_progress,
    format_size,
    recommend_from_registry,
    strip_prefix,
)

logger = logging.getLogger("uvicorn.error")

PipelineFactory = Callable[..., Any]

SUPPORTED_CAPABILITIES = frozenset(
    {
        CHAT,
        GENERATE,
        EMBED,
        SUMMARIZE,
        CLASSIFY,
        IMAGE_CLASSIFICATION,
        OBJECT_DETECTION,
        DEPTH_ESTIMATION,
        IMAGE_TO_TEXT,
        SPEECH_TO_TEXT,
        AUDIO_CLASSIFICATION,
        TEXT_CLASSIFICATION,
        ZERO_SHOT_CLASSIFICATION,
        TRANSLATE,
        QUESTION_ANSWERING,
    }
)

DEFAULT_CHAT_MODEL = "transformers:flan-t5-small"
DEFAULT_EMBED_MODEL = "transformers:all-MiniLM-L6-v2"
VISION_TASK_MODELS = {
    IMAGE_CLASSIFICATION: "transformers:vit-base-patch16-224",
    OBJECT_DETECTION: "transformers:yolos-tiny",
    DEPTH_ESTIMATION: "transformers:depth-anything-small",
    IMAGE_TO_TEXT: "transformers:vit-gpt2-image-captioning",
}
AUDIO_TASK_MODELS = {
    SPEECH_TO_TEXT: "transformers:whisper-tiny.en",
    AUDIO_CLASSIFICATION: "transformers:whisper-tiny.en",
}


@dataclass
class BuiltinModel:
    id: str
    hf_id: str
    name: str
    size_bytes: int
    capabilities: List[str]
    tier: HardwareTier
    pipeline_task: str
    description: str = ""
    custom: bool = False

    def descriptor(self, *, installed: bool = False, loaded: bool = False) -> ModelDescriptor:
        return ModelDescriptor(
            id=self.id,
            name=self.name,
            provider="transformers",
            size_bytes=self.size_bytes,
            size_label=format_size(self.size_bytes) if self.size_bytes else "Unknown",
            capabilities=list(self.capabilities),
            tier=self.tier,
            is_local=True,
            is_installed=installed,
            is_loaded=loaded,
            description=self.description,
            hugging_face_id=self.hf_id,
        )


def _entry(
    short: str,
    hf_id: str,
    name: str,
    size_mb: int,
    capabilities: List[str],
    tier: HardwareTier,
    task: str,
    description: str,
) -> BuiltinModel:
    return BuiltinModel(
        id=f"transformers:{short}",
        hf_id=hf_id,
        name=name,
        size_bytes=size_mb * 1_000_000,
        capabilities=capabilities,
        tier=tier,
        pipeline_task=task,
        description=description,
    )


LEAN = HardwareTier.LEAN
STEADY = HardwareTier.STEADY

BUILTIN_MODELS: List[BuiltinModel] = [
    _entry("distilgpt2", "distilbert/distilgpt2", "DistilGPT2", 130, [GENERATE, CHAT], LEAN, "text-generation", "Small, fast text generation"),
    _entry("flan-t5-small", "google/flan-t5-small", "Flan-T5 Small", 146, [GENERATE, CHAT, SUMMARIZE, QUESTION_ANSWERING], LEAN, "text2text-generation", "Instruction-tuned text-to-text model"),
    _entry("gpt2", "openai-community/gpt2", "GPT-2", 548, [GENERATE, CHAT], STEADY, "text-generation", "Classic GPT-2 text generation"),
    _entry("LaMini-Flan-T5-248M", "MBZUAI/LaMini-Flan-T5-248M", "LaMini Flan-T5", 260, [GENERATE, CHAT, SUMMARIZE, QUESTION_ANSWERING], LEAN, "text2text-generation", "Distilled instruction-following model"),
    _entry("all-MiniLM-L6-v2", "sentence-transformers/all-MiniLM-L6-v2", "MiniLM Embeddings", 23, [EMBED], LEAN, "feature-extraction", "Fast sentence embeddings"),
    _entry("bge-small-en-v1.5", "BAAI/bge-small-en-v1.5", "BGE Small Embeddings", 33, [EMBED], LEAN, "feature-extraction", "High quality English embeddings"),
    _entry("whisper-tiny.en", "openai/whisper-tiny.en", "Whisper Tiny (English)", 150, [SPEECH_TO_TEXT], LEAN, "automatic-speech-recognition", "English speech recognition"),
    _entry("whisper-small", "openai/whisper-small", "Whisper Small", 460, [SPEECH_TO_TEXT], STEADY, "automatic-speech-recognition", "Multilingual speech recognition"),
    _entry("vit-base-patch16-224", "google/vit-base-patch16-224", "ViT Image Classifier", 350, [IMAGE_CLASSIFICATION], LEAN, "image-classification", "ImageNet image classification"),
    _entry("resnet-50", "microsoft/resnet-50", "ResNet-50 Classifier", 100, [IMAGE_CLASSIFICATION], LEAN, "image-classification", "Lightweight image classification"),
    _entry("detr-resnet-50", "facebook/detr-resnet-50", "DETR Object Detection", 160, [OBJECT_DETECTION], STEADY, "object-detection", "Object detection with bounding boxes"),
    _entry("yolos-tiny", "hustvl/yolos-tiny", "YOLOS Tiny Detection", 28, [OBJECT_DETECTION], LEAN, "object-detection", "Very small object detector"),
    _entry("depth-anything-small", "LiheYoung/depth-anything-small-hf", "Depth Anything Small", 100, [DEPTH_ESTIMATION], LEAN, "depth-estimation", "Monocular depth estimation"),
    _entry("dpt-large", "Intel/dpt-large", "DPT Large Depth", 320, [DEPTH_ESTIMATION], STEADY, "depth-estimation", "Higher quality depth estimation"),
    _entry("vit-gpt2-image-captioning", "nlpconnect/vit-gpt2-image-captioning", "ViT-GPT2 Image Captioning", 500, [IMAGE_TO_TEXT], STEADY, "image-to-text", "Image captioning"),
    _entry("distilbert-base-uncased-finetuned-sst-2-english", "distilbert/distilbert-base-uncased-finetuned-sst-2-english", "DistilBERT Sentiment", 67, [TEXT_CLASSIFICATION, CLASSIFY], LEAN, "text-classification", "Sentiment analysis"),
    _entry("bart-large-mnli", "facebook/bart-large-mnli", "BART Zero-Shot", 400, [ZERO_SHOT_CLASSIFICATION], STEADY, "zero-shot-classification", "Zero-shot text classification"),
    _entry("distilbart-cnn-6-6", "sshleifer/distilbart-cnn-6-6", "DistilBART Summarizer", 230, [SUMMARIZE], LEAN, "summarization", "News-style summarization"),
    _entry("nllb-200-distilled-600M", "facebook/nllb-200-distilled-600M", "NLLB Translation", 600, [TRANSLATE], STEADY, "translation", "Translation across 200 languages"),
]


def _default_pipeline_factory(task: str, model: str, **kwargs: Any) -> Any:
    from transformers import pipeline  # type: ignore

    return pipeline(task, model=model, **kwargs)


def _cache_dir_name(hf_id: str) -> str:
    return "models--" + hf_id.replace("/", "--")


def _first(output: Any) -> Dict[str, Any]:
    if isinstance(output, list) and output:
        item = output[0]
        if isinstance(item, list) and item:
            item = item[0]
        if isinstance(item, dict):
            return item
    if isinstance(output, dict):
        return output
    return {}


def _mean_pool(output: Any) -> List[float]:
    """Mean-pool token vectors from a feature-extraction output, then L2-normalize."""
    rows = output
    while isinstance(rows, list) and rows and isinstance(rows[0], list) and rows[0] and isinstance(rows[0][0], list):
        rows = rows[0]
    if not rows:
        return []
    if not isinstance(rows[0], list):
        vector = [float(v) for v in rows]
    else:
        width = len(rows[0])
        vector = [sum(float(row[i]) for row in rows) / len(rows) for i in range(width)]
    norm = math.sqrt(sum(v * v for v in vector))
    if norm > 0:
        vector = [v / norm for v in vector]
    return vector


def _decode_data_url(value: str) -> bytes:
    return base64.b64decode(value.split(",", 1)[1])


def _image_input(image: str) -> Any:
    if image.startswith("data:"):
        return Image.open(io.BytesIO(_decode_data_url(image))).convert("RGB")
    return image


def _image_to_data_url(img: Any) -> str:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def _audio_input(audio: str) -> Any:
    if audio.startswith("data:"):
        return _decode_data_url(audio)
    return audio


class BuiltinBackend:
    """Runs small Hugging Face models in-process through `transformers` pipelines."""

    kind = "transformers"
    name = "Built-in Models"
    is_local = True
    operations = frozenset({OP_CHAT, OP_GENERATE, OP_EMBED, OP_VISION, OP_AUDIO, OP_PULL, OP_DELETE, OP_LOAD, OP_UNLOAD})
    # pull creates the pipeline
    loads_on_pull = True

    def __init__(
        self,
        *,
        cache_dir: str = "model-cache",
        device: Optional[str] = None,
        governor: Optional[ResourceGovernor] = None,
        pipeline_factory: Optional[PipelineFactory] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.device = device
        self.governor = governor
        self.tier = HardwareTier.STEADY
        self._factory = pipeline_factory
        self._clock = clock
        self._pipelines: Dict[str, Dict[str, Any]] = {}
        self._custom: List[BuiltinModel] = []
        self._downloading: Dict[str, int] = {}
        self._load_locks: Dict[str, asyncio.Lock] = {}
        self._status = ProviderStatus(kind=self.kind, name=self.name, availability=CHECKING)

    # Registry

    def all_models(self) -> List[BuiltinModel]:
        return [*BUILTIN_MODELS, *self._custom]

    def get_model(self, model_id: str) -> Optional[BuiltinModel]:
        full_id = model_id if model_id.startswith("transformers:") else f"transformers:{model_id}"
        for model in self.all_models():
            if model.id == full_id:
                return model
        for model in self.all_models():
            if model.hf_id == model_id:
                return model
        return None

    def default_chat_model(self) -> Optional[BuiltinModel]:
        candidates = [m for m in self.all_models() if CHAT in m.capabilities or GENERATE in m.capabilities]
        for model in candidates:
            if model.tier == HardwareTier.LEAN:
                return model
        return candidates[0] if candidates else None

    def add_custom_model(
        self,
        hf_id: str,
        name: str,
        capabilities: List[str],
        pipeline_task: Optional[str] = None,
    ) -> BuiltinModel:
        model = BuiltinModel(
            id=f"transformers:{hf_id}",
            hf_id=hf_id,
            name=name,
            size_bytes=0,
            capabilities=list(capabilities),
            tier=HardwareTier.STEADY,
            pipeline_task=pipeline_task or "text-generation",
            description=f"Custom model: {hf_id}",
            custom=True,
        )
        self._custom = [m for m in self._custom if m.id != model.id] + [model]
        self._refresh_status()
        return model

    def remove_custom_model(self, hf_id: str) -> bool:
        remaining = [m for m in self._custom if m.hf_id != hf_id]
        removed = len(remaining) != len(self._custom)
        self._custom = remaining
        if removed:
            self._refresh_status()
        return removed

    def is_downloaded(self, model_id: str) -> bool:
        model = self.get_model(model_id)
        if model is None:
            return False
        path = self.cache_dir / _cache_dir_name(model.hf_id)
        try:
            return path.is_dir() and any(path.iterdir())
        except OSError:
            return False

    def _descriptors(self) -> List[ModelDescriptor]:
        return [
            m.descriptor(installed=m.id in self._pipelines or self.is_downloaded(m.id), loaded=m.id in self._pipelines)
            for m in self.all_models()
        ]

    # Status

    def _runtime_available(self) -> bool:
        if self._factory is not None:
            return True
        return importlib.util.find_spec("transformers") is not None

    def _refresh_status(self, availability: Optional[str] = None, error: Optional[str] = None) -> None:
        progress = max(self._downloading.values()) if self._downloading else None
        self._status = ProviderStatus(
            kind=self.kind,
            name=self.name,
            availability=availability or self._status.availability,
            last_error=error if availability else self._status.last_error,
            models=tuple(self._descriptors()),
            download_progress=progress,
        )

    def status(self) -> ProviderStatus:
        return self._status

    async def probe(self) -> bool:
        if self._runtime_available():
            self._refresh_status(AVAILABLE, None)
            return True
        self._refresh_status(UNAVAILABLE, "transformers is not installed")
        return False

    async def list_models(self) -> List[ModelDescriptor]:
        await self.probe()
        return self._descriptors()

    def supports_capability(self, capability: str) -> bool:
        return capability in SUPPORTED_CAPABILITIES

    def recommend_model(self, capability: str, tier: HardwareTier) -> Optional[ModelDescriptor]:
        choice = recommend_from_registry(self._descriptors(), capability, tier)
        return choice

    def _resolve_id(self, capability: str, model_id: Optional[str]) -> Optional[str]:
        if model_id:
            return model_id
        if capability in VISION_TASK_MODELS:
            return VISION_TASK_MODELS[capability]
        if capability in AUDIO_TASK_MODELS:
            return AUDIO_TASK_MODELS[capability]
        if capability == EMBED:
            return DEFAULT_EMBED_MODEL
        return DEFAULT_CHAT_MODEL

    def pending_load_bytes(self, capability: str, model_id: Optional[str]) -> int:
        resolved = self._resolve_id(capability, model_id)
        model = self.get_model(resolved) if resolved else None
        if model is None or model.id in self._pipelines:
            return 0
        return model.size_bytes

    # Pipelines

    def _create_pipeline(self, model: BuiltinModel) -> Any:
        kwargs: Dict[str, Any] = {}
        if self.device:
            kwargs["device"] = self.device
        if self._factory is not None:
            return self._factory(model.pipeline_task, model=model.hf_id, **kwargs)
        os.environ.setdefault("HF_HUB_CACHE", str(self.cache_dir.resolve()))
        return _default_pipeline_factory(model.pipeline_task, model.hf_id, **kwargs)

    def _touch(self, model_id: str) -> Any:
        cached = self._pipelines.get(model_id)
        if cached is None:
            return None
        self._pipelines = {**self._pipelines, model_id: {**cached, "last_used": self._clock()}}
        if self.governor is not None:
            self.governor.track_used(model_id)
        return cached["pipeline"]

    async def _get_pipeline(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> Any:
        model = self.get_model(model_id)
        if model is None:
            raise UnknownModel(f"Unknown model: {model_id}", backend=self.kind)
        cached = self._touch(model.id)
        if cached is not None:
            return cached
        lock = self._load_locks.get(model.id)
        if lock is None:
            lock = asyncio.Lock()
            self._load_locks = {**self._load_locks, model.id: lock}
        # loads serialize per model only
        async with lock:
            cached = self._touch(model.id)
            if cached is not None:
                return cached
            self._downloading = {**self._downloading, model.id: 0}
            self._refresh_status()
            await emit_progress(on_progress, PullProgress(model.id, self.kind, 0, PHASE_DOWNLOADING))
            try:
                pipe = await asyncio.to_thread(self._create_pipeline, model)
            except Exception as exc:
                self._downloading = {k: v for k, v in self._downloading.items() if k != model.id}
                self._refresh_status()
                await emit_progress(on_progress, PullProgress(model.id, self.kind, 0, PHASE_ERROR, str(exc)))
                raise InvocationFailure(f"Failed to load {model.name}: {exc}", backend=self.kind) from exc
            self._pipelines = {
                **self._pipelines,
                model.id: {"pipeline": pipe, "task": model.pipeline_task, "last_used": self._clock()},
            }
            self._downloading = {k: v for k, v in self._downloading.items() if k != model.id}
            if self.governor is not None:
                self.governor.track_loaded(model.id, self.kind, model.size_bytes)
            self._refresh_status()
        await emit_progress(on_progress, PullProgress(model.id, self.kind, 100, PHASE_COMPLETE))
        return pipe

    async def _run(self, pipe: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(pipe, *args, **kwargs)
        except Exception as exc:
            raise InvocationFailure(f"Built-in model failed: {exc}", backend=self.kind) from exc

    # Capability calls

    async def chat(self, request: ChatRequest) -> ChatResponse:
        requested = request.model or DEFAULT_CHAT_MODEL
        model = self.get_model(requested)
        if model is None:
            model = self.default_chat_model()
            if model is None:
                names = ", ".join(m.name for m in self.all_models())
                raise UnknownModel(f'Model "{requested}" not found. Available models: {names}', backend=self.kind)
            logger.info("Built-in model %s not found, falling back to %s", requested, model.name)
        prompt = ""
        for message in request.messages:
            if message.role in ("system", "user", "assistant"):
                prompt += f"{message.role.capitalize()}: {message.content}\n"
        prompt += "Assistant:"
        pipe = await self._get_pipeline(model.id)
        started = time.monotonic()
        max_tokens = request.max_tokens or 256
        temperature = request.temperature if request.temperature is not None else 0.7
        if model.pipeline_task == "text2text-generation":
            last_user = next((m for m in reversed(request.messages) if m.role == "user"), None)
            output = await self._run(pipe, last_user.content if last_user else prompt, max_new_tokens=max_tokens)
            item = _first(output)
            text = str(item.get("generated_text") or item.get("text") or "")
        else:
            output = await self._run(
                pipe, prompt, max_new_tokens=max_tokens, temperature=temperature, do_sample=True
            )
            text = str(_first(output).get("generated_text") or "")
            if text.startswith(prompt):
                text = text[len(prompt):].strip()
        return ChatResponse(
            model=model.id,
            provider=self.kind,
            message={"role": "assistant", "content": text},
            total_duration_ms=(time.monotonic() - started) * 1000.0,
        )

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        if request.images:
            return await self._describe_image(request)
        model_id = request.model or DEFAULT_CHAT_MODEL
        model = self.get_model(model_id)
        if model is None:
            raise UnknownModel(f"Unknown model: {model_id}", backend=self.kind)
        pipe = await self._get_pipeline(model.id)
        started = time.monotonic()
        max_tokens = request.max_tokens or 256
        temperature = request.temperature if request.temperature is not None else 0.7
        if model.pipeline_task == "text2text-generation":
            item = _first(await self._run(pipe, request.prompt, max_new_tokens=max_tokens))
            text = str(item.get("generated_text") or item.get("text") or "")
        elif model.pipeline_task == "summarization":
            item = _first(await self._run(pipe, request.prompt, max_length=request.max_tokens or 150, min_length=30))
            text = str(item.get("summary_text") or "")
        else:
            item = _first(
                await self._run(pipe, request.prompt, max_new_tokens=max_tokens, temperature=temperature, do_sample=True)
            )
            text = str(item.get("generated_text") or "")
            if text.startswith(request.prompt):
                text = text[len(request.prompt):].strip()
        return GenerateResponse(
            model=model.id,
            provider=self.kind,
            response=text,
            total_duration_ms=(time.monotonic() - started) * 1000.0,
        )

    async def _describe_image(self, request: GenerateRequest) -> GenerateResponse:
        model_id = request.model or VISION_TASK_MODELS[IMAGE_TO_TEXT]
        model = self.get_model(model_id)
        if model is None or IMAGE_TO_TEXT not in model.capabilities:
            raise UnsupportedOperation(f"Model {model_id} cannot describe images", backend=self.kind)
        started = time.monotonic()
        described = await self.vision(
            VisionRequest(model=model.id, image=request.images[0], task=IMAGE_TO_TEXT, prompt=request.prompt)
        )
        return GenerateResponse(
            model=model.id,
            provider=self.kind,
            response=str(described.results),
            total_duration_ms=(time.monotonic() - started) * 1000.0,
        )

    async def embed(self, request: EmbedRequest) -> EmbedResponse:
        model_id = request.model or DEFAULT_EMBED_MODEL
        model = self.get_model(model_id)
        if model is None or EMBED not in model.capabilities:
            raise UnsupportedOperation(f"Model {model_id} does not support embeddings", backend=self.kind)
        pipe = await self._get_pipeline(model.id)
        embeddings = [_mean_pool(await self._run(pipe, text)) for text in request.texts()]
        return EmbedResponse(model=model.id, provider=self.kind, embeddings=embeddings)

    async def vision(self, request: VisionRequest) -> VisionResponse:
        model_id = request.model or VISION_TASK_MODELS.get(request.task) or VISION_TASK_MODELS[IMAGE_CLASSIFICATION]
        model = self.get_model(model_id)
        if model is None:
            raise UnknownModel(f"Unknown model: {model_id}", backend=self.kind)
        if request.task not in VISION_TASK_MODELS:
            raise UnsupportedOperation(f"Unsupported vision task: {request.task}", backend=self.kind)
        pipe = await self._get_pipeline(model.id)
        output = await self._run(pipe, _image_input(request.image))
        results: Any
        if request.task == IMAGE_CLASSIFICATION:
            results = [{"label": r.get("label"), "score": round(float(r.get("score") or 0), 3)} for r in output or []]
        elif request.task == OBJECT_DETECTION:
            results = [
                {"label": r.get("label"), "score": round(float(r.get("score") or 0), 3), "box": r.get("box")}
                for r in output or []
            ]
        elif request.task == DEPTH_ESTIMATION:
            depth = output.get("depth") if isinstance(output, dict) else None
            results = _image_to_data_url(depth) if depth is not None else output
        else:
            results = str(_first(output).get("generated_text") or "")
        return VisionResponse(model=model.id, provider=self.kind, task=request.task, results=results)

    async def audio(self, request: AudioRequest) -> AudioResponse:
        model_id = request.model or AUDIO_TASK_MODELS.get(request.task) or AUDIO_TASK_MODELS[SPEECH_TO_TEXT]
        model = self.get_model(model_id)
        if model is None:
            raise UnknownModel(f"Unknown model: {model_id}", backend=self.kind)
        pipe = await self._get_pipeline(model.id)
        if request.task == SPEECH_TO_TEXT:
            output = await self._run(pipe, _audio_input(request.audio), return_timestamps=True)
            output = output if isinstance(output, dict) else {"text": str(output)}
            result: Any = {
                "text": output.get("text", ""),
                "chunks": [
                    {"text": c.get("text"), "timestamp": c.get("timestamp")} for c in output.get("chunks") or []
                ],
            }
        elif request.task == AUDIO_CLASSIFICATION:
            result = await self._run(pipe, _audio_input(request.audio))
        else:
            raise UnsupportedOperation(f"Unsupported audio task: {request.task}", backend=self.kind)
        return AudioResponse(model=model.id, provider=self.kind, task=request.task, result=result)

    # Lifecycle

    async def pull(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> bool:
        model = self.get_model(model_id)
        if model is None:
            await emit_progress(on_progress, PullProgress(model_id, self.kind, 0, PHASE_ERROR, f"Unknown model: {model_id}"))
            return False
        if model.id in self._pipelines or self.is_downloaded(model.id):
            await emit_progress(on_progress, PullProgress(model.id, self.kind, 100, PHASE_COMPLETE))
            return True
        try:
            await self._get_pipeline(model.id, on_progress)
        except InvocationFailure as exc:
            logger.warning("Built-in pull %s failed: %s", model.id, exc.message)
            return False
        return True

    async def delete(self, model_id: str) -> bool:
        model = self.get_model(model_id)
        if model is None:
            return False
        await self.unload(model.id)
        path = self.cache_dir / _cache_dir_name(model.hf_id)
        if not path.exists():
            logger.warning("Built-in model directory not found: %s", path)
            return False
        await asyncio.to_thread(shutil.rmtree, path, True)
        self._refresh_status()
        logger.info("Deleted built-in model %s", model.id)
        return True

    async def load(self, model_id: str) -> bool:
        try:
            await self._get_pipeline(model_id)
        except (InvocationFailure, UnknownModel) as exc:
            logger.warning("Built-in load %s failed: %s", model_id, exc.message)
            return False
        return True

    async def unload(self, model_id: str) -> bool:
        full_id = f"transformers:{strip_prefix(model_id, self.kind)}"
        existed = full_id in self._pipelines
        if existed:
            self._pipelines = {k: v for k, v in self._pipelines.items() if k != full_id}
            if self.governor is not None:
                self.governor.track_unloaded(full_id)
            self._refresh_status()
        return existed

    async def close(self) -> None:
        self._pipelines = {}
