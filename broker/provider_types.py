import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Union

from pydantic import BaseModel, Field

from .hardware import HardwareTier

# Capability names
CHAT = "chat"
GENERATE = "generate"
EMBED = "embed"
SUMMARIZE = "summarize"
TRANSLATE = "translate"
QUESTION_ANSWERING = "question-answering"
ZERO_SHOT_CLASSIFICATION = "zero-shot-classification"
TEXT_CLASSIFICATION = "text-classification"
TOKEN_CLASSIFICATION = "token-classification"
CLASSIFY = "classify"
IMAGE_CLASSIFICATION = "image-classification"
OBJECT_DETECTION = "object-detection"
IMAGE_SEGMENTATION = "image-segmentation"
DEPTH_ESTIMATION = "depth-estimation"
IMAGE_TO_TEXT = "image-to-text"
SPEECH_TO_TEXT = "speech-to-text"
TEXT_TO_SPEECH = "text-to-speech"
AUDIO_CLASSIFICATION = "audio-classification"
TEXT_TO_IMAGE = "text-to-image"

VISION_TASKS = frozenset({IMAGE_CLASSIFICATION, OBJECT_DETECTION, IMAGE_SEGMENTATION, DEPTH_ESTIMATION, IMAGE_TO_TEXT})
AUDIO_TASKS = frozenset({SPEECH_TO_TEXT, AUDIO_CLASSIFICATION})

# Capability families used by flows and default-model preferences.
FAMILY_TEXT = "text"
FAMILY_VISION = "vision"
FAMILY_AUDIO = "audio"
FAMILY_EMBED = "embed"
FAMILY_IMAGE_GEN = "image-gen"
CAPABILITY_FAMILIES = (FAMILY_TEXT, FAMILY_VISION, FAMILY_AUDIO, FAMILY_EMBED, FAMILY_IMAGE_GEN)
FAMILY_TASK = {
    FAMILY_TEXT: CHAT,
    FAMILY_VISION: IMAGE_TO_TEXT,
    FAMILY_AUDIO: SPEECH_TO_TEXT,
    FAMILY_EMBED: EMBED,
    FAMILY_IMAGE_GEN: TEXT_TO_IMAGE,
}
LEGACY_MODEL_TYPES = {"language": FAMILY_TEXT, "vision": FAMILY_VISION, "audio": FAMILY_AUDIO}

# Optional adapter operations
OP_CHAT = "chat"
OP_GENERATE = "generate"
OP_EMBED = "embed"
OP_VISION = "vision"
OP_AUDIO = "audio"
OP_IMAGE_GEN = "image_gen"
OP_PULL = "pull"
OP_DELETE = "delete"
OP_LOAD = "load"
OP_UNLOAD = "unload"

AVAILABLE = "available"
UNAVAILABLE = "unavailable"
CHECKING = "checking"
DOWNLOADING = "downloading"

PHASE_DOWNLOADING = "downloading"
PHASE_VERIFYING = "verifying"
PHASE_COMPLETE = "complete"
PHASE_ERROR = "error"


def family_for_capability(capability: str) -> str:
    if capability in VISION_TASKS:
        return FAMILY_VISION
    if capability in AUDIO_TASKS:
        return FAMILY_AUDIO
    if capability == EMBED:
        return FAMILY_EMBED
    if capability == TEXT_TO_IMAGE:
        return FAMILY_IMAGE_GEN
    return FAMILY_TEXT


def format_size(size_bytes: int) -> str:
    gb = float(size_bytes or 0) / (1024 * 1024 * 1024)
    if gb >= 1:
        return f"{gb:.1f}GB"
    return f"{round(float(size_bytes or 0) / (1024 * 1024))}MB"


def split_model_id(model_id: Optional[str], kinds: Iterable[str]) -> Optional[str]:
    """Return the backend kind encoded as the `kind:` prefix of a model id."""
    if not model_id or ":" not in model_id:
        return None
    prefix = model_id.split(":", 1)[0]
    return prefix if prefix in set(kinds) else None


def strip_prefix(model_id: str, kind: str) -> str:
    prefix = f"{kind}:"
    return model_id[len(prefix):] if model_id.startswith(prefix) else model_id


@dataclass
class ModelDescriptor:
    id: str
    name: str
    provider: str
    size_bytes: int = 0
    capabilities: List[str] = field(default_factory=list)
    tier: HardwareTier = HardwareTier.LEAN
    is_local: bool = True
    is_installed: bool = False
    is_loaded: bool = False
    size_label: str = ""
    description: Optional[str] = None
    hugging_face_id: Optional[str] = None

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "size_bytes": self.size_bytes,
            "size_label": self.size_label or format_size(self.size_bytes),
            "capabilities": list(self.capabilities),
            "tier": self.tier.name,
            "is_local": self.is_local,
            "is_installed": self.is_installed,
            "is_loaded": self.is_loaded,
            "description": self.description,
            "hugging_face_id": self.hugging_face_id,
        }


@dataclass(frozen=True)
class ProviderStatus:
    kind: str
    name: str
    availability: str = CHECKING
    last_error: Optional[str] = None
    models: tuple = ()
    download_progress: Optional[int] = None

    @property
    def available(self) -> bool:
        return self.availability == AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "status": self.availability,
            "error": self.last_error,
            "models": [m.to_dict() for m in self.models],
            "download_progress": self.download_progress,
        }


@dataclass(frozen=True)
class PullProgress:
    model_id: str
    backend: str
    percent: int
    phase: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"model_id": self.model_id, "backend": self.backend, "percent": self.percent, "phase": self.phase}
        if self.error:
            data["error"] = self.error
        return data


ProgressCallback = Callable[[PullProgress], Any]


class ChatMessage(BaseModel):
    role: str = "user"
    content: str = ""
    images: Optional[List[str]] = None


class RoutedRequest(BaseModel):
    model: Optional[str] = None
    preferred_backend: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class ChatRequest(RoutedRequest):
    messages: List[ChatMessage] = Field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class GenerateRequest(RoutedRequest):
    prompt: str
    images: Optional[List[str]] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class EmbedRequest(RoutedRequest):
    text: Union[str, List[str]]

    def texts(self) -> List[str]:
        return list(self.text) if isinstance(self.text, list) else [self.text]


class VisionRequest(RoutedRequest):
    image: str
    task: str = IMAGE_TO_TEXT
    prompt: Optional[str] = None


class AudioRequest(RoutedRequest):
    audio: str
    task: str = SPEECH_TO_TEXT


class ImageGenRequest(RoutedRequest):
    prompt: str
    negative_prompt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None


@dataclass
class ChatResponse:
    model: str
    provider: str
    message: Dict[str, Any]
    done: bool = True
    total_duration_ms: Optional[float] = None
    eval_count: Optional[int] = None

    @property
    def text(self) -> str:
        return str(self.message.get("content") or "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider,
            "message": dict(self.message),
            "done": self.done,
            "total_duration_ms": self.total_duration_ms,
            "eval_count": self.eval_count,
        }


@dataclass
class GenerateResponse:
    model: str
    provider: str
    response: str
    done: bool = True
    total_duration_ms: Optional[float] = None

    @property
    def text(self) -> str:
        return self.response

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider,
            "response": self.response,
            "done": self.done,
            "total_duration_ms": self.total_duration_ms,
        }


@dataclass
class EmbedResponse:
    model: str
    provider: str
    embeddings: List[List[float]]

    def to_dict(self) -> Dict[str, Any]:
        return {"model": self.model, "provider": self.provider, "embeddings": self.embeddings}


@dataclass
class VisionResponse:
    model: str
    provider: str
    task: str
    results: Any

    @property
    def text(self) -> str:
        if isinstance(self.results, str):
            return self.results
        if isinstance(self.results, list) and self.results and isinstance(self.results[0], dict):
            first = self.results[0]
            if "generated_text" in first:
                return str(first["generated_text"])
            if "label" in first:
                return ", ".join(str(r.get("label")) for r in self.results if isinstance(r, dict))
        return str(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {"model": self.model, "provider": self.provider, "task": self.task, "results": self.results}


@dataclass
class AudioResponse:
    model: str
    provider: str
    task: str
    result: Any

    @property
    def text(self) -> str:
        if isinstance(self.result, dict) and "text" in self.result:
            return str(self.result["text"])
        return str(self.result)

    def to_dict(self) -> Dict[str, Any]:
        return {"model": self.model, "provider": self.provider, "task": self.task, "result": self.result}


@dataclass
class ImageGenResponse:
    model: str
    provider: str
    image: str

    def to_dict(self) -> Dict[str, Any]:
        return {"model": self.model, "provider": self.provider, "image": self.image}


class ProviderBackend(Protocol):
    kind: str
    name: str
    operations: FrozenSet[str]
    is_local: bool
    loads_on_pull: bool

    async def probe(self) -> bool:
        ...

    def status(self) -> ProviderStatus:
        ...

    async def list_models(self) -> List[ModelDescriptor]:
        ...

    def supports_capability(self, capability: str) -> bool:
        ...

    def recommend_model(self, capability: str, tier: HardwareTier) -> Optional[ModelDescriptor]:
        ...

    def pending_load_bytes(self, capability: str, model_id: Optional[str]) -> int:
        ...

    async def chat(self, request: ChatRequest) -> ChatResponse:
        ...

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        ...

    async def pull(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> bool:
        ...

    async def close(self) -> None:
        ...


def recommend_from_registry(
    entries: Iterable[ModelDescriptor],
    capability: str,
    tier: HardwareTier,
    *,
    fallback_to_any: bool = False,
) -> Optional[ModelDescriptor]:
    """Highest-tier entry at or below `tier` that supports `capability`; first declared wins ties."""
    candidates = [e for e in entries if e.supports(capability)]
    best: Optional[ModelDescriptor] = None
    for entry in candidates:
        if entry.tier > tier:
            continue
        if best is None or entry.tier > best.tier:
            best = entry
    if best is None and fallback_to_any and candidates:
        return candidates[0]
    return best


async def emit_progress(callback: Optional[ProgressCallback], progress: PullProgress) -> None:
    if callback is None:
        return
    result = callback(progress)
    if inspect.isawaitable(result):
        await result
