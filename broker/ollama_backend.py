import base64
import json
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .errors import InvocationFailure, ProbeFailure
from .governor import ResourceGovernor
from .hardware import HardwareTier
from .provider_types import (
    AVAILABLE,
    CHAT,
    CHECKING,
    EMBED,
    GENERATE,
    IMAGE_TO_TEXT,
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
    PHASE_VERIFYING,
    UNAVAILABLE,
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

GIB = 1024 * 1024 * 1024
_VISION_MARKERS = ("llava", "vision", "moondream")
_TEXT_CAPS = [CHAT, GENERATE, EMBED]
_VISION_CAPS = [CHAT, GENERATE, IMAGE_TO_TEXT]
_FALLBACK_MODELS = {CHAT: "mistral:7b", GENERATE: "mistral:7b", EMBED: "nomic-embed-text", IMAGE_TO_TEXT: "llava:7b"}


def _catalog_entry(name: str, tier: HardwareTier, capabilities: List[str], size_gb: float) -> ModelDescriptor:
    return ModelDescriptor(
        id=f"ollama:{name}",
        name=name,
        provider="ollama",
        size_bytes=int(size_gb * GIB),
        capabilities=list(capabilities),
        tier=tier,
        is_local=True,
    )


# Language entries come first in each tier so they win chat/generate ties.
OLLAMA_CATALOG: List[ModelDescriptor] = [
    _catalog_entry("llama3.2:3b", HardwareTier.LEAN, [CHAT, GENERATE], 2.0),
    _catalog_entry("moondream", HardwareTier.LEAN, [IMAGE_TO_TEXT], 1.7),
    _catalog_entry("nomic-embed-text", HardwareTier.LEAN, [EMBED], 0.27),
    _catalog_entry("mistral:7b", HardwareTier.STEADY, [CHAT, GENERATE], 4.1),
    _catalog_entry("llava:7b", HardwareTier.STEADY, [IMAGE_TO_TEXT], 4.5),
    _catalog_entry("qwen2.5:14b", HardwareTier.HEAVY, [CHAT, GENERATE], 9.0),
    _catalog_entry("llama3.2-vision:11b", HardwareTier.HEAVY, [IMAGE_TO_TEXT], 7.9),
    _catalog_entry("deepseek-r1:70b", HardwareTier.SURPLUS, [CHAT, GENERATE], 42.0),
    _catalog_entry("llava:34b", HardwareTier.SURPLUS, [IMAGE_TO_TEXT], 20.0),
]


def is_vision_model(name: str) -> bool:
    lower = (name or "").lower()
    return any(marker in lower for marker in _VISION_MARKERS)


def tier_for_size(size_bytes: int) -> HardwareTier:
    size_gb = float(size_bytes or 0) / GIB
    if size_gb > 20:
        return HardwareTier.SURPLUS
    if size_gb > 8:
        return HardwareTier.HEAVY
    if size_gb > 3:
        return HardwareTier.STEADY
    return HardwareTier.LEAN


def _image_payload(image: str) -> str:
    if image.startswith("data:") and "," in image:
        return image.split(",", 1)[1]
    path = Path(image)
    try:
        if len(image) < 1024 and path.is_file():
            return base64.b64encode(path.read_bytes()).decode("ascii")
    except OSError:
        pass
    return image


def _ns_to_ms(value: Any) -> Optional[float]:
    try:
        return float(value) / 1_000_000.0
    except Exception:
        return None


class OllamaBackend:
    kind = "ollama"
    name = "Ollama"
    is_local = True
    operations = frozenset({OP_CHAT, OP_GENERATE, OP_EMBED, OP_VISION, OP_PULL, OP_DELETE, OP_LOAD, OP_UNLOAD})
    loads_on_pull = False

    def __init__(
        self,
        *,
        base_url: str = "http://localhost:11434",
        governor: Optional[ResourceGovernor] = None,
        probe_timeout_s: float = 2.0,
        list_timeout_s: float = 5.0,
        request_timeout_s: float = 300.0,
        keep_alive: str = "5m",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.governor = governor
        self.probe_timeout_s = probe_timeout_s
        self.list_timeout_s = list_timeout_s
        self.request_timeout_s = request_timeout_s
        self.keep_alive = keep_alive
        self.tier = HardwareTier.STEADY
        self.client = client or httpx.AsyncClient(timeout=request_timeout_s)
        self._status = ProviderStatus(kind=self.kind, name=self.name, availability=CHECKING)
        self._installed: Dict[str, ModelDescriptor] = {}

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _set_status(self, availability: str, error: Optional[str], download_progress: Optional[int] = None) -> None:
        self._status = ProviderStatus(
            kind=self.kind,
            name=self.name,
            availability=availability,
            last_error=error,
            models=tuple(self._installed.values()),
            download_progress=download_progress,
        )

    def status(self) -> ProviderStatus:
        return self._status

    async def probe(self, timeout: Optional[float] = None) -> bool:
        try:
            resp = await self.client.get(self._url("/api/tags"), timeout=timeout or self.probe_timeout_s)
        except httpx.HTTPError:
            self._installed = {}
            self._set_status(UNAVAILABLE, "Cannot connect to Ollama")
            return False
        if resp.status_code >= 400:
            self._installed = {}
            self._set_status(UNAVAILABLE, "Ollama is not running")
            return False
        self._installed = self._parse_tags(resp)
        self._set_status(AVAILABLE, None)
        return True

    def _parse_tags(self, resp: httpx.Response) -> Dict[str, ModelDescriptor]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        models: Dict[str, ModelDescriptor] = {}
        for item in (data or {}).get("models") or []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            descriptor = self._descriptor(item)
            models[descriptor.id] = descriptor
        return models

    def _descriptor(self, item: Dict[str, Any]) -> ModelDescriptor:
        name = str(item.get("name"))
        size = int(item.get("size") or 0)
        details = item.get("details") or {}
        description = None
        if details.get("family"):
            description = f"{details.get('family')} - {details.get('parameter_size')}"
        model_id = f"ollama:{name}"
        return ModelDescriptor(
            id=model_id,
            name=name,
            provider=self.kind,
            size_bytes=size,
            size_label=format_size(size),
            capabilities=list(_VISION_CAPS if is_vision_model(name) else _TEXT_CAPS),
            tier=tier_for_size(size),
            is_local=True,
            is_installed=True,
            is_loaded=bool(self.governor and self.governor.is_loaded(model_id)),
            description=description,
        )

    async def list_models(self) -> List[ModelDescriptor]:
        if not await self.probe(timeout=self.list_timeout_s):
            return []
        return list(self._installed.values())

    def supports_capability(self, capability: str) -> bool:
        return capability in (CHAT, GENERATE, EMBED, IMAGE_TO_TEXT)

    def recommend_model(self, capability: str, tier: HardwareTier) -> Optional[ModelDescriptor]:
        choice = recommend_from_registry(OLLAMA_CATALOG, capability, tier)
        if choice is None:
            return None
        installed = self._installed.get(choice.id)
        if installed is not None:
            return installed
        return replace(choice, capabilities=list(choice.capabilities))

    def _default_model(self, capability: str) -> str:
        recommended = recommend_from_registry(OLLAMA_CATALOG, capability, self.tier)
        if recommended and recommended.id in self._installed:
            return recommended.name
        for descriptor in self._installed.values():
            if descriptor.supports(capability):
                return descriptor.name
        return _FALLBACK_MODELS.get(capability, "mistral:7b")

    def _model_name(self, model: Optional[str], capability: str) -> str:
        if model:
            return strip_prefix(model, self.kind)
        return self._default_model(capability)

    def pending_load_bytes(self, capability: str, model_id: Optional[str]) -> int:
        if self.governor is None:
            return 0
        full_id = f"ollama:{self._model_name(model_id, capability)}"
        if self.governor.is_loaded(full_id):
            return 0
        descriptor = self._installed.get(full_id)
        return descriptor.size_bytes if descriptor else 0

    def _mark_used(self, name: str) -> None:
        if self.governor is None:
            return
        full_id = f"ollama:{name}"
        if self.governor.is_loaded(full_id):
            self.governor.track_used(full_id)
            return
        descriptor = self._installed.get(full_id)
        # Ollama loads a model on first use.
        self.governor.track_loaded(full_id, self.kind, descriptor.size_bytes if descriptor else 0)

    async def _post(self, path: str, payload: Dict[str, Any], action: str) -> Dict[str, Any]:
        try:
            resp = await self.client.post(self._url(path), json=payload, timeout=self.request_timeout_s)
        except httpx.ConnectError as exc:
            self._set_status(UNAVAILABLE, "Cannot connect to Ollama")
            raise ProbeFailure("Cannot connect to Ollama", backend=self.kind) from exc
        except httpx.HTTPError as exc:
            raise InvocationFailure(f"Ollama {action} failed: {exc}", backend=self.kind) from exc
        if resp.status_code >= 400:
            detail = ""
            try:
                detail = str((resp.json() or {}).get("error") or "")
            except ValueError:
                detail = resp.text[:200]
            suffix = f" ({detail})" if detail else ""
            raise InvocationFailure(f"Ollama {action} failed: {resp.status_code}{suffix}", backend=self.kind)
        try:
            return resp.json()
        except ValueError as exc:
            raise InvocationFailure(f"Ollama {action} returned invalid JSON", backend=self.kind) from exc

    @staticmethod
    def _options(temperature: Optional[float], max_tokens: Optional[int]) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens:
            options["num_predict"] = max_tokens
        return options

    async def chat(self, request: ChatRequest) -> ChatResponse:
        model = self._model_name(request.model, CHAT)
        messages = []
        for message in request.messages:
            entry: Dict[str, Any] = {"role": message.role, "content": message.content}
            if message.images:
                entry["images"] = [_image_payload(img) for img in message.images]
            messages.append(entry)
        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        options = self._options(request.temperature, request.max_tokens)
        if options:
            payload["options"] = options
        data = await self._post("/api/chat", payload, "chat")
        self._mark_used(model)
        message = data.get("message") or {}
        return ChatResponse(
            model=f"ollama:{data.get('model') or model}",
            provider=self.kind,
            message={"role": message.get("role") or "assistant", "content": message.get("content") or ""},
            done=bool(data.get("done", True)),
            total_duration_ms=_ns_to_ms(data.get("total_duration")),
            eval_count=data.get("eval_count"),
        )

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        capability = IMAGE_TO_TEXT if request.images else GENERATE
        model = self._model_name(request.model, capability)
        payload: Dict[str, Any] = {"model": model, "prompt": request.prompt, "stream": False}
        if request.images:
            payload["images"] = [_image_payload(img) for img in request.images]
        options = self._options(request.temperature, request.max_tokens)
        if options:
            payload["options"] = options
        data = await self._post("/api/generate", payload, "generate")
        self._mark_used(model)
        return GenerateResponse(
            model=f"ollama:{data.get('model') or model}",
            provider=self.kind,
            response=str(data.get("response") or ""),
            done=bool(data.get("done", True)),
            total_duration_ms=_ns_to_ms(data.get("total_duration")),
        )

    async def embed(self, request: EmbedRequest) -> EmbedResponse:
        model = self._model_name(request.model, EMBED)
        embeddings: List[List[float]] = []
        for text in request.texts():
            data = await self._post("/api/embeddings", {"model": model, "prompt": text}, "embeddings")
            embeddings.append(list(data.get("embedding") or []))
        self._mark_used(model)
        return EmbedResponse(model=f"ollama:{model}", provider=self.kind, embeddings=embeddings)

    async def vision(self, request: VisionRequest) -> VisionResponse:
        if request.task != IMAGE_TO_TEXT:
            raise InvocationFailure(f"Ollama does not support vision task {request.task}", backend=self.kind)
        prompt = request.prompt or "Describe this image in detail."
        result = await self.generate(GenerateRequest(prompt=prompt, images=[request.image], model=request.model))
        return VisionResponse(model=result.model, provider=self.kind, task=request.task, results=result.response)

    async def pull(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> bool:
        name = strip_prefix(model_id, self.kind)
        full_id = f"ollama:{name}"
        await self.probe()
        if full_id in self._installed:
            await emit_progress(on_progress, PullProgress(full_id, self.kind, 100, PHASE_COMPLETE))
            return True
        last_progress = -1
        completed = False
        started = time.monotonic()
        try:
            async with self.client.stream(
                "POST",
                self._url("/api/pull"),
                json={"model": name, "stream": True},
                timeout=httpx.Timeout(self.request_timeout_s, read=None),
            ) as resp:
                if resp.status_code >= 400:
                    raise InvocationFailure(f"Ollama pull failed: HTTP {resp.status_code}", backend=self.kind)
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except ValueError:
                        continue
                    if data.get("error"):
                        raise InvocationFailure(f"Ollama pull failed: {data['error']}", backend=self.kind)
                    status = str(data.get("status") or "")
                    total = data.get("total")
                    done = data.get("completed")
                    if total and done:
                        progress = round((float(done) / float(total)) * 100)
                        if progress != last_progress:
                            last_progress = progress
                            self._set_status(self._status.availability, self._status.last_error, progress)
                            await emit_progress(
                                on_progress, PullProgress(full_id, self.kind, progress, PHASE_DOWNLOADING)
                            )
                    if status.startswith("verifying"):
                        await emit_progress(
                            on_progress, PullProgress(full_id, self.kind, max(last_progress, 0), PHASE_VERIFYING)
                        )
                    if status == "success":
                        completed = True
        except (InvocationFailure, httpx.HTTPError) as exc:
            message = getattr(exc, "message", None) or str(exc)
            logger.warning("Ollama pull %s failed: %s", name, message)
            self._set_status(self._status.availability, self._status.last_error)
            await emit_progress(on_progress, PullProgress(full_id, self.kind, 0, PHASE_ERROR, message))
            return False
        self._set_status(self._status.availability, self._status.last_error)
        if not completed:
            await emit_progress(
                on_progress, PullProgress(full_id, self.kind, max(last_progress, 0), PHASE_ERROR, "Pull ended early")
            )
            return False
        await emit_progress(on_progress, PullProgress(full_id, self.kind, 100, PHASE_COMPLETE))
        logger.info("Ollama pulled %s in %.1fs", name, time.monotonic() - started)
        await self.probe()
        return True

    async def delete(self, model_id: str) -> bool:
        name = strip_prefix(model_id, self.kind)
        try:
            resp = await self.client.request(
                "DELETE", self._url("/api/delete"), json={"model": name}, timeout=self.request_timeout_s
            )
        except httpx.HTTPError as exc:
            raise InvocationFailure(f"Ollama delete failed: {exc}", backend=self.kind) from exc
        if resp.status_code >= 400:
            return False
        if self.governor is not None:
            self.governor.track_unloaded(f"ollama:{name}")
        await self.probe()
        return True

    async def load(self, model_id: str) -> bool:
        name = strip_prefix(model_id, self.kind)
        await self._post("/api/generate", {"model": name, "keep_alive": self.keep_alive}, "load")
        self._mark_used(name)
        return True

    async def unload(self, model_id: str) -> bool:
        name = strip_prefix(model_id, self.kind)
        await self._post("/api/generate", {"model": name, "keep_alive": 0}, "unload")
        if self.governor is not None:
            self.governor.track_unloaded(f"ollama:{name}")
        return True

    async def close(self) -> None:
        await self.client.aclose()
