import base64
import logging
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

import httpx

from .errors import InvocationFailure
from .hardware import HardwareTier
from .provider_types import (
    AVAILABLE,
    CHAT,
    CHECKING,
    EMBED,
    GENERATE,
    OP_CHAT,
    OP_EMBED,
    OP_GENERATE,
    OP_IMAGE_GEN,
    OP_PULL,
    PHASE_COMPLETE,
    TEXT_TO_IMAGE,
    UNAVAILABLE,
    ChatRequest,
    ChatResponse,
    EmbedRequest,
    EmbedResponse,
    GenerateRequest,
    GenerateResponse,
    ImageGenRequest,
    ImageGenResponse,
    ModelDescriptor,
    ProgressCallback,
    ProviderStatus,
    PullProgress,
    emit_progress,
    recommend_from_registry,
    strip_prefix,
)

logger = logging.getLogger("uvicorn.error")

DEFAULT_CHAT_MODEL = "mistralai/Mistral-7B-Instruct-v0.3"
DEFAULT_EMBED_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_IMAGE_MODEL = "black-forest-labs/FLUX.1-dev"


def _cloud_entry(hf_id: str, name: str, capabilities: List[str], tier: HardwareTier, description: str) -> ModelDescriptor:
    return ModelDescriptor(
        id=f"huggingface:{hf_id}",
        name=name,
        provider="huggingface",
        size_bytes=0,
        size_label="Cloud",
        capabilities=capabilities,
        tier=tier,
        is_local=False,
        description=description,
        hugging_face_id=hf_id,
    )


HUGGINGFACE_MODELS: List[ModelDescriptor] = [
    _cloud_entry(DEFAULT_CHAT_MODEL, "Mistral 7B Instruct", [CHAT, GENERATE], HardwareTier.SURPLUS, "Fast, capable instruction model"),
    _cloud_entry("deepseek-ai/DeepSeek-R1-Distill-Qwen-7B", "DeepSeek R1 7B", [CHAT, GENERATE], HardwareTier.SURPLUS, "Reasoning-focused distilled model"),
    _cloud_entry("meta-llama/Llama-3.2-3B-Instruct", "Llama 3.2 3B", [CHAT, GENERATE], HardwareTier.STEADY, "Small Llama instruction model"),
    _cloud_entry(DEFAULT_IMAGE_MODEL, "FLUX.1 Image Gen", [TEXT_TO_IMAGE], HardwareTier.SURPLUS, "High quality image generation"),
    _cloud_entry("stabilityai/stable-diffusion-xl-base-1.0", "Stable Diffusion XL", [TEXT_TO_IMAGE], HardwareTier.SURPLUS, "Versatile image generation"),
]


class HuggingFaceBackend:
    """Hugging Face hosted inference; requires an API token and has no local lifecycle."""

    kind = "huggingface"
    name = "HuggingFace Cloud"
    is_local = False
    operations = frozenset({OP_CHAT, OP_GENERATE, OP_EMBED, OP_IMAGE_GEN, OP_PULL})
    loads_on_pull = False

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        api_base: str = "https://router.huggingface.co",
        probe_model: str = DEFAULT_CHAT_MODEL,
        probe_timeout_s: float = 10.0,
        request_timeout_s: float = 120.0,
        max_tokens: int = 1024,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.probe_model = probe_model
        self.probe_timeout_s = probe_timeout_s
        self.request_timeout_s = request_timeout_s
        self.max_tokens = max_tokens
        self.client = client or httpx.AsyncClient(timeout=request_timeout_s)
        self._status = ProviderStatus(kind=self.kind, name=self.name, availability=CHECKING, models=tuple(self._descriptors(False)))

    def set_api_key(self, api_key: Optional[str]) -> None:
        self.api_key = api_key or None

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def _descriptors(self, available: bool) -> List[ModelDescriptor]:
        models = []
        for entry in HUGGINGFACE_MODELS:
            models.append(
                replace(entry, capabilities=list(entry.capabilities), is_installed=available)
            )
        return models

    def _set_status(self, availability: str, error: Optional[str]) -> None:
        self._status = ProviderStatus(
            kind=self.kind,
            name=self.name,
            availability=availability,
            last_error=error,
            models=tuple(self._descriptors(availability == AVAILABLE)),
        )

    def status(self) -> ProviderStatus:
        return self._status

    async def probe(self) -> bool:
        if not self.api_key:
            self._set_status(UNAVAILABLE, "HuggingFace API key not configured")
            return False
        payload = {"model": self.probe_model, "messages": [{"role": "user", "content": "Hi"}], "max_tokens": 1}
        try:
            resp = await self.client.post(
                f"{self.api_base}/v1/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self.probe_timeout_s,
            )
        except httpx.HTTPError as exc:
            self._set_status(UNAVAILABLE, f"Connection test failed: {exc}")
            return False
        if resp.status_code in (401, 403):
            self._set_status(UNAVAILABLE, "Invalid HuggingFace API key")
            return False
        # Rate limited still means the key works.
        if resp.status_code == 429 or resp.status_code < 400:
            self._set_status(AVAILABLE, None)
            return True
        self._set_status(UNAVAILABLE, f"Connection test failed: HTTP {resp.status_code}")
        return False

    async def list_models(self) -> List[ModelDescriptor]:
        return self._descriptors(self._status.available)

    def supports_capability(self, capability: str) -> bool:
        return capability in (CHAT, GENERATE, EMBED, TEXT_TO_IMAGE)

    def recommend_model(self, capability: str, tier: HardwareTier) -> Optional[ModelDescriptor]:
        return recommend_from_registry(self._descriptors(self._status.available), capability, tier, fallback_to_any=True)

    def pending_load_bytes(self, capability: str, model_id: Optional[str]) -> int:
        return 0

    def _require_key(self) -> None:
        if not self.api_key:
            raise InvocationFailure(
                "HuggingFace client not initialized. Please configure API key.", backend=self.kind
            )

    async def _post(self, url: str, payload: Dict[str, Any], action: str) -> httpx.Response:
        self._require_key()
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers(), timeout=self.request_timeout_s)
        except httpx.HTTPError as exc:
            raise InvocationFailure(f"HuggingFace {action} failed: {exc}", backend=self.kind) from exc
        if resp.status_code >= 400:
            detail = resp.text[:200] if resp.text else ""
            suffix = f" ({detail})" if detail else ""
            raise InvocationFailure(f"HuggingFace {action} failed: HTTP {resp.status_code}{suffix}", backend=self.kind)
        return resp

    def _model_url(self, model_id: str) -> str:
        return f"{self.api_base}/hf-inference/models/{model_id}"

    async def chat(self, request: ChatRequest) -> ChatResponse:
        model_id = strip_prefix(request.model or DEFAULT_CHAT_MODEL, self.kind)
        started = time.monotonic()
        payload: Dict[str, Any] = {
            "model": model_id,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
            "max_tokens": request.max_tokens or self.max_tokens,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        resp = await self._post(f"{self.api_base}/v1/chat/completions", payload, "chat")
        try:
            data = resp.json()
        except ValueError as exc:
            raise InvocationFailure("HuggingFace chat returned invalid JSON", backend=self.kind) from exc
        choices = data.get("choices") or []
        content = ""
        if choices:
            content = str(((choices[0] or {}).get("message") or {}).get("content") or "")
        return ChatResponse(
            model=f"huggingface:{model_id}",
            provider=self.kind,
            message={"role": "assistant", "content": content},
            total_duration_ms=(time.monotonic() - started) * 1000.0,
        )

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        model_id = strip_prefix(request.model or DEFAULT_CHAT_MODEL, self.kind)
        started = time.monotonic()
        payload = {
            "inputs": request.prompt,
            "parameters": {
                "max_new_tokens": request.max_tokens or 256,
                "temperature": request.temperature if request.temperature is not None else 0.7,
            },
        }
        resp = await self._post(self._model_url(model_id), payload, "generation")
        try:
            data = resp.json()
        except ValueError as exc:
            raise InvocationFailure("HuggingFace generation returned invalid JSON", backend=self.kind) from exc
        item = data[0] if isinstance(data, list) and data else data
        text = str((item or {}).get("generated_text") or "") if isinstance(item, dict) else ""
        return GenerateResponse(
            model=f"huggingface:{model_id}",
            provider=self.kind,
            response=text,
            total_duration_ms=(time.monotonic() - started) * 1000.0,
        )

    async def embed(self, request: EmbedRequest) -> EmbedResponse:
        model_id = strip_prefix(request.model or DEFAULT_EMBED_MODEL, self.kind)
        embeddings: List[List[float]] = []
        for text in request.texts():
            resp = await self._post(self._model_url(model_id), {"inputs": text}, "embedding")
            try:
                result = resp.json()
            except ValueError as exc:
                raise InvocationFailure("HuggingFace embedding returned invalid JSON", backend=self.kind) from exc
            if isinstance(result, list) and result and isinstance(result[0], list):
                embeddings.append([float(v) for v in result[0]])
            else:
                embeddings.append([float(v) for v in result or []])
        return EmbedResponse(model=f"huggingface:{model_id}", provider=self.kind, embeddings=embeddings)

    async def image_gen(self, request: ImageGenRequest) -> ImageGenResponse:
        model_id = strip_prefix(request.model or DEFAULT_IMAGE_MODEL, self.kind)
        parameters = {
            "negative_prompt": request.negative_prompt,
            "width": request.width,
            "height": request.height,
            "num_inference_steps": request.steps,
        }
        payload = {"inputs": request.prompt, "parameters": {k: v for k, v in parameters.items() if v is not None}}
        resp = await self._post(self._model_url(model_id), payload, "image generation")
        mime = (resp.headers.get("content-type") or "image/png").split(";")[0].strip()
        if not mime.startswith("image/"):
            mime = "image/png"
        encoded = base64.b64encode(resp.content).decode("ascii")
        return ImageGenResponse(model=f"huggingface:{model_id}", provider=self.kind, image=f"data:{mime};base64,{encoded}")

    async def pull(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> bool:
        await emit_progress(on_progress, PullProgress(model_id, self.kind, 100, PHASE_COMPLETE))
        return True

    async def close(self) -> None:
        await self.client.aclose()
