import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import (
    BrokerError,
    InvocationFailure,
    NoProviderForCapability,
    ResourceExhausted,
    UnknownModel,
    UnsupportedOperation,
)
from .governor import LoadedModelHandle, ResourceGovernor, format_bytes
from .hardware import HardwareTier
from .provider_types import (
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
    PHASE_ERROR,
    TEXT_TO_IMAGE,
    AudioRequest,
    AudioResponse,
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
    ProviderBackend,
    ProviderStatus,
    PullProgress,
    RoutedRequest,
    VisionRequest,
    VisionResponse,
    emit_progress,
    family_for_capability,
    split_model_id,
)

logger = logging.getLogger("uvicorn.error")

DEFAULT_ORDER = ["ollama", "transformers", "huggingface"]


class ProgressBus:
    """Fan-out of pull progress events to any number of queue subscribers."""

    def __init__(self) -> None:
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()

    async def publish(self, progress: PullProgress) -> None:
        async with self.lock:
            queues = list(self.subscribers.get(progress.model_id, []))
            global_queues = list(self.global_subscribers)
        for q in queues + global_queues:
            await q.put(progress)

    async def subscribe(self, model_id: Optional[str] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            if model_id is None:
                self.global_subscribers = [*self.global_subscribers, queue]
            else:
                self.subscribers = {**self.subscribers, model_id: [*self.subscribers.get(model_id, []), queue]}
        return queue

    async def unsubscribe(self, queue: asyncio.Queue, model_id: Optional[str] = None) -> None:
        async with self.lock:
            if model_id is None:
                self.global_subscribers = [q for q in self.global_subscribers if q is not queue]
                return
            remaining = [q for q in self.subscribers.get(model_id, []) if q is not queue]
            updated = {k: v for k, v in self.subscribers.items() if k != model_id}
            if remaining:
                updated[model_id] = remaining
            self.subscribers = updated


class CapabilityRouter:
    """Pick a backend for each capability call, keep memory within budget, and aggregate status."""

    def __init__(
        self,
        backends: Iterable[ProviderBackend],
        governor: ResourceGovernor,
        *,
        order: Optional[List[str]] = None,
        tier: HardwareTier = HardwareTier.STEADY,
        default_models: Optional[Dict[str, str]] = None,
    ) -> None:
        self.backends: Dict[str, Any] = {b.kind: b for b in backends}
        self.governor = governor
        self.order = [k for k in (order or DEFAULT_ORDER) if k in self.backends]
        self.order += [k for k in self.backends if k not in self.order]
        self.progress = ProgressBus()
        self._default_models: Dict[str, str] = dict(default_models or {})
        self.tier = tier
        self.set_tier(tier)

    # Tier and defaults

    def set_tier(self, tier: HardwareTier) -> None:
        self.tier = HardwareTier.parse(tier)
        for backend in self.backends.values():
            if hasattr(backend, "tier"):
                backend.tier = self.tier

    def get_tier(self) -> HardwareTier:
        return self.tier

    def default_models(self) -> Dict[str, str]:
        return dict(self._default_models)

    def set_default_model(self, family: str, model_id: Optional[str]) -> None:
        updated = {k: v for k, v in self._default_models.items() if k != family}
        if model_id:
            updated[family] = model_id
        self._default_models = updated

    def get_backend(self, kind: str) -> Any:
        backend = self.backends.get(kind)
        if backend is None:
            raise UnknownModel(f"Unknown backend: {kind}", backend=kind)
        return backend

    def ordered_backends(self) -> List[Any]:
        return [self.backends[k] for k in self.order]

    # Status

    async def initialize(self, tier: Optional[HardwareTier] = None) -> Dict[str, Any]:
        if tier is not None:
            self.set_tier(tier)
        await self.refresh_status()
        status = self.get_status()
        logger.info(
            "Providers ready: %s (recommended=%s)",
            ", ".join(f"{k}={v['status']}" for k, v in status["providers"].items()),
            status["recommended_provider"],
        )
        return status

    async def refresh_status(self) -> Dict[str, Any]:
        backends = self.ordered_backends()
        results = await asyncio.gather(*(b.probe() for b in backends), return_exceptions=True)
        for backend, result in zip(backends, results):
            if isinstance(result, BaseException):
                logger.warning("Probe for %s raised: %s", backend.kind, result)
        return self.get_status()

    def get_status(self) -> Dict[str, Any]:
        statuses: Dict[str, ProviderStatus] = {k: self.backends[k].status() for k in self.order}
        recommended = next((k for k, s in statuses.items() if s.available), None)
        return {
            "providers": {k: s.to_dict() for k, s in statuses.items()},
            "has_available_provider": recommended is not None,
            "recommended_provider": recommended,
            "tier": self.tier.name,
        }

    # Resolution

    @staticmethod
    def _serves(backend: Any, capability: str, operation: str) -> bool:
        if operation not in getattr(backend, "operations", frozenset()):
            return False
        if not callable(getattr(backend, operation, None)):
            return False
        return bool(backend.supports_capability(capability))

    def _owner(self, model_id: Optional[str]) -> Optional[str]:
        return split_model_id(model_id, self.backends.keys())

    async def resolve(
        self,
        capability: str,
        operation: str,
        model: Optional[str] = None,
        preferred_backend: Optional[str] = None,
    ) -> Tuple[Any, Optional[str]]:
        """Return (backend, model id to use) for a call, or raise NoProviderForCapability."""
        if preferred_backend:
            backend = self.backends.get(preferred_backend)
            if backend is not None and backend.status().available and self._serves(backend, capability, operation):
                owner = self._owner(model)
                return backend, model if owner in (None, backend.kind) else None
        owner = self._owner(model)
        if owner is not None:
            backend = self.backends[owner]
            if backend.status().available and self._serves(backend, capability, operation):
                return backend, model
        if not model and not preferred_backend:
            default = self._default_models.get(family_for_capability(capability))
            default_owner = self._owner(default)
            if default_owner is not None:
                backend = self.backends[default_owner]
                if backend.status().available and self._serves(backend, capability, operation):
                    return backend, default
        candidate_model = model if owner is None else None
        for attempt in range(2):
            for backend in self.ordered_backends():
                if backend.status().available and self._serves(backend, capability, operation):
                    return backend, candidate_model
            if attempt == 0:
                # Nothing usable in the cached status; probe once before giving up.
                await self.refresh_status()
        raise NoProviderForCapability(capability)

    async def _unload_handle(self, model_id: str, backend_kind: str) -> None:
        backend = self.backends.get(backend_kind)
        if backend is not None and OP_UNLOAD in backend.operations:
            try:
                await backend.unload(model_id)
            except BrokerError as exc:
                logger.warning("Unload of %s failed during eviction: %s", model_id, exc.message)
        self.governor.track_unloaded(model_id)

    async def ensure_capacity(self, backend: Any, capability: str, model_id: Optional[str]) -> None:
        required = int(backend.pending_load_bytes(capability, model_id) or 0)
        if required <= 0 or self.governor.can_load(required):
            return
        handles: Dict[str, LoadedModelHandle] = {h.model_id: h for h in self.governor.loaded_models()}
        victims = self.governor.models_to_evict(required)
        for victim in victims:
            handle = handles.get(victim)
            logger.info("Evicting %s to free %s", victim, format_bytes(handle.memory_bytes if handle else 0))
            await self._unload_handle(victim, handle.backend if handle else "")
        if not self.governor.can_load(required):
            summary = self.governor.memory_summary()
            raise ResourceExhausted(
                f"Not enough memory to load {model_id or capability}: need {format_bytes(required)}, "
                f"{summary['used_label']} of {summary['max_label']} in use",
                backend=backend.kind,
            )

    async def _invoke(self, capability: str, operation: str, request: RoutedRequest) -> Any:
        backend, model = await self.resolve(capability, operation, request.model, request.preferred_backend)
        routed = request.model_copy(update={"model": model, "preferred_backend": backend.kind})
        await self.ensure_capacity(backend, capability, model)
        try:
            return await getattr(backend, operation)(routed)
        except BrokerError:
            raise
        except Exception as exc:
            logger.warning("%s %s failed: %s", backend.kind, operation, exc)
            raise InvocationFailure(f"{backend.name} {operation} failed: {exc}", backend=backend.kind) from exc

    async def chat(self, request: ChatRequest) -> ChatResponse:
        return await self._invoke(CHAT, OP_CHAT, request)

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        return await self._invoke(IMAGE_TO_TEXT if request.images else GENERATE, OP_GENERATE, request)

    async def embed(self, request: EmbedRequest) -> EmbedResponse:
        return await self._invoke(EMBED, OP_EMBED, request)

    async def vision(self, request: VisionRequest) -> VisionResponse:
        return await self._invoke(request.task, OP_VISION, request)

    async def audio(self, request: AudioRequest) -> AudioResponse:
        return await self._invoke(request.task, OP_AUDIO, request)

    async def image_gen(self, request: ImageGenRequest) -> ImageGenResponse:
        return await self._invoke(TEXT_TO_IMAGE, OP_IMAGE_GEN, request)

    # Models

    def recommended_model(self, capability: str, preferred_backend: Optional[str] = None) -> Optional[ModelDescriptor]:
        if preferred_backend:
            backend = self.backends.get(preferred_backend)
            if backend is not None and backend.status().available and backend.supports_capability(capability):
                choice = backend.recommend_model(capability, self.tier)
                if choice is not None:
                    return choice
        for backend in self.ordered_backends():
            if backend.status().available and backend.supports_capability(capability):
                choice = backend.recommend_model(capability, self.tier)
                if choice is not None:
                    return choice
        return None

    async def list_all_models(self) -> List[ModelDescriptor]:
        backends = self.ordered_backends()
        results = await asyncio.gather(*(b.list_models() for b in backends), return_exceptions=True)
        models: List[ModelDescriptor] = []
        for backend, result in zip(backends, results):
            if isinstance(result, BaseException):
                logger.warning("Listing models for %s failed: %s", backend.kind, result)
                continue
            models.extend(self._with_loaded(result))
        return models

    def _with_loaded(self, models: Iterable[ModelDescriptor]) -> List[ModelDescriptor]:
        return [replace(m, is_loaded=self.governor.is_loaded(m.id)) for m in models]

    async def models_for_capability(self, capability: str) -> List[ModelDescriptor]:
        return [m for m in await self.list_all_models() if m.supports(capability)]

    def registry(self) -> List[ModelDescriptor]:
        models: List[ModelDescriptor] = []
        for backend in self.ordered_backends():
            models.extend(backend.status().models)
        return models

    def model_status(self, model_id: str) -> Dict[str, Any]:
        descriptor = next((m for m in self.registry() if m.id == model_id), None)
        owner = self._owner(model_id)
        downloaded = bool(descriptor and descriptor.is_installed)
        if owner is not None and hasattr(self.backends[owner], "is_downloaded"):
            downloaded = downloaded or bool(self.backends[owner].is_downloaded(model_id))
        return {
            "model_id": model_id,
            "exists": descriptor is not None,
            "downloaded": downloaded,
            "loaded": self.governor.is_loaded(model_id),
            "memory_bytes": self.governor.memory_usage(model_id),
        }

    def _lifecycle_backend(self, model_id: str, operation: str, backend_kind: Optional[str] = None) -> Any:
        kind = backend_kind or self._owner(model_id)
        if kind is None:
            raise UnknownModel(f"Model id {model_id} does not name a backend (use kind:model)")
        backend = self.get_backend(kind)
        if operation not in backend.operations:
            raise UnsupportedOperation(f"{backend.name} does not support {operation}", backend=backend.kind)
        return backend

    async def pull_model(
        self,
        model_id: str,
        on_progress: Optional[ProgressCallback] = None,
        backend_kind: Optional[str] = None,
    ) -> bool:
        backend = self._lifecycle_backend(model_id, OP_PULL, backend_kind)

        async def forward(progress: PullProgress) -> None:
            await self.progress.publish(progress)
            await emit_progress(on_progress, progress)

        try:
            if backend.loads_on_pull:
                await self.ensure_capacity(backend, GENERATE, model_id)
            ok = await backend.pull(model_id, forward)
        except BrokerError as exc:
            logger.warning("Pull %s failed: %s", model_id, exc.message)
            await forward(PullProgress(model_id, backend.kind, 0, PHASE_ERROR, exc.message))
            return False
        logger.info("Pull %s via %s %s", model_id, backend.kind, "succeeded" if ok else "failed")
        return bool(ok)

    async def delete_model(self, model_id: str, backend_kind: Optional[str] = None) -> bool:
        backend = self._lifecycle_backend(model_id, OP_DELETE, backend_kind)
        ok = await backend.delete(model_id)
        if ok:
            self.governor.track_unloaded(model_id)
        return bool(ok)

    async def load_model(self, model_id: str, backend_kind: Optional[str] = None) -> bool:
        backend = self._lifecycle_backend(model_id, OP_LOAD, backend_kind)
        await self.ensure_capacity(backend, GENERATE, model_id)
        return bool(await backend.load(model_id))

    async def unload_model(self, model_id: str, backend_kind: Optional[str] = None) -> bool:
        backend = self._lifecycle_backend(model_id, OP_UNLOAD, backend_kind)
        return bool(await backend.unload(model_id))

    def add_custom_model(
        self,
        hf_id: str,
        name: str,
        capabilities: List[str],
        backend_kind: str = "transformers",
        pipeline_task: Optional[str] = None,
    ) -> ModelDescriptor:
        backend = self.get_backend(backend_kind)
        register = getattr(backend, "add_custom_model", None)
        if not callable(register):
            raise UnsupportedOperation(f"{backend.name} does not accept custom models", backend=backend.kind)
        model = register(hf_id, name, capabilities, pipeline_task)
        return model.descriptor() if hasattr(model, "descriptor") else model

    def remove_custom_model(self, hf_id: str, backend_kind: str = "transformers") -> bool:
        backend = self.get_backend(backend_kind)
        remove = getattr(backend, "remove_custom_model", None)
        return bool(remove(hf_id)) if callable(remove) else False

    def loaded_models(self) -> List[LoadedModelHandle]:
        return self.governor.loaded_models()

    async def system_stats(self) -> Dict[str, Any]:
        stats = dict(await self.governor.system_stats())
        stats["models"] = self.governor.memory_summary()
        return stats

    async def unload_idle(self, max_idle_s: float) -> List[str]:
        handles = {h.model_id: h for h in self.governor.loaded_models()}
        idle = self.governor.idle_models(max_idle_s)
        for model_id in idle:
            logger.info("Unloading idle model %s", model_id)
            handle = handles.get(model_id)
            await self._unload_handle(model_id, handle.backend if handle else "")
        return idle

    async def close(self) -> None:
        await asyncio.gather(*(b.close() for b in self.backends.values()), return_exceptions=True)
        self.governor.clear()
