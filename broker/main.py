import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .builtin_backend import BuiltinBackend, PipelineFactory
from .builtin_flows import BUILTIN_FLOWS, builtin_flows_by_tag, get_builtin_flow, task_card_flows
from .config import CONFIG_PATH, BrokerSettings, load_settings, save_settings
from .errors import BrokerError, FlowValidationError
from .flow_executor import FlowInterpreter
from .flow_schema import Flow, parse_flow, validate_flow
from .governor import ResourceGovernor
from .hardware import HardwareProfiler
from .huggingface_backend import HuggingFaceBackend
from .ollama_backend import OllamaBackend
from .planner import create_plan
from .preferences import PreferenceStore
from .provider_types import (
    AudioRequest,
    ChatRequest,
    EmbedRequest,
    GenerateRequest,
    ImageGenRequest,
    PullProgress,
    VisionRequest,
)
from .router import CapabilityRouter
from .schemas import CustomModelRequest, DefaultModelRequest, FlowExecuteRequest, ModelActionRequest, PlanRequest
from .telemetry import ResourceTelemetry

logger = logging.getLogger("uvicorn.error")

MASKED_SECRET = "********"


def get_settings(request: Request) -> BrokerSettings:
    return request.app.state.settings


def get_profiler(request: Request) -> HardwareProfiler:
    return request.app.state.profiler


def get_router(request: Request) -> CapabilityRouter:
    return request.app.state.router


def get_store(request: Request) -> PreferenceStore:
    return request.app.state.store


def get_interpreter(request: Request) -> FlowInterpreter:
    return request.app.state.interpreter


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def broker_http_error(exc: BrokerError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


async def guarded(awaitable: Awaitable[Any]) -> Any:
    try:
        return await awaitable
    except BrokerError as exc:
        raise broker_http_error(exc) from exc


def build_backends(
    settings: BrokerSettings,
    governor: ResourceGovernor,
    pipeline_factory: Optional[PipelineFactory] = None,
) -> List[Any]:
    backends: List[Any] = []
    if settings.ollama.enabled:
        backends.append(
            OllamaBackend(
                base_url=settings.ollama.base_url,
                governor=governor,
                probe_timeout_s=settings.ollama.probe_timeout_s,
                list_timeout_s=settings.ollama.list_timeout_s,
                request_timeout_s=settings.ollama.request_timeout_s,
                keep_alive=settings.ollama.keep_alive,
            )
        )
    if settings.builtin.enabled:
        backends.append(
            BuiltinBackend(
                cache_dir=settings.builtin.cache_dir,
                device=settings.builtin.device,
                governor=governor,
                pipeline_factory=pipeline_factory,
            )
        )
    if settings.huggingface.enabled:
        backends.append(
            HuggingFaceBackend(
                api_key=settings.huggingface.api_key,
                api_base=settings.huggingface.api_base,
                probe_model=settings.huggingface.probe_model,
                probe_timeout_s=settings.huggingface.probe_timeout_s,
                request_timeout_s=settings.huggingface.request_timeout_s,
                max_tokens=settings.huggingface.max_tokens,
            )
        )
    return backends


def merge_settings(current: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(current)
    for key, value in body.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    hf_block = merged.get("huggingface") or {}
    if hf_block.get("api_key") == MASKED_SECRET:
        # The masked value echoed back from GET /settings keeps the stored key.
        hf_block["api_key"] = (current.get("huggingface") or {}).get("api_key")
    return merged


def apply_settings(app: FastAPI, settings: BrokerSettings) -> None:
    router: CapabilityRouter = app.state.router
    if settings.memory_budget_bytes:
        router.governor.set_budget(settings.memory_budget_bytes)
    hf = router.backends.get("huggingface")
    if hf is not None:
        hf.set_api_key(settings.huggingface.api_key)
    ollama = router.backends.get("ollama")
    if ollama is not None:
        ollama.base_url = settings.ollama.base_url.rstrip("/")
        ollama.keep_alive = settings.ollama.keep_alive
    app.state.interpreter.max_step_runs = settings.flow_max_step_runs


def resolve_flow(payload: FlowExecuteRequest) -> Flow:
    if payload.flow is not None:
        report = validate_flow(payload.flow)
        if not report["valid"]:
            raise broker_http_error(FlowValidationError(report["errors"]))
        return parse_flow(payload.flow)
    if payload.flow_id:
        flow = get_builtin_flow(payload.flow_id)
        if flow is None:
            raise HTTPException(status_code=404, detail="Flow not found")
        return flow
    raise HTTPException(status_code=400, detail="flow or flow_id is required.")


async def idle_sweep(app: FastAPI) -> None:
    while True:
        settings: BrokerSettings = app.state.settings
        await asyncio.sleep(settings.idle_sweep_interval_s)
        try:
            unloaded = await app.state.router.unload_idle(settings.idle_unload_s)
        except Exception as exc:
            logger.warning("Idle sweep failed: %s", exc)
            continue
        if unloaded:
            logger.info("Idle sweep unloaded %d model(s)", len(unloaded))


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: BrokerSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: BrokerSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be an object.")
    try:
        new_settings = BrokerSettings(**merge_settings(settings.model_dump(), body))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    apply_settings(request.app, new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/hardware")
async def hardware(refresh: bool = False, profiler: HardwareProfiler = Depends(get_profiler)):
    snapshot = await asyncio.to_thread(profiler.detect, refresh)
    return snapshot.to_dict()


@router.get("/api/providers/status")
async def provider_status(capability_router: CapabilityRouter = Depends(get_router)):
    return capability_router.get_status()


@router.post("/api/providers/refresh")
async def refresh_providers(capability_router: CapabilityRouter = Depends(get_router)):
    return await capability_router.refresh_status()


@router.get("/api/models")
async def list_models(capability_router: CapabilityRouter = Depends(get_router)):
    models = await capability_router.list_all_models()
    return {"models": [m.to_dict() for m in models]}


@router.get("/api/models/by-capability/{capability}")
async def models_for_capability(capability: str, capability_router: CapabilityRouter = Depends(get_router)):
    models = await capability_router.models_for_capability(capability)
    return {"capability": capability, "models": [m.to_dict() for m in models]}


@router.get("/api/models/recommended")
async def recommended_model(
    capability: str,
    backend: Optional[str] = None,
    capability_router: CapabilityRouter = Depends(get_router),
):
    model = capability_router.recommended_model(capability, backend)
    return {"capability": capability, "tier": capability_router.get_tier().name, "model": model.to_dict() if model else None}


@router.get("/api/models/status")
async def model_status(model_id: str, capability_router: CapabilityRouter = Depends(get_router)):
    return capability_router.model_status(model_id)


@router.get("/api/models/loaded")
async def loaded_models(capability_router: CapabilityRouter = Depends(get_router)):
    return {"models": [h.to_dict() for h in capability_router.loaded_models()]}


@router.post("/api/models/pull")
async def pull_model(payload: ModelActionRequest, capability_router: CapabilityRouter = Depends(get_router)):
    queue: asyncio.Queue = asyncio.Queue()

    async def on_progress(progress: PullProgress) -> None:
        await queue.put({"type": "progress", **progress.to_dict()})

    async def run_pull() -> None:
        result: Dict[str, Any] = {"type": "result", "model_id": payload.model_id, "ok": False}
        try:
            result["ok"] = await capability_router.pull_model(payload.model_id, on_progress, payload.backend)
        except BrokerError as exc:
            result["error"] = exc.to_dict()
        finally:
            queue.put_nowait(result)

    async def event_generator():
        task = asyncio.create_task(run_pull())
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
                if ev.get("type") == "result":
                    break
        except asyncio.CancelledError:
            pass
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/models/progress")
async def stream_pull_progress(capability_router: CapabilityRouter = Depends(get_router)):
    async def event_generator():
        queue = await capability_router.progress.subscribe()
        try:
            while True:
                progress = await queue.get()
                yield sse_format(progress.to_dict())
        except asyncio.CancelledError:
            pass
        finally:
            await capability_router.progress.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.post("/api/models/delete")
async def delete_model(payload: ModelActionRequest, capability_router: CapabilityRouter = Depends(get_router)):
    ok = await guarded(capability_router.delete_model(payload.model_id, payload.backend))
    return {"ok": ok, "model_id": payload.model_id}


@router.post("/api/models/load")
async def load_model(payload: ModelActionRequest, capability_router: CapabilityRouter = Depends(get_router)):
    ok = await guarded(capability_router.load_model(payload.model_id, payload.backend))
    return {"ok": ok, "model_id": payload.model_id}


@router.post("/api/models/unload")
async def unload_model(payload: ModelActionRequest, capability_router: CapabilityRouter = Depends(get_router)):
    ok = await guarded(capability_router.unload_model(payload.model_id, payload.backend))
    return {"ok": ok, "model_id": payload.model_id}


@router.get("/api/stats")
async def system_stats(capability_router: CapabilityRouter = Depends(get_router)):
    return await capability_router.system_stats()


@router.post("/api/chat")
async def chat(payload: ChatRequest, capability_router: CapabilityRouter = Depends(get_router)):
    response = await guarded(capability_router.chat(payload))
    return response.to_dict()


@router.post("/api/generate")
async def generate(payload: GenerateRequest, capability_router: CapabilityRouter = Depends(get_router)):
    response = await guarded(capability_router.generate(payload))
    return response.to_dict()


@router.post("/api/embed")
async def embed(payload: EmbedRequest, capability_router: CapabilityRouter = Depends(get_router)):
    response = await guarded(capability_router.embed(payload))
    return response.to_dict()


@router.post("/api/vision")
async def vision(payload: VisionRequest, capability_router: CapabilityRouter = Depends(get_router)):
    response = await guarded(capability_router.vision(payload))
    return response.to_dict()


@router.post("/api/audio")
async def audio(payload: AudioRequest, capability_router: CapabilityRouter = Depends(get_router)):
    response = await guarded(capability_router.audio(payload))
    return response.to_dict()


@router.post("/api/image")
async def image_gen(payload: ImageGenRequest, capability_router: CapabilityRouter = Depends(get_router)):
    response = await guarded(capability_router.image_gen(payload))
    return response.to_dict()


@router.get("/api/custom-models")
async def list_custom_models(store: PreferenceStore = Depends(get_store)):
    return {"models": await store.list_custom_models()}


@router.post("/api/custom-models")
async def add_custom_model(
    payload: CustomModelRequest,
    store: PreferenceStore = Depends(get_store),
    capability_router: CapabilityRouter = Depends(get_router),
):
    if not payload.capabilities:
        raise HTTPException(status_code=400, detail="At least one capability is required.")
    name = payload.name or payload.hugging_face_id.split("/")[-1]
    try:
        descriptor = capability_router.add_custom_model(
            payload.hugging_face_id, name, payload.capabilities, payload.backend, payload.pipeline_task
        )
    except BrokerError as exc:
        raise broker_http_error(exc) from exc
    entry = {**payload.model_dump(), "name": name}
    await store.add_custom_model(entry)
    return {"ok": True, "model": descriptor.to_dict()}


@router.delete("/api/custom-models")
async def remove_custom_model(
    hugging_face_id: str,
    store: PreferenceStore = Depends(get_store),
    capability_router: CapabilityRouter = Depends(get_router),
):
    entries = await store.list_custom_models()
    entry = next((e for e in entries if e.get("hugging_face_id") == hugging_face_id), None)
    if entry is None:
        raise HTTPException(status_code=404, detail="Custom model not found")
    capability_router.remove_custom_model(hugging_face_id, entry.get("backend") or "transformers")
    remaining = await store.remove_custom_model(hugging_face_id)
    return {"ok": True, "models": remaining}


@router.get("/api/defaults")
async def default_models(capability_router: CapabilityRouter = Depends(get_router)):
    return {"defaults": capability_router.default_models()}


@router.put("/api/defaults/{family}")
async def set_default_model(
    family: str,
    payload: DefaultModelRequest,
    store: PreferenceStore = Depends(get_store),
    capability_router: CapabilityRouter = Depends(get_router),
):
    try:
        await store.set_default_model(family, payload.model_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    capability_router.set_default_model(family, payload.model_id)
    return {"ok": True, "defaults": capability_router.default_models()}


@router.get("/api/flows/builtin")
async def list_builtin_flows(tag: Optional[str] = None, task_cards: bool = False):
    if task_cards:
        flows = task_card_flows()
    elif tag:
        flows = builtin_flows_by_tag(tag)
    else:
        flows = BUILTIN_FLOWS
    return {"flows": [f.model_dump() for f in flows]}


@router.get("/api/flows/builtin/{flow_id}")
async def get_builtin_flow_route(flow_id: str):
    flow = get_builtin_flow(flow_id)
    if flow is None:
        raise HTTPException(status_code=404, detail="Flow not found")
    return flow.model_dump()


@router.post("/api/flows/validate")
async def validate_flow_route(request: Request):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Flow body must be an object.")
    return validate_flow(body)


@router.post("/api/flows/execute")
async def execute_flow(payload: FlowExecuteRequest, interpreter: FlowInterpreter = Depends(get_interpreter)):
    flow = resolve_flow(payload)
    result = await guarded(interpreter.execute(flow, payload.inputs))
    return result.to_dict()


@router.post("/api/flows/stream")
async def stream_flow(payload: FlowExecuteRequest, interpreter: FlowInterpreter = Depends(get_interpreter)):
    flow = resolve_flow(payload)
    queue: asyncio.Queue = asyncio.Queue()

    async def on_step_start(step, index):
        await queue.put({"type": "step_start", "step": step.name, "index": index})

    async def on_step_complete(step, index, output):
        await queue.put({"type": "step_complete", "step": step.name, "index": index, "output": output})

    async def on_step_error(step, index, error):
        await queue.put({"type": "step_error", "step": step.name, "index": index, "error": error.message})

    async def on_progress(current, total):
        await queue.put({"type": "progress", "current": current, "total": total})

    async def run_flow() -> None:
        event: Dict[str, Any] = {"type": "result"}
        try:
            result = await interpreter.execute(
                flow,
                payload.inputs,
                on_step_start=on_step_start,
                on_step_complete=on_step_complete,
                on_step_error=on_step_error,
                on_progress=on_progress,
            )
            event.update(result.to_dict())
        except BrokerError as exc:
            event.update({"success": False, "error": exc.message})
        finally:
            queue.put_nowait(event)

    async def event_generator():
        task = asyncio.create_task(run_flow())
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
                if ev.get("type") == "result":
                    break
        except asyncio.CancelledError:
            pass
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.post("/api/plan")
async def build_plan(payload: PlanRequest, capability_router: CapabilityRouter = Depends(get_router)):
    if not payload.request.strip():
        raise HTTPException(status_code=400, detail="Request is required.")
    tier = payload.tier or capability_router.get_tier()
    try:
        plan = create_plan(payload.request, payload.files, tier)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return plan.to_dict()


def create_app(
    settings: BrokerSettings,
    *,
    profiler: Optional[HardwareProfiler] = None,
    governor: Optional[ResourceGovernor] = None,
    backends: Optional[List[Any]] = None,
    capability_router: Optional[CapabilityRouter] = None,
    store: Optional[PreferenceStore] = None,
    pipeline_factory: Optional[PipelineFactory] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.store.init()
        broker = app.state.router
        for family, model_id in (await app.state.store.default_models()).items():
            broker.set_default_model(family, model_id)
        for entry in await app.state.store.list_custom_models():
            try:
                broker.add_custom_model(
                    entry["hugging_face_id"],
                    entry.get("name") or entry["hugging_face_id"],
                    entry.get("capabilities") or [],
                    entry.get("backend") or "transformers",
                    entry.get("pipeline_task"),
                )
            except (BrokerError, KeyError) as exc:
                logger.warning("Skipping custom model entry %s: %s", entry, exc)
        snapshot = await asyncio.to_thread(app.state.profiler.detect)
        await broker.initialize(snapshot.tier)
        sweep = asyncio.create_task(idle_sweep(app))
        try:
            yield
        finally:
            sweep.cancel()
            try:
                await sweep
            except asyncio.CancelledError:
                pass
            await broker.close()

    telemetry = ResourceTelemetry()
    app = FastAPI(title="Local Inference Broker", lifespan=lifespan)
    app.state.settings = settings
    app.state.profiler = profiler or HardwareProfiler(telemetry, cache_s=settings.hardware_cache_s)
    if capability_router is None:
        governor = governor or ResourceGovernor(
            telemetry,
            max_budget_bytes=settings.memory_budget_bytes,
            budget_fraction=settings.memory_budget_fraction,
            default_budget_bytes=settings.default_budget_bytes,
            stats_cache_s=settings.stats_cache_s,
        )
        if backends is None:
            backends = build_backends(settings, governor, pipeline_factory)
        capability_router = CapabilityRouter(backends, governor, order=settings.backend_order)
    app.state.router = capability_router
    app.state.store = store or PreferenceStore(settings.database_path)
    app.state.interpreter = FlowInterpreter(
        capability_router,
        max_step_runs=settings.flow_max_step_runs,
        image_max_size=settings.flow_image_max_size,
        pdf_max_chars=settings.flow_pdf_max_chars,
        text_max_chars=settings.flow_text_max_chars,
    )
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("BROKER_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "broker.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
