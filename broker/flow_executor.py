import asyncio
import inspect
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import BrokerError, FlowExecutionLimitExceeded, FlowValidationError, StepFailure
from .flow_files import ContextFile, resolve_file
from .flow_schema import Flow, FlowCondition, FlowStep, parse_flow, step_capability, step_family, validate_flow
from .provider_types import (
    AUDIO_TASKS,
    FAMILY_AUDIO,
    FAMILY_EMBED,
    FAMILY_IMAGE_GEN,
    FAMILY_VISION,
    IMAGE_TO_TEXT,
    SPEECH_TO_TEXT,
    VISION_TASKS,
    AudioRequest,
    ChatMessage,
    ChatRequest,
    EmbedRequest,
    ImageGenRequest,
    VisionRequest,
)

logger = logging.getLogger("uvicorn.error")

_BRACE_RE = re.compile(r"\{\{([^}]+)\}\}")
_DOLLAR_RE = re.compile(r"\$([a-zA-Z_][a-zA-Z0-9_]*)")


def _as_text(value: Any, sep: str) -> str:
    if isinstance(value, list):
        return sep.join(str(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def interpolate(template: str, inputs: Dict[str, Any], step_results: Dict[str, str]) -> str:
    """Substitute {{name}} and $name references; anything unresolved stays as written."""

    def brace(match: "re.Match[str]") -> str:
        expr = match.group(1).strip()
        # Conditional blocks are not evaluated; only their markers are dropped.
        if expr.startswith("#if ") or expr == "/if":
            return ""
        name = expr[1:] if expr.startswith("$") else expr
        if inputs.get(name) is not None:
            return _as_text(inputs[name], ", ")
        if name in step_results:
            return step_results[name]
        return "{{" + expr + "}}"

    def dollar(match: "re.Match[str]") -> str:
        name = match.group(1)
        if inputs.get(name) is not None:
            return _as_text(inputs[name], ", ")
        if name in step_results:
            return step_results[name]
        return match.group(0)

    return _DOLLAR_RE.sub(dollar, _BRACE_RE.sub(brace, template))


def evaluate_condition(condition: FlowCondition, inputs: Dict[str, Any], step_results: Dict[str, str]) -> bool:
    name = condition.check[1:] if condition.check.startswith("$") else condition.check
    if name in step_results:
        value: Any = step_results[name]
    elif inputs.get(name) is not None:
        value = inputs[name]
    else:
        value = ""
    text = _as_text(value, " ")
    op = condition.operator
    if op == "empty":
        return text.strip() == ""
    if op == "not_empty":
        return text.strip() != ""
    if op == "contains":
        return (condition.value or "").lower() in text.lower()
    if op == "equals":
        return text == condition.value
    if op == "not_equals":
        return text != condition.value
    return True


def resolve_input(step: FlowStep, inputs: Dict[str, Any], step_results: Dict[str, str]) -> str:
    if not step.input:
        return ""
    if not step.input.startswith("$"):
        return step.input
    name = step.input[1:]
    if inputs.get(name) is not None:
        return _as_text(inputs[name], "\n")
    return step_results.get(name, "")


@dataclass
class FlowContext:
    inputs: Dict[str, Any]
    step_results: Dict[str, str] = field(default_factory=dict)
    files: Dict[str, ContextFile] = field(default_factory=dict)

    def images(self, only: Optional[str] = None) -> List[str]:
        files = [self.files[only]] if only in self.files else list(self.files.values())
        return [f.data for f in files if f.is_image and f.data]


@dataclass
class ExecutionResult:
    success: bool
    output: str
    step_results: Dict[str, str]
    error: Optional[str] = None
    duration_ms: int = 0
    steps_run: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "output": self.output,
            "step_results": dict(self.step_results),
            "duration_ms": self.duration_ms,
            "steps_run": self.steps_run,
        }
        if self.error:
            data["error"] = self.error
        return data


StepCallback = Callable[..., Any]


async def _notify(callback: Optional[StepCallback], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class FlowInterpreter:
    """Runs a flow's steps in order against a CapabilityRouter."""

    def __init__(
        self,
        router: Any,
        *,
        max_step_runs: int = 256,
        image_max_size: int = 1024,
        pdf_max_chars: int = 20000,
        text_max_chars: int = 50000,
    ) -> None:
        self.router = router
        self.max_step_runs = max_step_runs
        self.image_max_size = image_max_size
        self.pdf_max_chars = pdf_max_chars
        self.text_max_chars = text_max_chars

    def _resolve_files(self, flow: Flow, context: FlowContext) -> None:
        for item in flow.inputs:
            if item.type != "file":
                continue
            value = context.inputs.get(item.name)
            if not isinstance(value, str) or not value:
                continue
            ctx = resolve_file(
                item.name,
                value,
                image_max_size=self.image_max_size,
                pdf_max_chars=self.pdf_max_chars,
                text_max_chars=self.text_max_chars,
            )
            context.files[item.name] = ctx
            if ctx.text is not None:
                # Documents flow into prompts as their extracted text.
                context.inputs[item.name] = ctx.text

    async def _chat(self, step: FlowStep, system: str, user: str) -> str:
        messages = []
        if system:
            messages.append(ChatMessage(role="system", content=system))
        messages.append(ChatMessage(role="user", content=user))
        response = await self.router.chat(
            ChatRequest(messages=messages, model=step.model_id, preferred_backend=step.backend)
        )
        return response.text

    async def run_step(self, flow: Flow, step: FlowStep, context: FlowContext) -> str:
        user_input = resolve_input(step, context.inputs, context.step_results)
        prompt = interpolate(step.prompt, context.inputs, context.step_results)
        system = "\n\n".join(p for p in (flow.system_prompt, prompt) if p)
        family = step_family(step)
        capability = step_capability(step)
        ref = step.input[1:] if step.input.startswith("$") else None
        file_ref = context.files.get(ref) if ref else None

        if family == FAMILY_VISION:
            images = context.images(ref if file_ref is not None and file_ref.is_image else None)
            if not images:
                return await self._chat(step, system, user_input)
            task = capability if capability in VISION_TASKS else IMAGE_TO_TEXT
            text_part = "" if file_ref is not None and file_ref.is_image else user_input
            vision_prompt = "\n\n".join(p for p in (system, text_part) if p)
            parts = []
            for image in images:
                response = await self.router.vision(
                    VisionRequest(
                        image=image,
                        task=task,
                        prompt=vision_prompt,
                        model=step.model_id,
                        preferred_backend=step.backend,
                    )
                )
                parts.append(response.text)
            return "\n\n".join(parts)

        if family == FAMILY_AUDIO:
            source = file_ref or next((f for f in context.files.values() if f.category == "audio"), None)
            audio = (source.data or source.path) if source is not None else user_input
            task = capability if capability in AUDIO_TASKS else SPEECH_TO_TEXT
            response = await self.router.audio(
                AudioRequest(audio=audio, task=task, model=step.model_id, preferred_backend=step.backend)
            )
            return response.text

        if family == FAMILY_EMBED:
            response = await self.router.embed(
                EmbedRequest(text=user_input or prompt, model=step.model_id, preferred_backend=step.backend)
            )
            return json.dumps(response.embeddings)

        if family == FAMILY_IMAGE_GEN:
            text = "\n\n".join(p for p in (prompt, user_input) if p)
            response = await self.router.image_gen(
                ImageGenRequest(prompt=text, model=step.model_id, preferred_backend=step.backend)
            )
            return response.image

        return await self._chat(step, system, user_input)

    async def execute(
        self,
        flow: Any,
        inputs: Dict[str, Any],
        *,
        on_step_start: Optional[StepCallback] = None,
        on_step_complete: Optional[StepCallback] = None,
        on_step_error: Optional[StepCallback] = None,
        on_progress: Optional[StepCallback] = None,
    ) -> ExecutionResult:
        """Validate then run `flow`; raises FlowValidationError, otherwise failures land in the result."""
        report = validate_flow(flow)
        if not report["valid"]:
            raise FlowValidationError(report["errors"])
        flow = parse_flow(flow)

        started = time.monotonic()
        context = FlowContext(inputs=dict(inputs or {}))
        for item in flow.inputs:
            if context.inputs.get(item.name) in (None, "") and item.default_value is not None:
                context.inputs[item.name] = item.default_value

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        index = 0
        runs = 0
        last_output = ""
        total = len(flow.steps)
        try:
            self._resolve_files(flow, context)
            while index < total:
                runs += 1
                if runs > self.max_step_runs:
                    raise FlowExecutionLimitExceeded(self.max_step_runs, step=flow.steps[index].name)
                step = flow.steps[index]
                await _notify(on_progress, index + 1, total)
                await _notify(on_step_start, step, index)

                if step.condition is not None and evaluate_condition(
                    step.condition, context.inputs, context.step_results
                ):
                    action = step.condition.action
                    if action == "stop":
                        return ExecutionResult(True, last_output, dict(context.step_results), None, elapsed(), runs)
                    if action == "skip":
                        target = step.condition.skip_to
                        jump = next((i for i, s in enumerate(flow.steps) if target and s.name == target), None)
                        index = jump if jump is not None else index + 1
                        continue

                try:
                    output = await self.run_step(flow, step, context)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    failure = StepFailure(step.name, exc)
                    logger.warning("Flow %s: %s", flow.id or flow.name, failure.message)
                    await _notify(on_step_error, step, index, failure)
                    raise failure from exc
                context.step_results[step.output] = output
                last_output = output
                await _notify(on_step_complete, step, index, output)
                index += 1
        except BrokerError as exc:
            return ExecutionResult(False, "", dict(context.step_results), exc.message, elapsed(), runs)
        except ValueError as exc:
            # Unreadable or missing file inputs.
            return ExecutionResult(False, "", dict(context.step_results), str(exc), elapsed(), runs)

        return ExecutionResult(True, last_output, dict(context.step_results), None, elapsed(), runs)
