import time
from typing import Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, ValidationError

from .provider_types import (
    AUDIO_TASKS,
    CAPABILITY_FAMILIES,
    CHAT,
    EMBED,
    FAMILY_AUDIO,
    FAMILY_EMBED,
    FAMILY_IMAGE_GEN,
    FAMILY_TEXT,
    FAMILY_VISION,
    GENERATE,
    LEGACY_MODEL_TYPES,
    SUMMARIZE,
    TEXT_TO_IMAGE,
    TRANSLATE,
    VISION_TASKS,
)

InputType = Literal["text", "textarea", "file", "select", "toggle"]
ConditionOperator = Literal["contains", "empty", "not_empty", "equals", "not_equals"]
ConditionAction = Literal["continue", "skip", "stop"]
InputValue = Union[str, List[str], bool]

# Specific capabilities a step may name instead of a family.
STEP_CAPABILITIES = {CHAT, GENERATE, SUMMARIZE, TRANSLATE, EMBED, TEXT_TO_IMAGE} | set(VISION_TASKS) | set(AUDIO_TASKS)


class FlowInput(BaseModel):
    name: str = ""
    type: InputType = "text"
    label: str = ""
    placeholder: Optional[str] = None
    required: bool = False
    accepts: Optional[List[str]] = None
    options: Optional[List[str]] = None
    default_value: Optional[Union[str, bool]] = None


class FlowCondition(BaseModel):
    check: str
    operator: ConditionOperator
    value: Optional[str] = None
    action: ConditionAction = "continue"
    skip_to: Optional[str] = None


class FlowStep(BaseModel):
    name: str = ""
    description: Optional[str] = None
    capability: Optional[str] = None
    model: Optional[str] = None
    model_id: Optional[str] = None
    backend: Optional[str] = None
    input: str = ""
    prompt: str = ""
    output: str = ""
    condition: Optional[FlowCondition] = None

    model_config = {"protected_namespaces": ()}


class Flow(BaseModel):
    id: str = ""
    name: str = ""
    icon: str = "tool"
    description: str = ""
    category: Literal["builtin", "custom"] = "custom"
    inputs: List[FlowInput] = Field(default_factory=list)
    steps: List[FlowStep] = Field(default_factory=list)
    output_format: Literal["chat", "markdown", "json"] = "chat"
    system_prompt: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


def step_capability(step: FlowStep) -> Optional[str]:
    """Capability name the step asked for, or the family mapped from a legacy model type."""
    if step.capability:
        return step.capability
    if step.model:
        return LEGACY_MODEL_TYPES.get(step.model)
    return None


def step_family(step: FlowStep) -> Optional[str]:
    capability = step_capability(step)
    if capability is None:
        return None
    if capability in CAPABILITY_FAMILIES:
        return capability
    if capability in VISION_TASKS:
        return FAMILY_VISION
    if capability in AUDIO_TASKS:
        return FAMILY_AUDIO
    if capability == EMBED:
        return FAMILY_EMBED
    if capability == TEXT_TO_IMAGE:
        return FAMILY_IMAGE_GEN
    if capability in STEP_CAPABILITIES:
        return FAMILY_TEXT
    return None


def _ref_name(value: str) -> str:
    return value[1:] if value.startswith("$") else value


def _pydantic_errors(exc: ValidationError) -> List[str]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        errors.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return errors


def parse_flow(data: Union[Flow, Dict[str, Any]]) -> Flow:
    if isinstance(data, Flow):
        return data
    return Flow.model_validate(data)


def validate_flow(data: Union[Flow, Dict[str, Any]]) -> Dict[str, Any]:
    try:
        flow = parse_flow(data)
    except ValidationError as exc:
        return {"valid": False, "errors": _pydantic_errors(exc)}

    errors: List[str] = []
    if not flow.name.strip():
        errors.append("Flow name is required")
    if not flow.steps:
        errors.append("Flow must have at least one step")

    input_names: Set[str] = set()
    for i, item in enumerate(flow.inputs, start=1):
        if not item.name.strip():
            errors.append(f"Input {i}: name is required")
        if item.name in input_names:
            errors.append(f'Input {i}: duplicate name "{item.name}"')
        input_names.add(item.name)
        if not item.label.strip():
            errors.append(f"Input {i}: label is required")

    all_outputs = {s.output for s in flow.steps if s.output}
    step_names = {s.name for s in flow.steps if s.name}
    outputs: Set[str] = set()
    for i, step in enumerate(flow.steps, start=1):
        label = f'Step {i} ("{step.name}")' if step.name.strip() else f"Step {i}"
        if not step.name.strip():
            errors.append(f"Step {i}: name is required")
        if not step.prompt.strip():
            errors.append(f"{label}: prompt is required")
        if not step.output.strip():
            errors.append(f"{label}: output variable name is required")
        capability = step_capability(step)
        if capability is None:
            if step.model:
                errors.append(f'{label}: unknown model type "{step.model}"')
            else:
                errors.append(f"{label}: capability or model type is required")
        elif step_family(step) is None:
            errors.append(f'{label}: unknown capability "{capability}"')
        if step.input.startswith("$"):
            ref = _ref_name(step.input)
            if ref not in input_names and ref not in outputs:
                errors.append(f'{label}: input "${ref}" not found')
        if step.condition is not None:
            check = _ref_name(step.condition.check)
            if check not in input_names and check not in all_outputs:
                errors.append(f'{label}: condition variable "${check}" not found')
            if step.condition.action == "skip" and step.condition.skip_to and step.condition.skip_to not in step_names:
                errors.append(f'{label}: skip target "{step.condition.skip_to}" not found')
        if step.output:
            if step.output in outputs:
                errors.append(f'{label}: duplicate output "{step.output}"')
            outputs.add(step.output)

    return {"valid": not errors, "errors": errors}


def validate_inputs(flow: Flow, inputs: Dict[str, Any]) -> Dict[str, Any]:
    missing: List[str] = []
    for item in flow.inputs:
        if not item.required:
            continue
        value = inputs.get(item.name)
        if value is None or value == "" or (isinstance(value, list) and not value):
            missing.append(item.label or item.name)
    return {"valid": not missing, "missing": missing}


def required_capabilities(flow: Flow) -> Set[str]:
    families: Set[str] = set()
    for step in flow.steps:
        family = step_family(step)
        if family:
            families.add(family)
    return families


def create_blank_flow() -> Flow:
    return Flow(name="", icon="tool", category="custom")


def create_simple_flow(
    name: str,
    icon: str,
    description: str,
    input_label: str,
    system_prompt: str,
    model_type: str = "language",
) -> Flow:
    is_vision = model_type == "vision"
    return Flow(
        id=f"custom-{int(time.time() * 1000)}",
        name=name,
        icon=icon,
        description=description,
        category="custom",
        inputs=[
            FlowInput(
                name="input",
                type="file" if is_vision else "textarea",
                label=input_label,
                placeholder="Enter your input...",
                required=True,
                accepts=["image/*"] if is_vision else None,
            )
        ],
        steps=[FlowStep(name="process", model=model_type, input="$input", prompt=system_prompt, output="result")],
        output_format="chat",
    )
