import math
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from .flow_files import FileInfo
from .hardware import HardwareTier, primary_model

ANALYZE = "analyze"
SUMMARIZE = "summarize"
EXTRACT = "extract"
GENERATE = "generate"
TRANSFORM = "transform"
SEARCH = "search"
ORGANIZE = "organize"
COMPARE = "compare"
TRANSCRIBE = "transcribe"

# Checked in this order; the first hit becomes the primary intent.
INTENT_KEYWORDS: Dict[str, List[str]] = {
    ANALYZE: ["analyze", "analysis", "examine", "inspect", "look at", "check", "review"],
    SUMMARIZE: ["summarize", "summary", "tldr", "overview", "brief", "condense"],
    EXTRACT: ["extract", "pull out", "get", "find", "identify", "detect"],
    GENERATE: ["generate", "create", "make", "write", "produce", "build"],
    TRANSFORM: ["convert", "transform", "change", "modify", "process"],
    SEARCH: ["search", "find", "look for", "locate", "where"],
    ORGANIZE: ["organize", "sort", "categorize", "group", "arrange", "structure"],
    COMPARE: ["compare", "difference", "similar", "contrast", "match"],
    TRANSCRIBE: ["transcribe", "transcription", "speech to text", "audio to text"],
}
KEYWORD_CONFIDENCE = 0.8
EMBEDDING_MODEL = "nomic-embed-text"

TIER_MULTIPLIER = {
    HardwareTier.LEAN: 4.0,
    HardwareTier.STEADY: 2.0,
    HardwareTier.HEAVY: 1.0,
    HardwareTier.SURPLUS: 0.5,
}
SECONDS_PER_FILE = {"image": 5, "document": 10, "audio": 30, "code": 3}
SYNTHESIS_OVERHEAD_S = 30


@dataclass
class Intent:
    primary: str
    matches: List[Dict[str, Any]]
    context: Dict[str, bool]
    raw: str

    def to_dict(self) -> Dict[str, Any]:
        return {"primary": self.primary, "all": list(self.matches), "context": dict(self.context), "raw": self.raw}


@dataclass
class PlanStep:
    id: str
    name: str
    description: str
    models: List[str] = field(default_factory=list)
    tool: Optional[str] = None
    prompt: Optional[str] = None
    status: str = "pending"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "models": list(self.models),
            "status": self.status,
        }
        if self.tool:
            data["tool"] = self.tool
        if self.prompt:
            data["prompt"] = self.prompt
        return data


@dataclass
class PlanPhase:
    name: str
    description: str
    steps: List[PlanStep] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "steps": [s.to_dict() for s in self.steps]}


@dataclass
class ExecutionPlan:
    id: str
    request: str
    intent: Intent
    phases: List[PlanPhase]
    models_needed: List[str]
    estimate: Dict[str, Any]
    tier: HardwareTier
    status: str = "pending"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request": self.request,
            "intent": self.intent.to_dict(),
            "phases": [p.to_dict() for p in self.phases],
            "models_needed": list(self.models_needed),
            "estimate": dict(self.estimate),
            "tier": self.tier.name,
            "status": self.status,
        }


def extract_intent(request: str) -> Intent:
    lower = request.lower()
    matches = [
        {"type": task, "keyword": keyword, "confidence": KEYWORD_CONFIDENCE}
        for task, keywords in INTENT_KEYWORDS.items()
        for keyword in keywords
        if keyword in lower
    ]
    context = {
        "wants_output": any(w in lower for w in ("save", "export", "create", "generate")),
        "mentions_patterns": any(w in lower for w in ("pattern", "trend", "common")),
        "mentions_comparison": any(w in lower for w in ("compare", "similar", "different")),
        "wants_batch": any(w in lower for w in ("all", "each", "every", "folder")),
    }
    primary = matches[0]["type"] if matches else ANALYZE
    return Intent(primary=primary, matches=matches, context=context, raw=request)


def vision_prompt(intent: Intent) -> str:
    base = "Analyze this image and provide a detailed description."
    extra = {
        EXTRACT: "Focus on extracting specific information, objects, and text visible in the image.",
        ORGANIZE: "Identify key attributes that could be used for categorization and organization.",
        COMPARE: "Note distinctive features, style, composition, and content for comparison purposes.",
    }.get(intent.primary)
    return f"{base} {extra}" if extra else base


def text_prompt(intent: Intent) -> str:
    if intent.primary == SUMMARIZE:
        return "Provide a concise summary of this document, highlighting key points and main arguments."
    if intent.primary == EXTRACT:
        return "Extract key information, facts, names, dates, and important details from this document."
    if intent.primary == ANALYZE:
        return "Analyze this document, identifying its main themes, arguments, and structure."
    return "Process this document and provide relevant insights."


def _category_counts(files: List[FileInfo]) -> Counter:
    return Counter(f.category for f in files)


def _processing_phase(counts: Counter, tier: HardwareTier) -> PlanPhase:
    phase = PlanPhase("Document Processing", "Prepare files for analysis")
    if counts["audio"]:
        phase.steps.append(
            PlanStep(
                id="transcribe",
                name="Transcribe Audio",
                description="Convert audio files to text using Whisper",
                tool="whisper",
                models=[primary_model(tier, "audio")],
            )
        )
    return phase


def _core_phase(intent: Intent, counts: Counter, tier: HardwareTier) -> PlanPhase:
    phase = PlanPhase("Core Analysis", f"Perform {intent.primary} on inputs")
    if counts["image"]:
        phase.steps.append(
            PlanStep(
                id="vision_analysis",
                name="Analyze Images",
                description="Describe and analyze image content",
                models=[primary_model(tier, "vision")],
                prompt=vision_prompt(intent),
            )
        )
    if counts["document"] or counts["code"] or counts["data"]:
        phase.steps.append(
            PlanStep(
                id="text_analysis",
                name="Analyze Text Content",
                description="Process and analyze text documents",
                models=[primary_model(tier, "language")],
                prompt=text_prompt(intent),
            )
        )
    if intent.context["mentions_patterns"] or intent.context["mentions_comparison"]:
        phase.steps.append(
            PlanStep(
                id="embeddings",
                name="Generate Embeddings",
                description="Create semantic embeddings for similarity analysis",
                models=[EMBEDDING_MODEL],
            )
        )
    return phase


def _synthesis_phase(intent: Intent, file_count: int, tier: HardwareTier) -> PlanPhase:
    language = primary_model(tier, "language")
    phase = PlanPhase("Synthesis", "Combine and synthesize results")
    if intent.context["mentions_patterns"]:
        phase.steps.append(
            PlanStep("pattern_detection", "Detect Patterns", "Find common themes and patterns across documents", [language])
        )
    if intent.context["mentions_comparison"]:
        phase.steps.append(PlanStep("comparison", "Compare and Contrast", "Identify similarities and differences", [language]))
    if file_count > 1:
        phase.steps.append(
            PlanStep("synthesis", "Synthesize Findings", "Combine individual analyses into cohesive summary", [language])
        )
    return phase


def _output_phase(tier: HardwareTier) -> PlanPhase:
    return PlanPhase(
        "Output Generation",
        "Create final deliverables",
        [PlanStep("format_output", "Format Output", "Generate final output document", [primary_model(tier, "language")])],
    )


def estimate_duration(phases: List[PlanPhase], files: List[FileInfo], tier: HardwareTier) -> Dict[str, Any]:
    counts = _category_counts(files)
    base = sum(counts[category] * seconds for category, seconds in SECONDS_PER_FILE.items())
    if len(phases) > 2:
        base += SYNTHESIS_OVERHEAD_S
    total = int(math.floor(base * TIER_MULTIPLIER.get(tier, 2.0) + 0.5))
    minutes = math.ceil(total / 60)
    return {"seconds": total, "formatted": f"~{minutes} min" if minutes > 1 else f"~{total} sec"}


def create_plan(
    request: str,
    files: Iterable[Union[str, FileInfo]],
    tier: Union[HardwareTier, str, int, None] = None,
) -> ExecutionPlan:
    """Turn a free-text request and a file list into a phased, estimated plan."""
    tier = HardwareTier.parse(tier, HardwareTier.LEAN) if tier is not None else HardwareTier.LEAN
    infos = [f if isinstance(f, FileInfo) else FileInfo.from_path(f) for f in files]
    counts = _category_counts(infos)
    intent = extract_intent(request)

    candidates = [_processing_phase(counts, tier), _core_phase(intent, counts, tier)]
    if len(infos) > 1 or intent.context["mentions_comparison"]:
        candidates.append(_synthesis_phase(intent, len(infos), tier))
    if intent.context["wants_output"]:
        candidates.append(_output_phase(tier))
    phases = [p for p in candidates if p.steps]

    models: List[str] = []
    for phase in phases:
        for step in phase.steps:
            for model in step.models:
                if model not in models:
                    models.append(model)

    return ExecutionPlan(
        id=f"plan_{int(time.time() * 1000)}",
        request=request,
        intent=intent,
        phases=phases,
        models_needed=models,
        estimate=estimate_duration(phases, infos, tier),
        tier=tier,
    )
