from typing import List, Optional

from .flow_schema import Flow, FlowInput, FlowStep

TASK_CARD_IDS = [
    "builtin-chat",
    "builtin-analyze-document",
    "builtin-describe-images",
    "builtin-write-content",
    "builtin-research",
    "builtin-summarize",
    "builtin-creative-brief",
]


def _flow(
    flow_id: str,
    name: str,
    icon: str,
    description: str,
    inputs: List[FlowInput],
    steps: List[FlowStep],
    tags: List[str],
    output_format: str = "markdown",
) -> Flow:
    return Flow(
        id=flow_id,
        name=name,
        icon=icon,
        description=description,
        category="builtin",
        inputs=inputs,
        steps=steps,
        output_format=output_format,
        tags=tags,
    )


BUILTIN_FLOWS: List[Flow] = [
    _flow(
        "builtin-chat",
        "Chat",
        "chat",
        "Free-form conversation with an assistant",
        [FlowInput(name="message", type="textarea", label="Your message", placeholder="Type your message...", required=True)],
        [
            FlowStep(
                name="respond",
                capability="text",
                input="$message",
                prompt="You are a helpful assistant. Answer the user's message thoughtfully and accurately.",
                output="response",
            )
        ],
        ["conversation", "general"],
        output_format="chat",
    ),
    _flow(
        "builtin-analyze-document",
        "Analyze Document",
        "doc",
        "Extract information from a document and summarize it",
        [
            FlowInput(
                name="document",
                type="file",
                label="Upload document",
                required=True,
                accepts=["image/*", ".pdf", ".doc", ".docx", ".txt", ".md"],
            ),
            FlowInput(name="focus", type="text", label="What to focus on (optional)", placeholder="e.g., key dates, action items"),
        ],
        [
            FlowStep(
                name="analyze",
                capability="vision",
                input="$document",
                prompt=(
                    "Analyze this document thoroughly. {{#if focus}}Focus especially on: {{focus}}{{/if}}\n\n"
                    "Extract and organize:\n"
                    "1. Main topic and purpose\n"
                    "2. Key points and arguments\n"
                    "3. Important dates, names, or figures\n"
                    "4. Action items or conclusions\n\n"
                    "Present the analysis in a clear, structured format."
                ),
                output="analysis",
            )
        ],
        ["document", "analysis", "summary"],
    ),
    _flow(
        "builtin-describe-images",
        "Describe Images",
        "image",
        "Write detailed descriptions of images",
        [
            FlowInput(name="image", type="file", label="Upload image", required=True, accepts=["image/*"]),
            FlowInput(
                name="style",
                type="select",
                label="Description style",
                options=["Detailed", "Concise", "Alt Text", "Technical", "Creative"],
                default_value="Detailed",
            ),
        ],
        [
            FlowStep(
                name="describe",
                capability="vision",
                input="$image",
                prompt=(
                    "Describe this image in {{style}} style.\n\n"
                    "Detailed: cover subject, composition, colors, lighting, background and any visible text.\n"
                    "Concise: two or three accurate sentences.\n"
                    "Alt Text: accessibility text under 125 characters.\n"
                    "Technical: framing, likely camera settings, palette and quality.\n"
                    "Creative: mood, symbolism and emotional resonance."
                ),
                output="description",
            )
        ],
        ["image", "vision", "accessibility"],
    ),
    _flow(
        "builtin-write-content",
        "Write Content",
        "write",
        "Generate articles, emails and other written content",
        [
            FlowInput(
                name="contentType",
                type="select",
                label="Content type",
                required=True,
                options=["Email", "Article", "Blog Post", "Social Media", "Press Release", "Report", "Letter"],
            ),
            FlowInput(name="topic", type="textarea", label="Topic and key points", required=True),
            FlowInput(
                name="tone",
                type="select",
                label="Tone",
                options=["Professional", "Casual", "Formal", "Friendly", "Persuasive", "Informative"],
                default_value="Professional",
            ),
            FlowInput(name="length", type="select", label="Length", options=["Short", "Medium", "Long"], default_value="Medium"),
        ],
        [
            FlowStep(
                name="write",
                capability="text",
                input="$topic",
                prompt=(
                    "Write a {{contentType}} about the following topic:\n\n{{topic}}\n\n"
                    "Guidelines:\n"
                    "- Tone: {{tone}}\n"
                    "- Length: {{length}} (Short ~100 words, Medium ~300 words, Long ~600 words)\n"
                    "- Open clearly and close with a conclusion\n"
                    "- Format it appropriately for the content type"
                ),
                output="content",
            )
        ],
        ["writing", "content", "generation"],
    ),
    _flow(
        "builtin-research",
        "Research",
        "search",
        "Deep-dive questions and research on any topic",
        [
            FlowInput(name="question", type="textarea", label="Research question", required=True),
            FlowInput(
                name="depth",
                type="select",
                label="Research depth",
                options=["Quick Overview", "Moderate Detail", "Comprehensive"],
                default_value="Moderate Detail",
            ),
            FlowInput(name="context", type="textarea", label="Additional context (optional)"),
        ],
        [
            FlowStep(
                name="research",
                capability="text",
                input="$question",
                prompt=(
                    "Research the following question thoroughly:\n\n{{question}}\n\n"
                    "{{#if context}}Additional context: {{context}}{{/if}}\n\n"
                    "Depth level: {{depth}}\n\n"
                    "Cover background, key concepts, the main perspectives and practical implications, "
                    "going deeper as the depth level increases. Use clear headings."
                ),
                output="research",
            )
        ],
        ["research", "learning", "analysis"],
    ),
    _flow(
        "builtin-summarize",
        "Summarize Data",
        "data",
        "Condense documents and data into key points",
        [
            FlowInput(name="content", type="textarea", label="Content to summarize", required=True),
            FlowInput(
                name="format",
                type="select",
                label="Summary format",
                options=["Bullet Points", "Paragraph", "Executive Summary", "Key Takeaways"],
                default_value="Bullet Points",
            ),
            FlowInput(
                name="maxLength",
                type="select",
                label="Maximum length",
                options=["Very Brief (1-3 points)", "Brief (5-7 points)", "Standard (10+ points)"],
                default_value="Brief (5-7 points)",
            ),
        ],
        [
            FlowStep(
                name="summarize",
                capability="text",
                input="$content",
                prompt=(
                    "Summarize the following content:\n\n{{content}}\n\n"
                    "Format: {{format}}\nLength: {{maxLength}}\n\n"
                    "Focus on the most important and actionable information."
                ),
                output="summary",
            )
        ],
        ["summary", "data", "condensing"],
    ),
    _flow(
        "builtin-creative-brief",
        "Creative Brief",
        "creative",
        "Generate creative concepts and campaign ideas",
        [
            FlowInput(name="project", type="textarea", label="Project description", required=True),
            FlowInput(name="audience", type="text", label="Target audience", required=True),
            FlowInput(name="goals", type="textarea", label="Goals and objectives", required=True),
            FlowInput(name="constraints", type="textarea", label="Constraints or requirements (optional)"),
        ],
        [
            FlowStep(
                name="brief",
                capability="text",
                input="$project",
                prompt=(
                    "Create a creative brief for this project.\n\n"
                    "Project: {{project}}\nTarget audience: {{audience}}\nGoals: {{goals}}\n"
                    "{{#if constraints}}Constraints: {{constraints}}{{/if}}\n\n"
                    "Include a project overview, audience insights, the creative strategy, "
                    "three distinct concepts with taglines, and success metrics."
                ),
                output="brief",
            )
        ],
        ["creative", "marketing", "campaign"],
    ),
    _flow(
        "builtin-transcribe",
        "Transcribe",
        "audio",
        "Convert speech in an audio file to text",
        [
            FlowInput(
                name="audio",
                type="file",
                label="Upload audio",
                required=True,
                accepts=["audio/*", ".mp3", ".wav", ".m4a", ".ogg", ".flac"],
            ),
            FlowInput(
                name="language",
                type="select",
                label="Language",
                options=["Auto-detect", "English", "Spanish", "French", "German", "Other"],
                default_value="Auto-detect",
            ),
        ],
        [
            FlowStep(
                name="transcribe",
                capability="audio",
                input="$audio",
                prompt="Transcribe the audio accurately, keeping speaker changes distinct.",
                output="transcript",
            )
        ],
        ["audio", "transcription", "speech"],
    ),
]


def get_builtin_flow(flow_id: str) -> Optional[Flow]:
    for flow in BUILTIN_FLOWS:
        if flow.id == flow_id:
            return flow
    return None


def builtin_flows_by_tag(tag: str) -> List[Flow]:
    return [f for f in BUILTIN_FLOWS if tag in f.tags]


def task_card_flows() -> List[Flow]:
    return [f for f in BUILTIN_FLOWS if f.id in TASK_CARD_IDS]
