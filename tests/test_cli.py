import json

import respx
from httpx import Response

from broker_cli import DEFAULT_API_BASE, main

STATUS = {
    "providers": {
        "ollama": {"status": "available", "error": None},
        "huggingface": {"status": "unavailable", "error": "HuggingFace API key not configured"},
    },
    "recommended_provider": "ollama",
    "tier": "STEADY",
}


def sse(*events) -> bytes:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode("utf-8")


def test_no_command_prints_help_and_fails(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out


def test_status_prints_each_provider(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get(f"{DEFAULT_API_BASE}/api/providers/status").mock(return_value=Response(200, json=STATUS))
        assert main(["status"]) == 0
    out = capsys.readouterr().out
    assert "Tier: STEADY" in out
    assert "- ollama: available" in out
    assert "- huggingface: unavailable (HuggingFace API key not configured)" in out
    assert "Recommended: ollama" in out


def test_status_refresh_posts_and_reports_http_errors(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post("http://broker.test/api/providers/refresh").mock(return_value=Response(500))
        assert main(["--base-url", "http://broker.test/", "status", "--refresh"]) == 1
    assert "HTTP 500" in capsys.readouterr().out


def test_hardware_summary(capsys):
    body = {"tier": "HEAVY", "memory": {"total_gb": 32, "available_gb": 20}, "vram_gb": 12, "gpu": {"name": "RTX 4070"}}
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.route(method="GET", host="127.0.0.1", path="/api/hardware").mock(return_value=Response(200, json=body))
        assert main(["hardware"]) == 0
    out = capsys.readouterr().out
    assert "Tier: HEAVY" in out
    assert "VRAM: 12 GB" in out
    assert "GPU: RTX 4070" in out


def test_models_filters_by_capability(capsys):
    models = [
        {"id": "ollama:llava:7b", "size_label": "4.5 GB", "tier": "STEADY", "capabilities": ["chat", "image-to-text"], "is_installed": True},
        {"id": "ollama:mistral:7b", "size_label": "4 GB", "tier": "STEADY", "capabilities": ["chat"], "is_loaded": True},
    ]
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get(f"{DEFAULT_API_BASE}/api/models").mock(return_value=Response(200, json={"models": models}))
        assert main(["models", "--capability", "image-to-text"]) == 0
    out = capsys.readouterr().out
    assert "ollama:llava:7b  4.5 GB  STEADY [installed]" in out
    assert "mistral" not in out


def test_pull_prints_progress_until_result(capsys):
    body = sse(
        {"type": "progress", "model_id": "ollama:phi4", "phase": "downloading", "percent": 40},
        {"type": "progress", "model_id": "ollama:phi4", "phase": "complete", "percent": 100},
        {"type": "result", "model_id": "ollama:phi4", "ok": True},
    )
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post(f"{DEFAULT_API_BASE}/api/models/pull").mock(return_value=Response(200, content=body))
        assert main(["pull", "ollama:phi4"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == ["ollama:phi4: downloading 40%", "ollama:phi4: complete 100%", "Pulled ollama:phi4."]


def test_pull_failure_returns_nonzero(capsys):
    body = sse({"type": "result", "model_id": "phi4", "ok": False, "error": {"message": "no backend"}})
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post(f"{DEFAULT_API_BASE}/api/models/pull").mock(return_value=Response(200, content=body))
        assert main(["pull", "phi4"]) == 1
    assert "Failed to pull phi4: no backend" in capsys.readouterr().out


def test_plan_sends_request_and_prints_phases(capsys):
    captured = {}
    plan = {
        "intent": {"primary": "compare"},
        "estimate": {"formatted": "~40 sec"},
        "phases": [
            {"name": "Core Analysis", "description": "Perform compare on inputs", "steps": [{"name": "Analyze Images", "models": ["moondream"]}]},
            {"name": "Synthesis", "description": "Combine and synthesize results", "steps": [{"name": "Synthesize Findings", "models": []}]},
        ],
    }

    def handler(request):
        captured["json"] = json.loads(request.content.decode("utf-8"))
        return Response(200, json=plan)

    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post(f"{DEFAULT_API_BASE}/api/plan").mock(side_effect=handler)
        assert main(["plan", "compare these images", "a.jpg", "b.png", "--tier", "LEAN"]) == 0

    assert captured["json"] == {"request": "compare these images", "files": ["a.jpg", "b.png"], "tier": "LEAN"}
    out = capsys.readouterr().out
    assert "Intent: compare  Estimate: ~40 sec" in out
    assert "  - Analyze Images (moondream)" in out
    assert "  - Synthesize Findings" in out
