import argparse
import json
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_status(status: dict) -> None:
    providers = status.get("providers") or {}
    if not providers:
        print("No providers configured.")
        return
    print(f"Tier: {status.get('tier')}")
    for kind, info in providers.items():
        line = f"- {kind}: {info.get('status')}"
        if info.get("error"):
            line += f" ({info['error']})"
        print(line)
    recommended = status.get("recommended_provider")
    print(f"Recommended: {recommended}" if recommended else "No provider available.")


def _print_progress(event: dict) -> None:
    if event.get("type") == "result":
        if event.get("ok"):
            print(f"Pulled {event.get('model_id')}.")
        else:
            error = (event.get("error") or {}).get("message") or "pull failed"
            print(f"Failed to pull {event.get('model_id')}: {error}")
        return
    line = f"{event.get('model_id')}: {event.get('phase')} {event.get('percent', 0)}%"
    if event.get("error"):
        line += f" ({event['error']})"
    print(line)


def run_status(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    path = "/api/providers/refresh" if args.refresh else "/api/providers/status"
    with httpx.Client() as client:
        resp = client.request("POST" if args.refresh else "GET", _join_url(base, path), timeout=30)
        if resp.status_code >= 400:
            print(f"Failed to fetch status: HTTP {resp.status_code}")
            return 1
        _print_status(resp.json())
    return 0


def run_hardware(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/hardware"), params={"refresh": args.refresh}, timeout=30)
        if resp.status_code >= 400:
            print(f"Failed to detect hardware: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    memory = data.get("memory") or {}
    print(f"Tier: {data.get('tier')}")
    print(f"RAM: {memory.get('total_gb')} GB total, {memory.get('available_gb')} GB available")
    print(f"VRAM: {data.get('vram_gb')} GB")
    gpu = data.get("gpu") or {}
    if gpu.get("name"):
        print(f"GPU: {gpu['name']}")
    return 0


def run_models(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/models"), timeout=30)
        if resp.status_code >= 400:
            print(f"Failed to list models: HTTP {resp.status_code}")
            return 1
        models = resp.json().get("models") or []
    if args.capability:
        models = [m for m in models if args.capability in (m.get("capabilities") or [])]
    if not models:
        print("No models found.")
        return 0
    for model in models:
        flags = []
        if model.get("is_installed"):
            flags.append("installed")
        if model.get("is_loaded"):
            flags.append("loaded")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"{model.get('id')}  {model.get('size_label')}  {model.get('tier')}{suffix}")
    return 0


def run_pull(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"model_id": args.model_id, "backend": args.backend}
    ok = False
    with httpx.Client(timeout=None) as client:
        with client.stream("POST", _join_url(base, "/api/models/pull"), json=payload) as resp:
            if resp.status_code >= 400:
                print(f"Failed to start pull: HTTP {resp.status_code}")
                return 1
            for line in resp.iter_lines():
                if not line.startswith("data: "):
                    continue
                event = json.loads(line[len("data: "):])
                _print_progress(event)
                if event.get("type") == "result":
                    ok = bool(event.get("ok"))
                    break
    return 0 if ok else 1


def run_plan(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"request": args.request, "files": args.files or [], "tier": args.tier}
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/plan"), json=payload, timeout=30)
        if resp.status_code >= 400:
            print(f"Failed to build plan: HTTP {resp.status_code}")
            return 1
        plan = resp.json()
    print(f"Intent: {plan['intent']['primary']}  Estimate: {plan['estimate']['formatted']}")
    for phase in plan.get("phases") or []:
        print(f"{phase['name']}: {phase['description']}")
        for step in phase.get("steps") or []:
            models = ", ".join(step.get("models") or [])
            print(f"  - {step['name']} ({models})" if models else f"  - {step['name']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inference broker CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    status = subparsers.add_parser("status", help="Show provider status")
    status.add_argument("--refresh", action="store_true", help="Re-probe every backend first")

    hardware = subparsers.add_parser("hardware", help="Show detected hardware and tier")
    hardware.add_argument("--refresh", action="store_true", help="Bypass the hardware cache")

    models = subparsers.add_parser("models", help="List models across backends")
    models.add_argument("--capability", help="Only models supporting this capability")

    pull = subparsers.add_parser("pull", help="Download a model and print progress")
    pull.add_argument("model_id", help="Model id, e.g. ollama:llama3.2:3b")
    pull.add_argument("--backend", help="Backend kind when the id has no prefix")

    plan = subparsers.add_parser("plan", help="Build an execution plan for a request")
    plan.add_argument("request", help="What you want done")
    plan.add_argument("files", nargs="*", help="Files the request applies to")
    plan.add_argument("--tier", help="Override the hardware tier")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    commands = {
        "status": run_status,
        "hardware": run_hardware,
        "models": run_models,
        "pull": run_pull,
        "plan": run_plan,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
