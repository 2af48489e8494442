from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import ProviderConfig
from .errors import ProviderError, ProviderInterruptedError
from .log import configure_logging
from .models import HEADLESS, SUPERVISED, InvocationRequest
from .providers import get_provider, invoke, list_providers, select_provider
from .providers.catalog import ModelValidationError, get_models_for_provider
from .sessions import get_session_metrics
from .signals import TerminationSignal, exit_for_signal
from .utils import load_env_file


AUTO = "auto"


def _emit(payload: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True) + "\n")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentrun", description="Invoke coding-agent CLIs and read their session metrics")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Invoke a provider CLI")
    run.add_argument("provider", choices=(*list_providers(), AUTO), help="Provider name, or auto to use $AGENTRUN_PROVIDER or the first installed CLI.")
    run.add_argument("prompt", nargs="+")
    run.add_argument("--supervised", action="store_true", help="Run interactively with the terminal attached.")
    run.add_argument("--model", help="Model id or CLI format, checked against the provider's model catalog.")
    run.add_argument("--timeout-ms", type=int, help="Hard and stall timeout for headless runs.")
    run.add_argument("--stall-timeout-ms", type=int, help="Override the stall timeout only.")
    run.add_argument("--sandbox", help="Provider sandbox mode (for example workspace-write).")
    run.add_argument("--cwd", default=".", help="Working directory for the provider run.")
    run.add_argument(
        "--env-file",
        help="Extra .env-style file merged into the provider environment.",
    )

    metrics = subparsers.add_parser("metrics", help="Read metrics for a recorded session")
    metrics.add_argument("provider")
    metrics.add_argument("session_id")
    metrics.add_argument("--repo-root", default=".", help="Repository the session ran in.")

    subparsers.add_parser("providers", help="List providers and whether their CLI is installed")

    models = subparsers.add_parser("models", help="List catalogued models")
    models.add_argument("provider", nargs="?", choices=list_providers())
    return parser


def _run(args: argparse.Namespace) -> int:
    prompt = " ".join(part for part in args.prompt if part)
    if not prompt:
        _emit({"error": "prompt is required"})
        return 2
    env: Dict[str, str] = {}
    if args.env_file:
        env_path = Path(args.env_file).expanduser()
        if not env_path.is_file():
            _emit({"error": f"env file not found: {env_path}"})
            return 2
        env = load_env_file(env_path)
    try:
        name = select_provider(None if args.provider == AUTO else args.provider)
        model = get_provider(name).select_model(args.model) if args.model else None
    except ModelValidationError as exc:
        _emit({"error": str(exc), "provider": exc.provider, "suggestions": list(exc.suggestions)})
        return 2
    except ProviderError as exc:
        _emit({"error": str(exc), "error_type": type(exc).__name__, "provider": exc.provider})
        return 2
    config = ProviderConfig(
        model=model,
        timeout_ms=args.timeout_ms,
        stall_timeout_ms=args.stall_timeout_ms,
        working_directory=Path(args.cwd).expanduser().resolve(),
        sandbox_mode=args.sandbox,
        env=env,
    )
    request = InvocationRequest(prompt=prompt, mode=SUPERVISED if args.supervised else HEADLESS, config=config)
    try:
        result = asyncio.run(invoke(name, request, propagate_signals=False))
    except ProviderInterruptedError as exc:
        # Re-raised outside the event loop so the default handlers see it.
        exit_for_signal(TerminationSignal(exc.signal))
        return TerminationSignal(exc.signal).exit_code
    except ProviderError as exc:
        _emit({"error": str(exc), "error_type": type(exc).__name__, "provider": exc.provider})
        return 1
    _emit({"provider": name, **result.to_dict()})
    return 0


def _metrics(args: argparse.Namespace) -> int:
    metrics = get_session_metrics(args.provider, args.session_id, Path(args.repo_root).expanduser().resolve())
    _emit({"provider": args.provider, "session_id": args.session_id, **metrics.to_dict()})
    return 0


def _providers() -> int:
    rows: List[Dict[str, Any]] = []
    for name in list_providers():
        provider = get_provider(name)
        row = provider.describe()
        try:
            row["version"] = provider.probe()
            row["available"] = True
        except ProviderError as exc:
            row["available"] = False
            row["error"] = str(exc)
        rows.append(row)
    _emit({"providers": rows})
    return 0


def _models(args: argparse.Namespace) -> int:
    names = [args.provider] if args.provider else list(list_providers())
    catalog = {name: [model.to_dict() for model in get_models_for_provider(name, get_provider(name).settings.models_path)] for name in names}
    _emit({"models": catalog})
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging()

    if args.command == "run":
        return _run(args)
    if args.command == "metrics":
        return _metrics(args)
    if args.command == "providers":
        return _providers()
    if args.command == "models":
        return _models(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
