"""CLI entrypoint for the autonomy loops and the spec directory."""

from __future__ import annotations

import argparse
import datetime as dt
import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

from .actions import SupervisorConfig
from .config import AutonomySettings
from .exceptions import AutonomyError
from .invoker import AgentClient, AgentInvoker
from .loop import LoopConfig, LoopController, LoopFlags
from .presets import (
    DEFAULT_SPEC_DIR,
    DEFAULT_TASK_FILE,
    bind,
    ralph_decide,
    ralph_supervisor_prompt,
    spec_supervisor_prompt,
    spec_worker_decide,
)
from .progress import ProgressTracker
from .run_options import RunOptions
from .specs import SpecDirectory, format_spec_number


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _print(msg: str) -> None:
    print(f"[{_now_iso()}] {msg}", flush=True)


def add_loop_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--once", action="store_true", help="stop after one executed iteration")
    parser.add_argument("--dry-run", action="store_true", help="print the resolved prompt and options, run nothing")
    parser.add_argument("-c", "--context", default=None, help="operator context handed to the decision function")


def loop_flags_from_args(args: argparse.Namespace) -> LoopFlags:
    context = (args.context or "").strip() or None
    return LoopFlags(once=bool(args.once), dry_run=bool(args.dry_run), context=context)


def build_controller(
    config: LoopConfig,
    settings: AutonomySettings,
    flags: LoopFlags,
    emit: Callable[[str], None] = _print,
) -> LoopController:
    return LoopController(
        config,
        root=settings.root,
        tracker=ProgressTracker(settings.root, recent_window_sec=settings.recent_commit_sec),
        invoker=AgentInvoker(AgentClient.from_settings(settings), emit=emit),
        registry=settings.load_registry(),
        flags=flags,
        emit=emit,
    )


def _error_payload(err: Exception, command: str, root: Path | str) -> dict[str, Any]:
    return {
        "ok": False,
        "error": str(err),
        "error_type": type(err).__name__,
        "command": command,
        "root": str(root),
    }


def run_loop(config: LoopConfig, argv: list[str] | None = None) -> int:
    """Run ``config`` with the standard loop flags; for use from user scripts."""
    parser = argparse.ArgumentParser(description=f"{config.name} autonomy loop")
    parser.add_argument("--root", default=".", help="repository root")
    parser.add_argument("--env-file", default="", help="optional path to .env.autonomy")
    add_loop_flags(parser)
    args = parser.parse_args(argv)
    root = Path(args.root)
    try:
        settings = AutonomySettings.from_root(root, Path(args.env_file) if args.env_file else None)
        settings.configure_logging()
        outcome = build_controller(settings.apply_overrides(config), settings, loop_flags_from_args(args)).run()
    except (AutonomyError, FileNotFoundError, ValueError) as err:
        print(json.dumps(_error_payload(err, config.name, root.resolve()), indent=2, sort_keys=True))
        return 1
    return outcome.exit_code


def _add_run_option_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--model", default=None)
    parser.add_argument("--provider", default=None)
    parser.add_argument("--models", default=None, help="cycling list: [provider/]model[:thinking],...")
    parser.add_argument("--thinking", default=None)
    parser.add_argument("--tools", default=None, help="tool allowlist, e.g. read,bash,edit,write")


def _add_cadence_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--timeout", default=None, help="per-run timeout: seconds, 30s, 5m or 1h")
    parser.add_argument("--push-every", type=int, default=None)
    parser.add_argument("--max-iterations", type=int, default=None)
    parser.add_argument("--continuous", action="store_const", const=True, default=None)
    parser.add_argument("--supervisor-every", type=int, default=None)


def _run_options_from_args(args: argparse.Namespace) -> RunOptions:
    return RunOptions(
        model=args.model,
        provider=args.provider,
        models=args.models,
        thinking=args.thinking,
        tools=args.tools,
    )


def _loop_config_from_args(args: argparse.Namespace, settings: AutonomySettings) -> LoopConfig:
    options = _run_options_from_args(args)
    every = args.supervisor_every or settings.supervisor_every
    if args.command == "spec-loop":
        spec_dir = Path(args.spec_dir)
        config = LoopConfig(
            name="spec-worker",
            spec_dir=spec_dir,
            decide=bind(spec_worker_decide, research_options=options, implement_options=options),
            supervisor=SupervisorConfig(prompt=spec_supervisor_prompt, every=every, options=options) if every else None,
        )
    else:
        task_file = Path(args.task_file)
        config = LoopConfig(
            name="ralph",
            task_file=task_file,
            decide=bind(ralph_decide, task_file=task_file, work_options=options, generate_options=options),
            supervisor=SupervisorConfig(
                prompt=ralph_supervisor_prompt(task_file, window=every), every=every, options=options
            )
            if every
            else None,
        )
    config = settings.apply_overrides(config)
    changes: dict[str, Any] = {}
    if args.timeout is not None:
        changes["timeout"] = args.timeout
    if args.push_every is not None:
        changes["push_every"] = args.push_every
    if args.max_iterations is not None:
        changes["max_iterations"] = args.max_iterations
    if args.continuous is not None:
        changes["continuous"] = args.continuous
    if args.supervisor_every and config.supervisor is not None:
        changes["supervisor"] = replace(config.supervisor, every=args.supervisor_every)
    return replace(config, **changes) if changes else config


def _spec_directory(args: argparse.Namespace, settings: AutonomySettings) -> SpecDirectory:
    path = Path(args.spec_dir)
    return SpecDirectory(path if path.is_absolute() else settings.root / path)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Autonomous coding-agent loops")
    parser.add_argument("--root", default=".", help="repository root")
    parser.add_argument("--env-file", default="", help="optional path to .env.autonomy")

    sub = parser.add_subparsers(dest="command", required=True)

    loop = sub.add_parser("loop", help="work through a markdown checklist")
    loop.add_argument("--task-file", default=str(DEFAULT_TASK_FILE))
    spec_loop = sub.add_parser("spec-loop", help="research and implement numbered specs")
    spec_loop.add_argument("--spec-dir", default=str(DEFAULT_SPEC_DIR))
    for loop_parser in (loop, spec_loop):
        add_loop_flags(loop_parser)
        _add_cadence_flags(loop_parser)
        _add_run_option_flags(loop_parser)

    spec_list = sub.add_parser("spec-list")
    spec_next = sub.add_parser("spec-next-number")
    spec_new = sub.add_parser("spec-new")
    spec_new.add_argument("--description", required=True)
    content = spec_new.add_mutually_exclusive_group()
    content.add_argument("--content", default="")
    content.add_argument("--content-file", default="")
    spec_claim = sub.add_parser("spec-claim")
    spec_release = sub.add_parser("spec-release")
    spec_done = sub.add_parser("spec-done")
    for ref_parser in (spec_claim, spec_release, spec_done):
        ref_parser.add_argument("spec", help="file name, path or number")
    for spec_parser in (spec_list, spec_next, spec_new, spec_claim, spec_release, spec_done):
        spec_parser.add_argument("--spec-dir", default=str(DEFAULT_SPEC_DIR))

    sub.add_parser("models", help="list known models and credential status")

    args = parser.parse_args(argv)
    root = Path(args.root).resolve()

    try:
        settings = AutonomySettings.from_root(root, Path(args.env_file) if args.env_file else None)
        settings.configure_logging()

        if args.command in {"loop", "spec-loop"}:
            config = _loop_config_from_args(args, settings)
            outcome = build_controller(config, settings, loop_flags_from_args(args)).run()
            print(json.dumps(outcome.to_dict(), indent=2, sort_keys=True))
            return outcome.exit_code
        if args.command == "models":
            print(json.dumps(settings.load_registry().to_dict(), indent=2, sort_keys=True))
            return 0
        if args.command == "spec-list":
            directory = _spec_directory(args, settings)
            payload = {
                "ok": True,
                "spec_dir": str(directory.path),
                "specs": [item.to_dict() for item in directory.items()],
            }
            print(json.dumps(payload, indent=2, sort_keys=True))
            return 0
        if args.command == "spec-next-number":
            number = _spec_directory(args, settings).next_number()
            print(json.dumps({"next_number": number, "formatted": format_spec_number(number)}, indent=2, sort_keys=True))
            return 0
        if args.command == "spec-new":
            text = Path(args.content_file).read_text(encoding="utf-8") if args.content_file else args.content
            path = _spec_directory(args, settings).create(args.description, text)
            print(json.dumps({"ok": True, "path": str(path)}, indent=2, sort_keys=True))
            return 0
        if args.command in {"spec-claim", "spec-release", "spec-done"}:
            directory = _spec_directory(args, settings)
            item = directory.find(args.spec)
            if args.command == "spec-claim":
                directory.claim(item)
            elif args.command == "spec-release":
                directory.release(item)
            else:
                directory.complete(item)
            print(json.dumps({"ok": True, "command": args.command, "spec": item.name}, indent=2, sort_keys=True))
            return 0
    except (AutonomyError, FileNotFoundError, ValueError) as err:
        print(json.dumps(_error_payload(err, args.command, root), indent=2, sort_keys=True))
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
