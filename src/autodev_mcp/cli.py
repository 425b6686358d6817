"""Autodev command line interface."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from .budget import UsageBand
from .config import AutodevSettings
from .errors import (
    AutodevError,
    DriftError,
    InvalidInputError,
    MergeConflictError,
    PoolExhaustedError,
)
from .git import GitRunnerError
from .server import Components, configure_logging
from .skills import SkillTableError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_EXHAUSTED = 3
EXIT_DRIFT = 4
EXIT_MERGE_CONFLICT = 5
EXIT_WARNING = 10
EXIT_CHECKPOINT = 11

BAND_EXIT_CODES = {
    UsageBand.NORMAL: EXIT_OK,
    UsageBand.WARNING: EXIT_WARNING,
    UsageBand.CHECKPOINT: EXIT_CHECKPOINT,
}


def _emit(args: argparse.Namespace, payload: Any, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        print(text)


# pool


def cmd_pool_init(args: argparse.Namespace, components: Components) -> int:
    state = components.pool.init(args.size)
    _emit(
        args,
        {"pool_size": state.pool_size, "pool_dir": str(components.pool.pool_dir)},
        f"Pool initialized with {state.pool_size} worktrees at {components.pool.pool_dir}",
    )
    return EXIT_OK


def cmd_pool_acquire(args: argparse.Namespace, components: Components) -> int:
    allocation = components.pool.acquire(args.task_id, args.base_ref)
    _emit(
        args,
        allocation.as_dict(),
        f"{allocation.slot_id} {allocation.workspace_path} {allocation.branch_name}",
    )
    return EXIT_OK


def cmd_pool_release(args: argparse.Namespace, components: Components) -> int:
    result = components.pool.release(args.slot_id)
    suffix = " (forced removal)" if result.destroy.degraded else ""
    _emit(args, result.as_dict(), f"Released {result.slot_id}{suffix}")
    return EXIT_OK


def cmd_pool_status(args: argparse.Namespace, components: Components) -> int:
    status = components.pool.status()
    _emit(args, status.as_dict(), status.render())
    return EXIT_OK


def cmd_pool_health(args: argparse.Namespace, components: Components) -> int:
    report = components.pool.health_check()
    if report.ok:
        text = f"Pool health: OK ({report.registered_worktrees} registered worktrees)"
    else:
        text = "\n".join(
            [f"Pool health: {len(report.issues)} issues found"]
            + [f"  {issue.slot_id or '-'}: {issue.kind} {issue.path}" for issue in report.issues]
        )
    _emit(args, report.as_dict(), text)
    report.raise_for_drift()
    return EXIT_OK


def cmd_pool_merge(args: argparse.Namespace, components: Components) -> int:
    report = components.pool.merge_all(args.target_ref)
    lines = [f"Merging into {report.target_ref}"]
    lines += [f"  merged {outcome.branch}" for outcome in report.merged]
    lines += [
        f"  FAILED {outcome.branch}: {', '.join(outcome.conflicts) or outcome.detail}"
        for outcome in report.failed
    ]
    _emit(args, report.as_dict(), "\n".join(lines))
    report.raise_for_failures()
    return EXIT_OK


def cmd_pool_cleanup(args: argparse.Namespace, components: Components) -> int:
    components.pool.cleanup()
    _emit(args, {"status": "cleaned"}, "Pool cleanup complete")
    return EXIT_OK


def cmd_pool_reset(args: argparse.Namespace, components: Components) -> int:
    state = components.pool.reset(args.size)
    _emit(args, {"pool_size": state.pool_size}, f"Pool reset with {state.pool_size} worktrees")
    return EXIT_OK


# state


def cmd_state_init(args: argparse.Namespace, components: Components) -> int:
    state = components.machine.init(args.phase)
    _emit(
        args,
        state.model_dump(mode="json"),
        f"State machine initialized: {state.current_state.value} ({state.session_id})",
    )
    return EXIT_OK


def cmd_state_show(args: argparse.Namespace, components: Components) -> int:
    state = components.machine.load()
    payload = state.model_dump(mode="json") if state else {"current_state": "IDLE"}
    _emit(args, payload, payload["current_state"])
    return EXIT_OK


def cmd_state_work_type(args: argparse.Namespace, components: Components) -> int:
    if args.work_type is None:
        work_type = components.machine.work_type()
        value = work_type.value if work_type else None
        _emit(args, {"work_type": value}, value or "")
        return EXIT_OK

    state = components.machine.set_work_type(args.work_type, args.focus, args.confidence)
    _emit(
        args,
        {
            "work_type": state.work_type.value if state.work_type else None,
            "focus": state.focus,
            "mandatory_skills": state.mandatory_skills,
        },
        f"Work type set: {state.work_type.value if state.work_type else ''}",
    )
    return EXIT_OK


def cmd_state_transition(args: argparse.Namespace, components: Components) -> int:
    result = components.machine.transition(args.phase, success=not args.failed)
    previous = result.previous_state.value if result.previous_state else "NONE"
    lines = [f"Transitioned: {previous} -> {result.current_state.value}"]
    if result.mandatory_skills:
        lines.append(f"MANDATORY_SKILLS: {' '.join(result.mandatory_skills)}")
    _emit(args, result.as_dict(), "\n".join(lines))
    return EXIT_OK


def cmd_state_checkpoint(args: argparse.Namespace, components: Components) -> int:
    note = components.checkpoints.append_checkpoint_note(args.file, args.description)
    _emit(args, {"checkpoint_file": args.file, "note": str(note)}, f"Checkpoint added: {args.file}")
    return EXIT_OK


def cmd_state_tokens(args: argparse.Namespace, components: Components) -> int:
    report = components.budget.add(args.amount)
    _emit(args, report.as_dict(), report.message())
    return BAND_EXIT_CODES[report.band]


def cmd_state_resume(args: argparse.Namespace, components: Components) -> int:
    info = components.machine.resume_info()
    text = "\n".join(
        [
            f"SESSION_ID: {info.session_id}",
            f"CURRENT_STATE: {info.current_state.value}",
            f"WORK_TYPE: {info.work_type.value if info.work_type else ''}",
            f"COMPLETED: {', '.join(phase.value for phase in info.completed_phases)}",
            f"CHECKPOINTS: {', '.join(info.checkpoint_files)}",
        ]
    )
    _emit(args, info.as_dict(), text)
    return EXIT_OK


def cmd_state_skills(args: argparse.Namespace, components: Components) -> int:
    machine = components.machine
    phase = args.phase or machine.current_state()
    work_type = args.work_type if args.work_type is not None else machine.work_type()
    skills = machine.resolve_skills(phase, work_type)
    _emit(args, skills, " ".join(skills))
    return EXIT_OK


def cmd_state_archive(args: argparse.Namespace, components: Components) -> int:
    target = components.machine.archive()
    _emit(
        args,
        {"archived": str(target) if target else None},
        f"Workflow archived to {target}" if target else "No workflow to archive",
    )
    return EXIT_OK


# checkpoint


def cmd_checkpoint_write(args: argparse.Namespace, components: Components) -> int:
    checkpoint = components.checkpoints.write_phase_checkpoint(args.phase, args.summary)
    _emit(args, checkpoint.as_dict(), f"Checkpoint written: {checkpoint.path}")
    return EXIT_OK


def cmd_checkpoint_group(args: argparse.Namespace, components: Components) -> int:
    checkpoint = components.checkpoints.write_group_checkpoint(args.group, args.stage, args.note)
    _emit(args, checkpoint.as_dict(), f"Group checkpoint written: {checkpoint.path}")
    return EXIT_OK


def cmd_checkpoint_read(args: argparse.Namespace, components: Components) -> int:
    context = components.checkpoints.read_resume_context()
    if context is None:
        _emit(args, {"found": False}, "NO_CHECKPOINTS")
        return EXIT_FAILURE
    _emit(args, {"found": True, **context.as_dict()}, context.render())
    return EXIT_OK


def cmd_checkpoint_task(args: argparse.Namespace, components: Components) -> int:
    checkpoint = components.checkpoints.write_task_learning(args.task_id, args.learning)
    _emit(args, checkpoint.as_dict(), f"Learning created: {checkpoint.path}")
    return EXIT_OK


def cmd_checkpoint_context(args: argparse.Namespace, components: Components) -> int:
    path = components.checkpoints.write_context_summary()
    _emit(args, {"path": str(path)}, f"Context summary created: {path}")
    return EXIT_OK


def cmd_checkpoint_handoff(args: argparse.Namespace, components: Components) -> int:
    handoff = components.checkpoints.prepare_handoff(args.reason)
    _emit(args, handoff.as_dict(), f"Handoff prepared: {handoff.next_actions}")
    return EXIT_OK


def cmd_checkpoint_cleanup(args: argparse.Namespace, components: Components) -> int:
    target = components.checkpoints.archive()
    _emit(
        args,
        {"archived": str(target) if target else None},
        f"Memory files archived to: {target}" if target else "No memory files to archive",
    )
    return EXIT_OK


# budget


def cmd_budget_init(args: argparse.Namespace, components: Components) -> int:
    usage = components.budget.init(args.total, args.warning, args.checkpoint)
    _emit(args, usage.model_dump(mode="json"), f"Token budget initialized: {usage.budget}")
    return EXIT_OK


def cmd_budget_add(args: argparse.Namespace, components: Components) -> int:
    report = components.budget.add(args.tokens, args.phase)
    _emit(args, report.as_dict(), report.message())
    return BAND_EXIT_CODES[report.band]


def cmd_budget_estimate(args: argparse.Namespace, components: Components) -> int:
    tokens = components.budget.estimate(args.operation, args.size)
    _emit(args, {"operation": args.operation, "size": args.size, "tokens": tokens}, str(tokens))
    return EXIT_OK


def cmd_budget_status(args: argparse.Namespace, components: Components) -> int:
    status = components.budget.status()
    _emit(args, status.as_dict(), status.render())
    return EXIT_OK


def cmd_budget_check_phase(args: argparse.Namespace, components: Components) -> int:
    report = components.budget.check_phase_budget(args.phase)
    _emit(args, report.as_dict(), report.message())
    return EXIT_DRIFT if report.exceeded else EXIT_OK


def cmd_budget_summarize(args: argparse.Namespace, components: Components) -> int:
    path = components.checkpoints.write_context_summary()
    _emit(
        args,
        {"path": str(path)},
        f"Context summarized: {path}\nConsider removing verbose history from conversation.",
    )
    return EXIT_OK


def cmd_budget_handoff(args: argparse.Namespace, components: Components) -> int:
    handoff = components.checkpoints.prepare_handoff("token_limit")
    _emit(
        args,
        handoff.as_dict(),
        "Session handoff prepared. Start a new session and resume from the context summary.",
    )
    return EXIT_OK


def _optional_int(parser: argparse.ArgumentParser, name: str, help_text: str) -> None:
    parser.add_argument(name, nargs="?", type=int, default=None, help=help_text)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autodev", description="Autodev task orchestration")
    parser.add_argument("--json", action="store_true", help="Output JSON")
    parser.add_argument("--repo-root", type=Path, help="Repository root (default: AUTODEV_REPO_ROOT or .)")
    parser.add_argument("--state-dir", type=Path, help="State directory (default: AUTODEV_STATE_DIR or .claude)")
    groups = parser.add_subparsers(dest="group")

    # pool
    pool = groups.add_parser("pool", help="Manage the worktree pool").add_subparsers(dest="cmd")

    p = pool.add_parser("init", help="Create the pool")
    _optional_int(p, "size", "Number of slots")
    p.set_defaults(func=cmd_pool_init)

    p = pool.add_parser("acquire", help="Allocate a slot to a task")
    p.add_argument("task_id")
    p.add_argument("base_ref", nargs="?", default=None)
    p.set_defaults(func=cmd_pool_acquire)

    p = pool.add_parser("release", help="Release a slot")
    p.add_argument("slot_id")
    p.set_defaults(func=cmd_pool_release)

    pool.add_parser("status", help="Show slot status").set_defaults(func=cmd_pool_status)
    pool.add_parser("health", help="Report drift").set_defaults(func=cmd_pool_health)
    pool.add_parser("cleanup", help="Remove all worktrees").set_defaults(func=cmd_pool_cleanup)

    p = pool.add_parser("reset", help="Cleanup then init")
    _optional_int(p, "size", "Number of slots (default: previous size)")
    p.set_defaults(func=cmd_pool_reset)

    p = pool.add_parser("merge", help="Merge busy slot branches")
    p.add_argument("target_ref", nargs="?", default=None)
    p.set_defaults(func=cmd_pool_merge)

    # state
    state = groups.add_parser("state", help="Phase state machine").add_subparsers(dest="cmd")

    p = state.add_parser("init", help="Start a new session")
    p.add_argument("phase", nargs="?", default="IDLE")
    p.set_defaults(func=cmd_state_init)

    state.add_parser("state", help="Print the current phase").set_defaults(func=cmd_state_show)

    p = state.add_parser("work-type", help="Show or set the work type")
    p.add_argument("work_type", nargs="?", default=None)
    p.add_argument("focus", nargs="?", default=None, help="Comma separated focus areas")
    p.add_argument("confidence", nargs="?", type=float, default=1.0)
    p.set_defaults(func=cmd_state_work_type)

    p = state.add_parser("transition", help="Move to a new phase")
    p.add_argument("phase")
    p.add_argument("--failed", action="store_true", help="Mark the departed phase abandoned")
    p.set_defaults(func=cmd_state_transition)

    p = state.add_parser("checkpoint", help="Register a checkpoint file")
    p.add_argument("file")
    p.add_argument("description", nargs="?", default="")
    p.set_defaults(func=cmd_state_checkpoint)

    p = state.add_parser("tokens", help="Add estimated token usage")
    p.add_argument("amount", type=int)
    p.set_defaults(func=cmd_state_tokens)

    state.add_parser("resume", help="Print resume info").set_defaults(func=cmd_state_resume)

    p = state.add_parser("skills", help="Resolve mandatory skills")
    p.add_argument("phase", nargs="?", default=None)
    p.add_argument("work_type", nargs="?", default=None)
    p.set_defaults(func=cmd_state_skills)

    state.add_parser("archive", help="Archive the workflow record").set_defaults(func=cmd_state_archive)

    # checkpoint
    checkpoint = groups.add_parser("checkpoint", help="Memory files").add_subparsers(dest="cmd")

    p = checkpoint.add_parser("write", help="Write a phase checkpoint")
    p.add_argument("phase")
    p.add_argument("summary")
    p.set_defaults(func=cmd_checkpoint_write)

    p = checkpoint.add_parser("group", help="Checkpoint a parallel execution group")
    p.add_argument("group", type=int)
    p.add_argument("stage", choices=["pre", "post", "failed"])
    p.add_argument("note", nargs="?", default="")
    p.set_defaults(func=cmd_checkpoint_group)

    checkpoint.add_parser("read", help="Print resume context").set_defaults(func=cmd_checkpoint_read)

    p = checkpoint.add_parser("task", help="Record task learnings")
    p.add_argument("task_id")
    p.add_argument("learning")
    p.set_defaults(func=cmd_checkpoint_task)

    checkpoint.add_parser("context", help="Regenerate the context summary").set_defaults(
        func=cmd_checkpoint_context
    )

    p = checkpoint.add_parser("handoff", help="Prepare a session handoff")
    p.add_argument("--reason", default="token_limit")
    p.set_defaults(func=cmd_checkpoint_handoff)

    checkpoint.add_parser("cleanup", help="Archive memory files").set_defaults(func=cmd_checkpoint_cleanup)

    # budget
    budget = groups.add_parser("budget", help="Token budget").add_subparsers(dest="cmd")

    p = budget.add_parser("init", help="Reset usage and set the budget")
    _optional_int(p, "total", "Total token budget")
    p.add_argument("--warning", type=float, default=None)
    p.add_argument("--checkpoint", type=float, default=None)
    p.set_defaults(func=cmd_budget_init)

    p = budget.add_parser("add", help="Record estimated tokens")
    p.add_argument("tokens", type=int)
    p.add_argument("phase", nargs="?", default=None)
    p.set_defaults(func=cmd_budget_add)

    p = budget.add_parser("estimate", help="Estimate an operation's cost")
    p.add_argument("operation")
    p.add_argument("size", nargs="?", default="medium")
    p.set_defaults(func=cmd_budget_estimate)

    budget.add_parser("status", help="Show budget status").set_defaults(func=cmd_budget_status)

    p = budget.add_parser("check-phase", help="Compare a phase with its allotment")
    p.add_argument("phase")
    p.set_defaults(func=cmd_budget_check_phase)

    budget.add_parser("summarize", help="Refresh the context summary").set_defaults(
        func=cmd_budget_summarize
    )
    budget.add_parser("handoff", help="Prepare a session handoff").set_defaults(func=cmd_budget_handoff)

    return parser


def _load_settings(args: argparse.Namespace) -> AutodevSettings:
    settings = AutodevSettings()
    if args.repo_root is not None:
        settings.repo_root = args.repo_root
    if args.state_dir is not None:
        settings.state_dir = args.state_dir
    settings.repo_root = settings.repo_root.expanduser().resolve()
    settings.state_dir = settings.state_dir.expanduser()
    return settings


def _fail(code: int, message: str) -> int:
    print(f"ERROR: {message}", file=sys.stderr)
    return code


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    func: Callable[[argparse.Namespace, Components], int] | None = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return EXIT_FAILURE

    try:
        settings = _load_settings(args)
    except ValidationError as exc:
        return _fail(EXIT_VALIDATION, f"Invalid configuration: {exc}")
    configure_logging(settings.log_level)

    try:
        components = Components(settings)
        return func(args, components)
    except InvalidInputError as exc:
        return _fail(EXIT_VALIDATION, str(exc))
    except PoolExhaustedError as exc:
        return _fail(EXIT_EXHAUSTED, str(exc))
    except DriftError as exc:
        return _fail(EXIT_DRIFT, str(exc))
    except MergeConflictError as exc:
        return _fail(EXIT_MERGE_CONFLICT, str(exc))
    except (AutodevError, GitRunnerError, SkillTableError) as exc:
        logger.debug("Command failed", exc_info=True)
        return _fail(EXIT_FAILURE, str(exc))


if __name__ == "__main__":
    raise SystemExit(main())
