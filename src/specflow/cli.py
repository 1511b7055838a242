"""SpecFlow CLI.

Installed as the ``specflow`` console_script. Every command takes ``--json``
for machine-readable output; exit codes are 0 (ok), 1 (error), 2 (warning).
"""

from __future__ import annotations

import functools
import json
import sys
import traceback
from pathlib import Path
from typing import Any, Callable

import click
from rich.markup import escape

from specflow import __version__, log
from specflow.config import Config, find_project_root, state_path
from specflow.errors import NotFoundError, SpecflowError, ValidationError
from specflow.output import EXIT_ERROR, EXIT_OK, EXIT_WARNING, emit, emit_error


# ── Custom Click group that handles option aliases ───────────────────

class SpecflowGroup(click.Group):
    """Handle ``-help``, ``--show-help``, ``-version`` and ``--dryrun`` aliases."""

    _ALIASES: dict[str, str] = {
        "-help": "--help",
        "--show-help": "--help",
        "-version": "--version",
        "--show-version": "--version",
        "--dryrun": "--dry-run",
    }

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        """Rewrite aliases before Click parses them."""
        rewritten = [self._ALIASES.get(a, a) for a in args]
        return super().parse_args(ctx, rewritten)


CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])

json_option = click.option("--json", "json_mode", is_flag=True, help="Output as JSON")


def specflow_command(name: str) -> Callable[[Callable[..., int | None]], Callable[..., None]]:
    """Convert :class:`SpecflowError` into the error envelope and exit code 1.

    The wrapped function returns an exit code (``None`` means 0).
    """

    def decorator(func: Callable[..., int | None]) -> Callable[..., None]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> None:
            json_mode = bool(kwargs.get("json_mode", False))
            log.set_quiet(json_mode)
            try:
                code = func(*args, **kwargs)
            except SpecflowError as err:
                if log.is_verbose():
                    log.debug(traceback.format_exc())
                emit_error(err, name, json_mode=json_mode)
                sys.exit(EXIT_ERROR)
            except Exception as exc:
                if log.is_verbose():
                    log.debug(traceback.format_exc())
                unexpected = SpecflowError(str(exc) or type(exc).__name__, "Re-run with --verbose for details")
                emit_error(unexpected, name, json_mode=json_mode)
                sys.exit(EXIT_ERROR)
            finally:
                log.set_quiet(False)
            if code:
                sys.exit(code)

        return wrapper

    return decorator


def _config() -> Config:
    ctx = click.get_current_context()
    obj = ctx.find_object(Config)
    return obj if obj is not None else Config()


def _project_root() -> Path:
    """The project root for this invocation, or :class:`NotFoundError`."""
    cfg = _config()
    root = cfg.project_root or find_project_root(Path.cwd())
    if root is None:
        raise NotFoundError(
            "SpecFlow project",
            'Run "specflow state init" in the project root, or set SPECFLOW_PROJECT_ROOT',
        )
    return root


def _optional_root() -> Path | None:
    cfg = _config()
    return cfg.project_root or find_project_root(Path.cwd())


def _feature_dir(root: Path) -> Path:
    from specflow.context import resolve_feature_dir
    from specflow.state import read_raw_state

    try:
        state = read_raw_state(root)
    except NotFoundError:
        state = None
    feature_dir = resolve_feature_dir(root, state=state)
    if feature_dir is None:
        raise NotFoundError("Feature directory", 'Start a phase with "specflow phase open" first')
    return feature_dir


def _format_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, ensure_ascii=False)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ── Root group ───────────────────────────────────────────────────────


@click.group(cls=SpecflowGroup, context_settings=CONTEXT_SETTINGS)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="specflow")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """SpecFlow: spec-driven development orchestration.

    Tracks a project's phases (ROADMAP.md), the active phase's tasks and
    checklists (specs/NNNN-name/), and the workflow state
    (.specflow/orchestration-state.json).

    \b
    WORKFLOW:
      1. specflow state init           # once per project
      2. specflow phase open           # start the next roadmap phase
      3. specflow next / mark T001     # work through tasks.md
      4. specflow check --gate verify  # confirm verification
      5. specflow phase close          # archive and move on

    \b
    EXAMPLES:
      specflow status --json
      specflow mark T001..T005
      specflow mark V-001 V-002 --evidence "pytest -q: 42 passed"
      specflow state set orchestration.step.current=implement
    """
    cfg = Config(verbose=verbose)
    log.set_verbose(cfg.verbose)
    ctx.obj = cfg


# ── state ────────────────────────────────────────────────────────────


@main.group(cls=SpecflowGroup)
def state() -> None:
    """Read and update the orchestration state file."""


@state.command("get")
@click.argument("key", required=False)
@json_option
@specflow_command("state get")
def state_get(key: str | None, json_mode: bool) -> None:
    """Print the whole state, or the value at a dotted KEY."""
    from specflow.state import get_state_value, has_state_value, read_raw_state

    data = read_raw_state(_project_root())
    if key is None:
        emit(data, json_mode=json_mode)
        return
    if not has_state_value(data, key):
        raise NotFoundError(f"Key '{key}'", "Run \"specflow state get\" to see the available keys")
    value = get_state_value(data, key)
    emit(value, _format_value(value), json_mode=json_mode)


@state.command("set")
@click.argument("assignments", nargs=-1, required=True)
@json_option
@specflow_command("state set")
def state_set(assignments: tuple[str, ...], json_mode: bool) -> None:
    """Set one or more KEY=VALUE pairs.

    Values are read as JSON literals when possible (numbers, true/false,
    null, objects), then coerced to the type the state schema expects.

    \b
    EXAMPLES:
      specflow state set orchestration.step.current=implement orchestration.step.index=2
      specflow state set orchestration.phase.hasUserGate=true
    """
    from specflow.state import (
        coerce_value_for_schema,
        get_state_value,
        parse_assignment,
        parse_value,
        read_raw_state,
        set_state_value,
        write_state,
    )

    root = _project_root()
    data = read_raw_state(root)
    updates: list[dict[str, Any]] = []
    for text in assignments:
        key, raw = parse_assignment(text)
        value = coerce_value_for_schema(key, parse_value(raw))
        previous = get_state_value(data, key)
        data = set_state_value(data, key, value)
        updates.append({"key": key, "value": value, "previousValue": previous})
    write_state(data, root)

    payload = {"status": "success", "command": "state set", "updates": updates}
    human = "\n".join(f"Set {u['key']} = {_format_value(u['value'])}" for u in updates)
    emit(payload, human, json_mode=json_mode)


@state.command("init")
@click.option("--name", default="", help="Project name (defaults to the directory name)")
@click.option("--force", is_flag=True, help="Overwrite an existing state file")
@json_option
@specflow_command("state init")
def state_init(name: str, force: bool, json_mode: bool) -> None:
    """Create .specflow/orchestration-state.json in the project root."""
    from specflow.state import create_initial_state, write_state

    root = _optional_root() or Path.cwd().resolve()
    path = state_path(root)
    if path.exists() and not force:
        raise ValidationError(f"State file already exists: {path}", "Use --force to overwrite it")
    data = write_state(create_initial_state(name or root.name, root), root)
    payload = {
        "status": "success",
        "command": "state init",
        "path": str(path),
        "project": data["project"],
    }
    emit(payload, f"Initialized state for {data['project']['name']} at {path}", json_mode=json_mode)


@state.command("sync")
@click.option("--dry-run", is_flag=True, help="Preview changes without writing")
@json_option
@specflow_command("state sync")
def state_sync(dry_run: bool, json_mode: bool) -> int:
    """Bring the state in line with ROADMAP.md."""
    from specflow.phases import sync_state

    result = sync_state(_project_root(), dry_run=dry_run)
    lines = [c["description"] for c in result.changes] or ["State already in sync"]
    lines += [f"Warning: {w}" for w in result.warnings]
    emit(result.to_dict(), "\n".join(lines), json_mode=json_mode)
    return EXIT_WARNING if result.warnings else EXIT_OK


@state.command("show")
@json_option
@specflow_command("state show")
def state_show(json_mode: bool) -> None:
    """Human-readable summary of the state."""
    from specflow.state import get_state_value, read_state

    data = read_state(_project_root())
    if json_mode:
        emit(data, json_mode=True)
        return

    def row(label: str, key: str) -> str:
        return f"  {label:<10} {_format_value(get_state_value(data, key))}"

    lines = ["Project", row("Name", "project.name"), row("Path", "project.path"), row("ID", "project.id"), ""]
    lines.append("Current Phase")
    if get_state_value(data, "orchestration.phase.number"):
        lines += [
            row("Number", "orchestration.phase.number"),
            row("Name", "orchestration.phase.name"),
            row("Branch", "orchestration.phase.branch"),
            row("Status", "orchestration.phase.status"),
        ]
    else:
        lines.append("  No phase active")
    lines += [
        "",
        "Current Step",
        row("Step", "orchestration.step.current"),
        row("Status", "orchestration.step.status"),
        "",
        "Health",
        row("Status", "health.status"),
        "",
        f"Last updated: {_format_value(data.get('last_updated'))}",
    ]
    emit(data, "\n".join(lines))


# ── phase ────────────────────────────────────────────────────────────


@main.group(cls=SpecflowGroup)
def phase() -> None:
    """Open, close, add and archive roadmap phases."""


@phase.command("open")
@click.argument("number", required=False)
@click.option(
    "--hotfix",
    is_flag=False,
    flag_value="",
    default=None,
    metavar="[TITLE]",
    help="Create and open a hotfix phase after the active one",
)
@json_option
@specflow_command("phase open")
def phase_open(number: str | None, hotfix: str | None, json_mode: bool) -> None:
    """Start phase NUMBER, or the next not-started roadmap phase."""
    from specflow.phases import open_hotfix, open_phase

    root = _project_root()
    if hotfix is not None:
        if number:
            raise ValidationError("Cannot combine a phase number with --hotfix", "Pass one or the other")
        result = open_hotfix(root, hotfix or None)
    else:
        result = open_phase(root, number)
    human = f"{result.message}: {result.number} - {result.name}\nBranch: {result.branch}"
    emit(result.to_dict(), human, json_mode=json_mode)


@phase.command("close")
@click.option("--dry-run", is_flag=True, help="Preview without writing")
@json_option
@specflow_command("phase close")
def phase_close(dry_run: bool, json_mode: bool) -> None:
    """Complete the active phase: roadmap, history, backlog, state reset."""
    from specflow.phases import close_phase

    result = close_phase(_project_root(), dry_run=dry_run)
    data = result.to_dict()
    lines = [data["message"]]
    if result.deferred.get("count"):
        lines.append(
            f"Deferred items: {result.deferred['count']} "
            f"({result.deferred['toBacklog']} to backlog, {result.deferred['withTarget']} with target phase)"
        )
    if result.next_phase:
        lines.append(f"Next phase: {result.next_phase['number']} - {result.next_phase['name']}")
    emit(data, "\n".join(lines), json_mode=json_mode)


@phase.command("add")
@click.argument("number")
@click.argument("name")
@click.option("--gate", default="", help="Verification gate text")
@click.option("--user-gate", is_flag=True, help="Require explicit user sign-off")
@json_option
@specflow_command("phase add")
def phase_add(number: str, name: str, gate: str, user_gate: bool, json_mode: bool) -> None:
    """Insert phase NUMBER NAME into ROADMAP.md."""
    from specflow.phases import add_phase

    data = add_phase(_project_root(), number, name, gate=gate or None, user_gate=user_gate)
    emit(data, f"Added phase {number} - {name} at line {data['line']}", json_mode=json_mode)


@phase.command("archive")
@click.argument("number")
@click.option("--dry-run", is_flag=True, help="Preview without writing")
@click.option("--force", is_flag=True, help="Archive even if the phase is not complete")
@json_option
@specflow_command("phase archive")
def phase_archive(number: str, dry_run: bool, force: bool, json_mode: bool) -> None:
    """Record a completed phase in HISTORY.md and archive its specs."""
    from specflow.phases import archive_completed_phase

    data = archive_completed_phase(_project_root(), number, dry_run=dry_run, force=force)
    lines = [data["message"]]
    if data["specs"]["archivePath"]:
        lines.append(f"Specs moved to {data['specs']['archivePath']}")
    if data["tasks"]["incomplete"]:
        lines.append(f"Warning: {data['tasks']['incomplete']} task(s) were not complete")
    emit(data, "\n".join(lines), json_mode=json_mode)


@phase.command("scan")
@json_option
@specflow_command("phase scan")
def phase_scan(json_mode: bool) -> None:
    """List incomplete tasks left in archived phases."""
    from specflow.history import scan_archives

    scans = scan_archives(_project_root())
    payload = {
        "archivedPhases": [s.to_dict() for s in scans],
        "totalIncomplete": sum(len(s.incomplete) for s in scans),
    }
    lines = []
    for scan in scans:
        if scan.incomplete:
            lines.append(f"{scan.number} - {scan.name}: {len(scan.incomplete)} incomplete")
            lines += [f"  {s}" for s in scan.suggestions]
    emit(payload, "\n".join(lines) or "No incomplete tasks in archived phases", json_mode=json_mode)


@phase.command("defer")
@click.argument("items", nargs=-1)
@click.option("--reason", default=None, help="Why the items are deferred")
@click.option("--priority", type=click.Choice(["P1", "P2", "P3"]), default="P2", show_default=True)
@json_option
@specflow_command("phase defer")
def phase_defer(items: tuple[str, ...], reason: str | None, priority: str, json_mode: bool) -> None:
    """Add ITEMS to BACKLOG.md."""
    from specflow.phases import defer_items

    data = defer_items(_project_root(), list(items), reason=reason, priority=priority)
    emit(data, f"Deferred {data['added']} item(s) to BACKLOG.md ({priority})", json_mode=json_mode)


# ── tasks and checklists ─────────────────────────────────────────────


def _split_ids(items: tuple[str, ...]) -> tuple[list[str], list[str]]:
    from specflow.checklist import is_checklist_id

    tokens = [t.strip() for item in items for t in item.split(",") if t.strip()]
    checklist_ids = [t.upper() for t in tokens if is_checklist_id(t)]
    task_tokens = [t for t in tokens if not is_checklist_id(t)]
    return task_tokens, checklist_ids


def _format_mark(data: dict[str, Any]) -> str:
    label = "tasks" if data["itemType"] == "task" else "checklist items"
    progress = data["progress"]
    lines = [
        f"Marked {', '.join(data['marked'])} as {data['newStatus']}",
        f"Progress: {progress['completed']}/{progress['total']} {label} ({progress['percentage']}%)",
    ]
    section = data.get("sectionStatus")
    if section and section["isComplete"]:
        lines.append(f'Section "{section["name"]}" complete!')
    if data.get("next"):
        lines.append(f"Next: {data['next']['id']} {data['next']['description']}")
    if data.get("message"):
        lines.append(data["message"])
    return "\n".join(lines)


@main.command()
@click.argument("items", nargs=-1, required=True)
@click.option("--incomplete", is_flag=True, help="Uncheck instead of check")
@click.option("--blocked", "blocked_reason", default=None, metavar="REASON", help="Mark tasks blocked")
@click.option("--evidence", default=None, metavar="TEXT", help="Record evidence for checklist items")
@json_option
@specflow_command("mark")
def mark(
    items: tuple[str, ...],
    incomplete: bool,
    blocked_reason: str | None,
    evidence: str | None,
    json_mode: bool,
) -> None:
    """Mark tasks (T001, T001..T005) or checklist items (V-001) complete.

    \b
    EXAMPLES:
      specflow mark T001 T002
      specflow mark T003..T007
      specflow mark T004 --blocked "waiting on API keys"
      specflow mark V-001 V-002 --evidence "manual QA on staging"
    """
    from specflow.checklist import mark_checklist_items
    from specflow.evidence import read_evidence, record_evidence
    from specflow.tasks.mutate import MARK_BLOCKED, MARK_COMPLETE, MARK_INCOMPLETE, mark_tasks

    task_tokens, checklist_ids = _split_ids(items)
    if not task_tokens and not checklist_ids:
        raise ValidationError("No valid item IDs provided", "Use format: T001, T001..T005, V-001, I-001, V-UI1")
    if task_tokens and checklist_ids:
        raise ValidationError(
            "Cannot mix task and checklist IDs in one command",
            "Mark tasks and checklist items separately",
        )
    if incomplete and blocked_reason is not None:
        raise ValidationError("Cannot combine --incomplete and --blocked", "Pass one or the other")
    status = MARK_INCOMPLETE if incomplete else MARK_BLOCKED if blocked_reason is not None else MARK_COMPLETE

    feature_dir = _feature_dir(_project_root())
    if task_tokens:
        if evidence is not None:
            raise ValidationError("--evidence applies to checklist items only", "Use it with V-/I- item IDs")
        result = mark_tasks(feature_dir, task_tokens, status, blocked_reason)
        data = result.to_dict()
    else:
        if evidence is not None:
            if status != MARK_COMPLETE:
                raise ValidationError("--evidence requires marking items complete", "Drop --incomplete")
            if not evidence.strip():
                raise ValidationError("Evidence text cannot be empty", 'Use --evidence "what was verified"')
            # a broken ledger must fail before any checkbox changes
            read_evidence(feature_dir)
        result = mark_checklist_items(feature_dir, checklist_ids, status)
        data = result.to_dict()
        if evidence is not None:
            record_evidence(feature_dir, result.marked, evidence)
            data["evidenceRecorded"] = list(result.marked)
    emit(data, _format_mark(data), json_mode=json_mode)


@main.command("next")
@click.option("--verify", "verify_flag", is_flag=True, help="Next verification item, whatever the step")
@json_option
@specflow_command("next")
def next_command(verify_flag: bool, json_mode: bool) -> None:
    """Show the next actionable task, or verification item during verify."""
    from specflow.context import resolve_feature_dir
    from specflow.state import get_state_value, read_raw_state
    from specflow.worklist import format_next, next_item

    root = _project_root()
    try:
        data = read_raw_state(root)
    except NotFoundError:
        data = None
    verify = verify_flag or get_state_value(data, "orchestration.step.current") == "verify"
    result = next_item(resolve_feature_dir(root, state=data), verify=verify)
    emit(result, format_next(result), json_mode=json_mode)


# ── status and check ─────────────────────────────────────────────────


_STATUS_STYLE = {"ready": "green", "warning": "yellow", "error": "red"}


def _print_status(snapshot: dict[str, Any]) -> None:
    console = log.console
    phase_info = snapshot["phase"]
    if phase_info["number"]:
        gate = " [magenta](user gate)[/magenta]" if phase_info["hasUserGate"] else ""
        console.print(f"[bold]Phase {phase_info['number']}[/bold] {escape(str(phase_info['name']))} ({phase_info['status']}){gate}")
    else:
        console.print("[bold]No active phase[/bold]")
    step = snapshot["step"]
    console.print(f"Step: {step['current'] or '-'} ({step['status'] or '-'})")
    progress = snapshot["progress"]
    if progress["tasksTotal"]:
        console.print(
            f"Tasks: {progress['tasksCompleted']}/{progress['tasksTotal']} ({progress['percentage']}%)"
            + (f", {progress['tasksBlocked']} blocked" if progress["tasksBlocked"] else "")
        )
    health = snapshot["health"]
    style = _STATUS_STYLE.get(health["status"], "white")
    console.print(f"Health: [{style}]{health['status']}[/{style}]")
    for blocker in snapshot["blockers"]:
        console.print(f"  [red]✗[/red] {escape(blocker)}")
    console.print(f"Next: [cyan]{snapshot['nextAction']}[/cyan]")


@main.command()
@json_option
@specflow_command("status")
def status(json_mode: bool) -> None:
    """Unified status: phase, step, progress, health and the next action."""
    from specflow.status import get_status

    snapshot = get_status(_optional_root()).to_dict()
    if json_mode:
        emit(snapshot, json_mode=True)
    else:
        _print_status(snapshot)


def _format_check(data: dict[str, Any]) -> str:
    summary = data["summary"]
    lines = [
        f"Check {'passed' if data['passed'] else 'failed'}: "
        f"{summary['errors']} error(s), {summary['warnings']} warning(s), {summary['info']} info",
        "",
        "Gates:",
    ]
    for name, gate in data["gates"].items():
        mark_glyph = "✓" if gate["passed"] else "✗"
        reason = f" ({gate['reason']})" if gate["reason"] else ""
        lines.append(f"  {mark_glyph} {name}{reason}")
    if data["issues"]:
        lines += ["", "Issues:"]
        for issue in data["issues"]:
            lines.append(f"  [{issue['severity']}] {issue['code']}: {issue['message']}")
            if issue["fix"]:
                lines.append(f"      fix: {issue['fix']}")
    if data.get("fixed"):
        lines += ["", "Fixed:"] + [f"  ✓ {code}" for code in data["fixed"]]
    if data["suggestedAction"]:
        lines += ["", f"Next: {data['suggestedAction']}"]
    return "\n".join(lines)


@main.command()
@click.option("--fix", is_flag=True, help="Repair auto-fixable issues")
@click.option("--gate", type=click.Choice(["design", "implement", "verify", "memory"]), default=None)
@json_option
@specflow_command("check")
def check(fix: bool, gate: str | None, json_mode: bool) -> int:
    """Health check plus workflow gate validation."""
    from specflow.gates import run_check

    result = run_check(_project_root(), fix=fix, gate=gate)
    data = result.to_dict()
    emit(data, _format_check(data), json_mode=json_mode)
    if not result.passed:
        return EXIT_ERROR
    return EXIT_WARNING if data["summary"]["warnings"] else EXIT_OK


# ── evidence ─────────────────────────────────────────────────────────


@main.group(cls=SpecflowGroup)
def evidence() -> None:
    """Record evidence against verification items."""


@evidence.command("record")
@click.argument("ids", nargs=-1, required=True)
@click.option("--text", required=True, help="What demonstrates the items are satisfied")
@json_option
@specflow_command("evidence record")
def evidence_record(ids: tuple[str, ...], text: str, json_mode: bool) -> None:
    """Attach one evidence TEXT to every ID in the batch."""
    from specflow.evidence import record_evidence

    upper = [i.upper() for i in ids]
    data = record_evidence(_feature_dir(_project_root()), upper, text)
    payload = {"recorded": upper, "items": {i: data["items"][i] for i in upper}}
    emit(payload, f"Recorded evidence for {', '.join(upper)}", json_mode=json_mode)


@evidence.command("remove")
@click.argument("ids", nargs=-1, required=True)
@json_option
@specflow_command("evidence remove")
def evidence_remove(ids: tuple[str, ...], json_mode: bool) -> None:
    """Delete evidence entries for IDS."""
    from specflow.evidence import remove_evidence

    removed = remove_evidence(_feature_dir(_project_root()), [i.upper() for i in ids])
    emit({"removed": removed}, f"Removed {len(removed)} evidence entr{'y' if len(removed) == 1 else 'ies'}", json_mode=json_mode)


@evidence.command("show")
@json_option
@specflow_command("evidence show")
def evidence_show(json_mode: bool) -> None:
    """Print the evidence ledger of the active feature."""
    from specflow.evidence import read_evidence

    data = read_evidence(_feature_dir(_project_root()))
    if data is None:
        emit({"items": {}}, "No evidence recorded", json_mode=json_mode)
        return
    lines = [f"{item_id}: {entry['evidence']}" for item_id, entry in sorted(data["items"].items())]
    emit(data, "\n".join(lines) or "No evidence recorded", json_mode=json_mode)


if __name__ == "__main__":
    main()
