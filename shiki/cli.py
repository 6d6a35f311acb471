from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterator, NoReturn

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.tree import Tree

from shiki.core.config import (
    CONFIG_FILENAME,
    DEFAULT_CONFIG,
    db_path,
    prds_dir,
    resolve_root,
    shiki_dir,
)
from shiki.core.errors import ConfigError, FudaError, InvalidInput, StorageFailure
from shiki.core.model import STATUS_ORDER, Edge, Fuda, StatusCounts
from shiki.core.prd.prd_files import prd_path
from shiki.core.ready.resolver import Scope
from shiki.core.report.report import summarize_status
from shiki.core.status.state_machine import TransitionResult
from shiki.core.tracker import Tracker

app = typer.Typer(add_completion=False, no_args_is_help=True)
deps_app = typer.Typer(add_completion=False, no_args_is_help=True, help="Dependency edges.")
prd_app = typer.Typer(add_completion=False, no_args_is_help=True, help="PRD documents.")
app.add_typer(deps_app, name="deps")
app.add_typer(prd_app, name="prd")

console = Console(highlight=False)

FORMATS = ("text", "json")
FORMAT_HELP = "Output format: text|json"


@app.callback()
def _callback(
    ctx: typer.Context,
    root: str | None = typer.Option(
        None, "--root", help="Project root (default: $SHIKI_ROOT, then the current directory)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr"),
) -> None:
    """Shiki: fuda tracking with dependency-aware readiness."""
    ctx.obj = {"root": resolve_root(root), "verbose": verbose}


# -- plumbing ---------------------------------------------------------


def _configure_logging(level: str, verbose: bool) -> None:
    log = logging.getLogger("shiki")
    if not any(isinstance(h, RichHandler) for h in log.handlers):
        log.addHandler(
            RichHandler(console=Console(stderr=True), show_time=False, show_path=False)
        )
    log.setLevel(logging.DEBUG if verbose else level)


def _check_format(fmt: str, command: str) -> None:
    if fmt not in FORMATS:
        _print_errors(
            [
                InvalidInput(
                    code="E_UNKNOWN_FORMAT",
                    message=f"{command}: unknown format: {fmt} (choose one of: text, json)",
                )
            ]
        )
        raise typer.Exit(code=2)


def _exit_code(e: FudaError) -> int:
    return 1 if isinstance(e, (StorageFailure, ConfigError)) else 2


def _emit_json(command: str, *, ok: bool, result: Any, errors: list[FudaError], exit_code: int) -> NoReturn:
    payload = {
        "tool": "shiki",
        "command": command,
        "ok": ok,
        "error_count": len(errors),
        "errors": [e.to_dict() for e in errors],
        "result": result,
    }
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))
    raise typer.Exit(code=exit_code)


def _succeed(command: str, fmt: str, result: Any) -> None:
    if fmt == "json":
        _emit_json(command, ok=True, result=result, errors=[], exit_code=0)


def _fail(e: FudaError, fmt: str, command: str) -> NoReturn:
    if fmt == "json":
        _emit_json(command, ok=False, result=None, errors=[e], exit_code=_exit_code(e))
    _print_errors([e])
    raise typer.Exit(code=_exit_code(e))


def _print_errors(errors: list[FudaError]) -> None:
    for e in sorted(errors, key=lambda e: (e.code, e.ids)):
        typer.echo(str(e), err=True)


@contextmanager
def _session(ctx: typer.Context, fmt: str, command: str, *, create: bool = False) -> Iterator[Tracker]:
    """Open the project's tracker for one command and render engine errors."""
    root: Path = ctx.obj["root"]
    try:
        tracker = Tracker.open(root, create=create)
    except FudaError as e:
        _fail(e, fmt, command)
    _configure_logging(tracker.config.log_level, ctx.obj["verbose"])
    try:
        yield tracker
    except FudaError as e:
        _fail(e, fmt, command)
    finally:
        tracker.close()


def _fuda_table(fudas: list[Fuda], title: str | None = None) -> Table:
    table = Table(title=title)
    table.add_column("ID", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("P", justify="right")
    table.add_column("Title")
    table.add_column("PRD")
    for f in fudas:
        table.add_row(f.id, f.status.value, str(f.priority), f.title, f.prd_id or "")
    return table


def _print_fudas(fudas: list[Fuda], *, empty: str = "No fuda found.", title: str | None = None) -> None:
    if not fudas:
        typer.echo(empty)
        return
    console.print(_fuda_table(fudas, title))


def _edge_text(e: Edge) -> str:
    return f"{e.from_id} -[{e.kind.value}]-> {e.to_id}"


def _transition_result(r: TransitionResult) -> dict:
    return {
        "fuda": r.fuda.to_dict(),
        "previous": r.previous.value,
        "newly_eligible": r.newly_eligible,
        "promoted": r.promoted,
        "demoted": r.demoted,
    }


def _print_transition(r: TransitionResult) -> None:
    typer.echo(f"{r.fuda.id}: {r.previous.value} -> {r.fuda.status.value}")
    if r.promoted:
        typer.echo(f"Promoted to ready: {', '.join(r.promoted)}")
    elif r.newly_eligible:
        typer.echo(f"Now eligible for ready: {', '.join(r.newly_eligible)} (run 'shiki ready')")
    if r.demoted:
        typer.echo(f"Back to blocked: {', '.join(r.demoted)}")


def _split_refs(values: list[str] | None) -> list[str]:
    out: list[str] = []
    for v in values or []:
        out.extend(part.strip() for part in v.split(",") if part.strip())
    return out


# -- commands ---------------------------------------------------------


@app.command("init")
def init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Recreate an existing database"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Initialize shiki in the project root."""
    _check_format(format, "init")
    root: Path = ctx.obj["root"]
    path = db_path(root)
    if path.exists() and not force:
        _fail(
            InvalidInput(
                code="E_ALREADY_INITIALIZED",
                message=f"already initialized at {path} (use --force to reinitialize)",
            ),
            format,
            "init",
        )
    if path.exists():
        path.unlink()

    prds_dir(root).mkdir(parents=True, exist_ok=True)
    config_path = shiki_dir(root) / CONFIG_FILENAME
    if not config_path.exists():
        config_path.write_text(
            yaml.safe_dump(asdict(DEFAULT_CONFIG), sort_keys=False, default_flow_style=False),
            encoding="utf-8",
        )

    with _session(ctx, format, "init", create=True) as tracker:
        migrations = [name for name, _ in tracker.store.migration_status()]

    _succeed("init", format, {"db_path": str(path), "migrations": migrations})
    typer.echo(f"OK: initialized {path}")


@app.command("add")
def add(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Short summary of the work"),
    description: str = typer.Option("", "--description", "-d"),
    priority: int = typer.Option(0, "--priority", "-p", help="Higher = more important"),
    prd: str | None = typer.Option(None, "--prd", help="PRD id this fuda belongs to"),
    depends_on: list[str] | None = typer.Option(
        None, "--depends-on", help="Fuda this one depends on (id or prefix; repeatable or comma-separated)"
    ),
    dep_type: str = typer.Option(
        "blocks", "--dep-type", help="Kind for --depends-on edges: blocks|parent-child|related|discovered-from"
    ),
    parent: str | None = typer.Option(None, "--parent", help="Parent fuda (id or prefix)"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Create a fuda (starts blocked)."""
    _check_format(format, "add")
    with _session(ctx, format, "add") as tracker:
        deps = [tracker.resolve(ref).id for ref in _split_refs(depends_on)]
        parent_id = tracker.resolve(parent).id if parent else None
        fuda = tracker.create(
            title,
            description=description,
            prd_id=prd,
            priority=priority,
            depends_on=deps,
            dep_kind=dep_type,
            parent_id=parent_id,
        )

    _succeed("add", format, fuda.to_dict())
    typer.echo(f"Created {fuda.id} [{fuda.status.value}] {fuda.title}")


@app.command("show")
def show(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Show one fuda with its edges and blockers (deleted fuda included)."""
    _check_format(format, "show")
    with _session(ctx, format, "show") as tracker:
        fuda = tracker.resolve(fuda_id, include_deleted=True)
        edges = tracker.edges(fuda.id)
        blockers = tracker.blocked_on(fuda.id)
        doc = str(prd_path(prds_dir(tracker.root), fuda.prd_id)) if fuda.prd_id and tracker.root else None

    _succeed(
        "show",
        format,
        {
            "fuda": fuda.to_dict(),
            "edges": [e.to_dict() for e in edges],
            "blocked_on": [b.id for b in blockers],
            "prd_path": doc,
        },
    )
    typer.echo(f"{fuda.id} [{fuda.status.value}] {fuda.title}")
    if fuda.description:
        typer.echo(fuda.description)
    typer.echo(f"Priority: {fuda.priority}")
    if fuda.prd_id:
        typer.echo(f"PRD: {fuda.prd_id} ({doc})")
    typer.echo(f"Created: {fuda.created_at}")
    if fuda.is_deleted:
        reason = f" ({fuda.delete_reason})" if fuda.delete_reason else ""
        typer.echo(f"Deleted: {fuda.deleted_at}{reason}")
    if edges:
        typer.echo("Edges:")
        for e in edges:
            typer.echo(f"- {_edge_text(e)}")
    if blockers:
        typer.echo("Blocked on: " + ", ".join(b.id for b in blockers))


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    status: list[str] | None = typer.Option(None, "--status", "-s", help="Filter by status (repeatable)"),
    all_: bool = typer.Option(False, "--all", "-a", help="Include done and failed fuda"),
    prd: str | None = typer.Option(None, "--prd", help="Only fuda of this PRD"),
    deleted: bool = typer.Option(False, "--deleted", help="Only soft-deleted fuda"),
    limit: int | None = typer.Option(None, "--limit", "-n"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """List fuda (active ones by default)."""
    _check_format(format, "list")
    with _session(ctx, format, "list") as tracker:
        fudas = tracker.list_fuda(
            statuses=status or None,
            prd_id=prd,
            active_only=not all_ and not deleted,
            deleted_only=deleted,
            limit=limit,
        )

    _succeed("list", format, [f.to_dict() for f in fudas])
    _print_fudas(fudas)


@app.command("update")
def update(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    status: str | None = typer.Option(None, "--status", "-s"),
    title: str | None = typer.Option(None, "--title", "-t"),
    description: str | None = typer.Option(None, "--description", "-d"),
    priority: int | None = typer.Option(None, "--priority", "-p"),
    prd: str | None = typer.Option(None, "--prd", help="New PRD id ('' clears it)"),
    force: bool = typer.Option(
        False, "--force", help="Apply --status even if blockers are not done (operator override)"
    ),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Update fields and/or status of a fuda."""
    _check_format(format, "update")
    fields: dict[str, Any] = {}
    if title is not None:
        fields["title"] = title
    if description is not None:
        fields["description"] = description
    if priority is not None:
        fields["priority"] = priority
    if prd is not None:
        fields["prd_id"] = prd

    with _session(ctx, format, "update") as tracker:
        if not fields and status is None:
            raise InvalidInput(
                code="E_NOTHING_TO_UPDATE",
                message="give at least one of --status, --title, --description, --priority, --prd",
            )
        fid = tracker.resolve(fuda_id).id
        result: TransitionResult | None = None
        with tracker.store.transaction():
            fuda = tracker.update(fid, **fields) if fields else tracker.get(fid)
            if status is not None:
                apply = tracker.force_transition if force else tracker.transition
                result = apply(fid, status)
                fuda = result.fuda

    _succeed(
        "update",
        format,
        {"fuda": fuda.to_dict(), "transition": _transition_result(result) if result else None},
    )
    if result is not None:
        _print_transition(result)
    else:
        typer.echo(f"Updated {fuda.id}")


def _transition_command(ctx: typer.Context, command: str, fuda_id: str, fmt: str) -> None:
    _check_format(fmt, command)
    with _session(ctx, fmt, command) as tracker:
        fid = tracker.resolve(fuda_id).id
        action = {"start": tracker.start, "finish": tracker.finish, "fail": tracker.fail}[command]
        result = action(fid)
    _succeed(command, fmt, _transition_result(result))
    _print_transition(result)


@app.command("start")
def start(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Mark a fuda in progress."""
    _transition_command(ctx, "start", fuda_id, format)


@app.command("finish")
def finish(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Mark a fuda done and report what it unblocked."""
    _transition_command(ctx, "finish", fuda_id, format)


@app.command("fail")
def fail(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Mark a fuda failed."""
    _transition_command(ctx, "fail", fuda_id, format)


@app.command("remove")
def remove(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    reason: str | None = typer.Option(None, "--reason", "-r"),
    purge: bool = typer.Option(
        False, "--purge", help="Hard-remove the row and its edges instead of soft delete"
    ),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Soft-delete a fuda (history and edges are kept)."""
    _check_format(format, "remove")
    with _session(ctx, format, "remove") as tracker:
        fid = tracker.resolve(fuda_id, include_deleted=purge).id
        if purge:
            tracker.purge(fid)
        else:
            tracker.delete(fid, reason=reason)

    _succeed("remove", format, {"id": fid, "purged": purge})
    typer.echo(f"{'Purged' if purge else 'Removed'} {fid}")


@app.command("restore")
def restore(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Undo a soft delete."""
    _check_format(format, "restore")
    with _session(ctx, format, "restore") as tracker:
        result = tracker.restore(tracker.resolve(fuda_id, include_deleted=True).id)

    fuda = result.fuda
    _succeed(
        "restore",
        format,
        {"fuda": fuda.to_dict(), "demoted": result.demoted, "promoted": result.promoted},
    )
    typer.echo(f"Restored {fuda.id} [{fuda.status.value}]")
    if result.demoted:
        typer.echo(f"Back to blocked: {', '.join(result.demoted)}")


@app.command("ready")
def ready(
    ctx: typer.Context,
    prd: str | None = typer.Option(None, "--prd", help="Only fuda of this PRD"),
    limit: int | None = typer.Option(None, "--limit", "-n"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Promote every unblocked fuda, then list what is ready to work on."""
    _check_format(format, "ready")
    with _session(ctx, format, "ready") as tracker:
        promoted = tracker.promote_eligible(Scope.prd(prd) if prd else None)
        fudas = tracker.ready(prd_id=prd, limit=limit)

    _succeed("ready", format, {"promoted": promoted, "ready": [f.to_dict() for f in fudas]})
    if promoted:
        typer.echo(f"Promoted {len(promoted)}: {', '.join(promoted)}")
    _print_fudas(fudas, empty="No ready fuda.")


def _counts_table(rows: list[tuple[str, StatusCounts]], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Group")
    for s in STATUS_ORDER:
        table.add_column(s.value, justify="right")
    table.add_column("total", justify="right")
    for label, counts in rows:
        table.add_row(label, *[str(counts.get(s)) for s in STATUS_ORDER], str(counts.total))
    return table


@app.command("status")
def status(
    ctx: typer.Context,
    prd: str | None = typer.Option(None, "--prd", help="Only fuda of this PRD"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Status breakdown of non-deleted fuda."""
    _check_format(format, "status")
    with _session(ctx, format, "status") as tracker:
        counts = tracker.status_breakdown(prd)

    _succeed("status", format, counts.to_dict())
    typer.echo(summarize_status(counts))


@app.command("log")
def log(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    limit: int | None = typer.Option(None, "--limit", "-n"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Audit history of a fuda, newest first."""
    _check_format(format, "log")
    with _session(ctx, format, "log") as tracker:
        fid = tracker.resolve(fuda_id, include_deleted=True).id
        entries = tracker.history(fid, limit=limit)

    _succeed("log", format, [e.to_dict() for e in entries])
    if not entries:
        typer.echo("No history.")
        return
    for e in entries:
        change = ""
        if e.field:
            change = f" {e.field}: {e.old_value or '-'} -> {e.new_value or '-'}"
        typer.echo(f"{e.timestamp} {e.operation.value}{change} by {e.actor}")


# -- deps -------------------------------------------------------------


@deps_app.command("add")
def deps_add(
    ctx: typer.Context,
    from_id: str = typer.Argument(..., help="Prerequisite fuda (must finish first for blocks)"),
    to_id: str = typer.Argument(..., help="Dependent fuda"),
    kind: str = typer.Option("blocks", "--kind", "-k", help="blocks|parent-child|related|discovered-from"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Add an edge FROM -> TO."""
    _check_format(format, "deps add")
    with _session(ctx, format, "deps add") as tracker:
        target = tracker.resolve(to_id)
        edge = tracker.add_edge(tracker.resolve(from_id).id, target.id, kind)
        after = tracker.get(target.id)

    _succeed("deps add", format, {**edge.to_dict(), "target_status": after.status.value})
    typer.echo(f"Added {_edge_text(edge)}")
    if after.status is not target.status:
        typer.echo(f"{after.id}: {target.status.value} -> {after.status.value}")


@deps_app.command("remove")
def deps_remove(
    ctx: typer.Context,
    from_id: str = typer.Argument(...),
    to_id: str = typer.Argument(...),
    kind: str = typer.Option("blocks", "--kind", "-k", help="blocks|parent-child|related|discovered-from"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Remove the edge FROM -> TO of the given kind."""
    _check_format(format, "deps remove")
    with _session(ctx, format, "deps remove") as tracker:
        edge = tracker.remove_edge(
            tracker.resolve(from_id, include_deleted=True).id,
            tracker.resolve(to_id, include_deleted=True).id,
            kind,
        )

    _succeed("deps remove", format, edge.to_dict())
    typer.echo(f"Removed {_edge_text(edge)}")


@deps_app.command("blocked")
def deps_blocked(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Explain why a fuda is blocked: its unfinished blocking predecessors."""
    _check_format(format, "deps blocked")
    with _session(ctx, format, "deps blocked") as tracker:
        fuda = tracker.resolve(fuda_id, include_deleted=True)
        blockers = tracker.blocked_on(fuda.id)

    _succeed("deps blocked", format, [b.to_dict() for b in blockers])
    if not blockers:
        typer.echo(f"{fuda.id} is not blocked by any unfinished fuda.")
        return
    _print_fudas(blockers, title=f"{fuda.id} is blocked on")


@deps_app.command("tree")
def deps_tree(
    ctx: typer.Context,
    fuda_id: str = typer.Argument(..., help="Fuda id or unique prefix"),
    depth: int = typer.Option(10, "--depth", help="Maximum depth to walk"),
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Show what a fuda depends on, transitively."""
    _check_format(format, "deps tree")
    with _session(ctx, format, "deps tree") as tracker:
        root = tracker.resolve(fuda_id, include_deleted=True)
        tree = tracker.dependency_tree(root.id, max_depth=depth)
        titles = {f.id: f for f in tracker.store.list_fuda(ids_in=tree.keys(), include_deleted=True)}

    _succeed("deps tree", format, {k: [e.to_dict() for e in v] for k, v in tree.items()})

    def label(fid: str) -> str:
        f = titles.get(fid)
        return f"{fid} [{f.status.value}] {f.title}" if f else fid

    rendered = Tree(label(root.id))
    seen: set[str] = {root.id}

    def walk(node: Tree, fid: str) -> None:
        for e in tree.get(fid, []):
            child = node.add(f"{e.kind.value}: {label(e.from_id)}")
            if e.from_id not in seen:
                seen.add(e.from_id)
                walk(child, e.from_id)

    walk(rendered, root.id)
    console.print(rendered)


# -- prd --------------------------------------------------------------


@prd_app.command("list")
def prd_list(
    ctx: typer.Context,
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """PRD documents with a status breakdown of their fuda."""
    _check_format(format, "prd list")
    with _session(ctx, format, "prd list") as tracker:
        documents = tracker.prd_ids()
        breakdown = tracker.prd_breakdown()
        orphans = tracker.orphans(documents)

    empty = StatusCounts(counts={})
    rows = [(prd_id, breakdown.get(prd_id, empty)) for prd_id in sorted(documents)]
    _succeed(
        "prd list",
        format,
        {
            "prds": [{"id": prd_id, "breakdown": c.to_dict()} for prd_id, c in rows],
            "orphans": [{"prd_id": p, "count": n} for p, n in orphans],
        },
    )
    if not rows:
        typer.echo("No PRD documents.")
    else:
        console.print(_counts_table(rows, "PRDs"))
    for prd_id, n in orphans:
        typer.echo(f"WARN: orphan PRD reference {prd_id} ({n} fuda)", err=True)


@prd_app.command("check")
def prd_check(
    ctx: typer.Context,
    format: str = typer.Option("text", "--format", help=FORMAT_HELP),
) -> None:
    """Find fuda referencing PRD ids with no document. Exits 1 when any exist."""
    _check_format(format, "prd check")
    with _session(ctx, format, "prd check") as tracker:
        orphans = tracker.orphans()

    result = [{"prd_id": p, "count": n} for p, n in orphans]
    if format == "json":
        _emit_json("prd check", ok=not orphans, result=result, errors=[], exit_code=1 if orphans else 0)
    if not orphans:
        typer.echo("OK: all PRD references are valid")
        return
    plural = "" if len(orphans) == 1 else "s"
    typer.echo(f"Found {len(orphans)} orphan PRD reference{plural}:")
    for prd_id, n in orphans:
        typer.echo(f"- {prd_id}: {n} fuda")
    raise typer.Exit(code=1)


def main() -> None:
    app(prog_name="shiki")


cli = typer.main.get_command(app)

if __name__ == "__main__":
    main()
