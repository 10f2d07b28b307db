"""
cli.py — taskgate command line

Usage:
    taskgate skills scan ./skills           # static scan, exit 1 on any critical
    taskgate skills list                    # installed skills from config paths
    taskgate tasks list --status failed
    taskgate tasks show <id>
    taskgate tasks add --name digest --prompt "Summarise my inbox" --cron "0 8 * * *"
    taskgate tasks cancel <id>
    taskgate tasks retry <id>
    taskgate tasks runs <id>
    taskgate tasks spend
    taskgate --config path/to/config.yaml tasks list
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.table import Table

from taskgate.config.settings import ConfigError, Settings, load_settings
from taskgate.kernel.bootstrap import build_core
from taskgate.observability.logger import get_logger, setup_logging
from taskgate.safety.injection import load_extra_patterns
from taskgate.skills.parser import parse_skill_md
from taskgate.skills.registry import find_skill_files
from taskgate.skills.scanner import SecurityScanner
from taskgate.skills.types import Severity

_SEVERITY_STYLE = {
    Severity.NONE:     "[green]none[/]",
    Severity.WARNING:  "[yellow]warning[/]",
    Severity.CRITICAL: "[bold red]critical[/]",
}


def _find_env_file() -> Optional[Path]:
    """Walk up from CWD looking for a .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskgate",
        description="taskgate — scheduled agent tasks behind a skill capability gate",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $TASKGATE_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    groups = parser.add_subparsers(dest="group", required=True)

    # ── skills ────────────────────────────────────────────────────────────────
    skills = groups.add_parser("skills", help="Inspect and scan skill files")
    skills_cmds = skills.add_subparsers(dest="command", required=True)
    scan = skills_cmds.add_parser("scan", help="Parse and scan skill files or directories")
    scan.add_argument("paths", nargs="+", help="Skill files or directories to scan")
    skills_cmds.add_parser("list", help="List skills installed from the configured paths")

    # ── tasks ─────────────────────────────────────────────────────────────────
    tasks = groups.add_parser("tasks", help="Manage scheduled tasks")
    tasks_cmds = tasks.add_subparsers(dest="command", required=True)

    ls = tasks_cmds.add_parser("list", help="List tasks")
    ls.add_argument("--status", default=None, help="Only tasks in this status")
    ls.add_argument("--limit", type=int, default=100)

    for name, help_text in (
        ("show", "Show one task"),
        ("cancel", "Cancel a task"),
        ("retry", "Re-schedule a failed or dead-lettered task"),
    ):
        cmd = tasks_cmds.add_parser(name, help=help_text)
        cmd.add_argument("task_id")

    runs = tasks_cmds.add_parser("runs", help="Show a task's run history")
    runs.add_argument("task_id")
    runs.add_argument("--limit", type=int, default=20)

    tasks_cmds.add_parser("spend", help="Show daily and monthly spend")

    add = tasks_cmds.add_parser("add", help="Create a task")
    add.add_argument("--name", required=True)
    add.add_argument("--prompt", required=True)
    add.add_argument("--type", default="one_shot",
                     choices=["one_shot", "heartbeat", "scheduled", "event"])
    add.add_argument("--system-prompt", default=None)
    add.add_argument("--cron", default=None)
    add.add_argument("--interval-ms", type=int, default=None)
    add.add_argument("--event", default=None, help="Event name that triggers the task")
    add.add_argument("--now", action="store_true", help="Schedule the first run immediately")
    add.add_argument("--priority", type=int, default=None)
    add.add_argument("--max-retries", type=int, default=None)
    add.add_argument("--skill", default=None, help="Skill id to run the task under")
    add.add_argument("--route", default="silent", help="silent | notify | memory_update | chain_next:<task id>[:context]")
    add.add_argument("--allow", action="append", default=None, help="Allowed tool (repeatable)")
    add.add_argument("--deny", action="append", default=None, help="Denied tool (repeatable)")
    add.add_argument("--max-tokens", type=int, default=None)
    add.add_argument("--max-cost-usd", type=float, default=None)
    add.add_argument("--max-wall-clock-ms", type=int, default=None)
    add.add_argument("--max-tool-calls", type=int, default=None)

    return parser


def bootstrap(args: argparse.Namespace, console: Console) -> Optional[Settings]:
    """Load and validate settings, then set up logging. None on config problems."""
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        console.print(f"[red]Config validation failed:[/]\n{problems}")
        return None
    except (OSError, ValueError, TypeError) as exc:
        console.print(f"[red]Failed to load config: {type(exc).__name__}: {exc}[/]")
        return None

    try:
        settings.validate_all()
    except ConfigError as exc:
        console.print(f"[red]{exc}[/]")
        return None

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    return settings


# ─────────────────────────────────────────────────────────────────────────────
# skills
# ─────────────────────────────────────────────────────────────────────────────

def _cmd_skills_scan(paths: list[str], settings: Settings, console: Console) -> int:
    load_extra_patterns(settings.safety.injection_extra_patterns)
    scanner = SecurityScanner()

    files: list[Path] = []
    for raw in paths:
        files.extend(find_skill_files(Path(raw), settings.skills.filename))

    if not files:
        console.print("[dim]No skill files found.[/]")
        return 0

    table = Table(title="Skill Scan", box=box.ROUNDED, border_style="dim")
    table.add_column("Skill", style="cyan", no_wrap=True)
    table.add_column("Severity", no_wrap=True)
    table.add_column("Findings")
    table.add_column("File", style="dim")

    failed = False
    for path in files:
        try:
            raw_text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            table.add_row("?", "[red]unreadable[/]", str(e), str(path))
            failed = True
            continue

        parsed = parse_skill_md(raw_text, path)
        if not parsed.success:
            table.add_row(
                "?", "[red]parse error[/]",
                f"{parsed.error.code.value}: {parsed.error.message}", str(path),
            )
            failed = True
            continue

        result = scanner.scan(parsed.manifest)
        failed = failed or not result.passed
        findings = "\n".join(
            f"{f.rule}: {f.message}" + (f" [dim]({f.matched_text})[/]" if f.matched_text else "")
            for f in result.findings
        ) or "[dim]—[/]"
        table.add_row(parsed.manifest.id, _SEVERITY_STYLE[result.severity], findings, str(path))

    console.print(table)
    return 1 if failed else 0


async def _cmd_skills_list(settings: Settings, console: Console) -> int:
    core = await build_core(settings)
    try:
        res = core.skills.list()
        skills = res.value or []
        if not skills:
            console.print("[dim]No skills installed.[/]")
            return 0

        table = Table(title="Installed Skills", box=box.ROUNDED, border_style="dim")
        table.add_column("Skill", style="cyan", no_wrap=True)
        table.add_column("Version", style="green")
        table.add_column("Enabled", justify="center")
        table.add_column("Scan")
        table.add_column("Tools")
        table.add_column("Description")
        for s in skills:
            scan = s["scan"] or {"severity": "none"}
            tools = ", ".join(s["tool_allow"]) if s["tool_allow"] is not None else "[yellow]unscoped[/]"
            table.add_row(
                s["id"],
                s["version"] or "—",
                "✓" if s["enabled"] else "✗",
                _SEVERITY_STYLE[Severity(scan["severity"])],
                tools,
                s["description"],
            )
        console.print(table)
        return 0
    finally:
        await core.close()


# ─────────────────────────────────────────────────────────────────────────────
# tasks
# ─────────────────────────────────────────────────────────────────────────────

def _fmt_ts(ts: Optional[float]) -> str:
    if ts is None:
        return "—"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _print_error(console: Console, error: Any) -> int:
    code = getattr(error, "code", "ERROR")
    console.print(f"[red]{code}:[/] {error}")
    return 1


def _task_table(tasks: list[dict], title: str) -> Table:
    table = Table(title=title, box=box.ROUNDED, border_style="dim")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Pri", justify="right")
    table.add_column("Next run")
    table.add_column("Retries", justify="right")
    for t in tasks:
        table.add_row(
            t["id"],
            t["definition"]["name"],
            t["definition"]["type"],
            t["status"],
            str(t["priority"]),
            _fmt_ts(t["next_run_at"]),
            f"{t['retry_count']}/{t['max_retries']}",
        )
    return table


def _show_task(console: Console, t: dict) -> None:
    d = t["definition"]
    lines = [
        f"[bold cyan]{d['name']}[/] [dim]({t['id']})[/]",
        f"  type      {d['type']}    status {t['status']}    priority {t['priority']}",
        f"  schedule  {t['schedule']}",
        f"  budget    {t['budget'] or 'defaults'}",
        f"  skill     {d['skill_id'] or '—'}    route {d['result_route']}",
        f"  next run  {_fmt_ts(t['next_run_at'])}    last run {_fmt_ts(t['last_run_at'])}",
        f"  retries   {t['retry_count']}/{t['max_retries']}",
    ]
    if t["error"]:
        lines.append(f"  [red]error[/]     {t['error']}")
    if t["budget_consumed"]:
        lines.append(f"  consumed  {t['budget_consumed']}")
    console.print("\n".join(lines))


def _add_payload(args: argparse.Namespace) -> dict[str, Any]:
    budget = {
        "max_tokens": args.max_tokens,
        "max_cost_usd": args.max_cost_usd,
        "max_wall_clock_ms": args.max_wall_clock_ms,
        "max_tool_calls": args.max_tool_calls,
    }
    payload: dict[str, Any] = {
        "type": args.type,
        "name": args.name,
        "prompt": args.prompt,
        "system_prompt": args.system_prompt,
        "cron": args.cron,
        "interval_ms": args.interval_ms,
        "event_trigger": args.event,
        "run_immediately": args.now,
        "skill_id": args.skill,
        "result_route": args.route,
        "tool_allow": args.allow,
        "tool_deny": args.deny,
        "priority": args.priority,
        "max_retries": args.max_retries,
    }
    if any(v is not None for v in budget.values()):
        payload["budget"] = budget
    return payload


async def _cmd_tasks(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    core = await build_core(settings, load_skills=False)
    service = core.tasks
    try:
        if args.command == "list":
            res = await service.list(status=args.status, limit=args.limit)
            if not res.success:
                return _print_error(console, res.error)
            if not res.value:
                console.print("[dim]No tasks.[/]")
            else:
                console.print(_task_table(res.value, "Tasks"))
            return 0

        if args.command == "show":
            res = await service.get(args.task_id)
            if not res.success:
                return _print_error(console, res.error)
            _show_task(console, res.value)
            return 0

        if args.command == "add":
            res = await service.create(_add_payload(args))
            if not res.success:
                return _print_error(console, res.error)
            console.print(
                f"[green]✓ Created[/] [cyan]{res.value['id']}[/] "
                f"({res.value['status']}, next run {_fmt_ts(res.value['next_run_at'])})"
            )
            return 0

        if args.command in ("cancel", "retry"):
            op = service.cancel if args.command == "cancel" else service.retry
            res = await op(args.task_id)
            if not res.success:
                return _print_error(console, res.error)
            console.print(f"[green]✓[/] {args.task_id} is now [bold]{res.value['status']}[/]")
            return 0

        if args.command == "runs":
            res = await service.runs(args.task_id, limit=args.limit)
            if not res.success:
                return _print_error(console, res.error)
            table = Table(title=f"Runs of {args.task_id}", box=box.ROUNDED, border_style="dim")
            table.add_column("Started")
            table.add_column("Completed")
            table.add_column("Status")
            table.add_column("Cost $", justify="right")
            table.add_column("Error")
            for r in res.value:
                consumed = r["budget_consumed"] or {}
                table.add_row(
                    _fmt_ts(r["started_at"]),
                    _fmt_ts(r["completed_at"]),
                    r["status"],
                    f"{consumed.get('estimated_cost_usd', 0.0):.4f}",
                    r["error"] or "",
                )
            console.print(table)
            return 0

        if args.command == "spend":
            res = await service.spend_summary()
            if not res.success:
                return _print_error(console, res.error)
            b = settings.budget
            console.print(
                f"Today:      [bold]${res.value['daily_usd']:.4f}[/] / ${b.daily_limit_usd:.2f}\n"
                f"This month: [bold]${res.value['monthly_usd']:.4f}[/] / ${b.monthly_limit_usd:.2f}"
            )
            return 0
    finally:
        await core.close()

    return 2


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────

def main(argv: Optional[list[str]] = None, console: Optional[Console] = None) -> int:
    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    args = build_parser().parse_args(argv)
    console = console or Console()

    settings = bootstrap(args, console)
    if settings is None:
        return 1

    log = get_logger("taskgate.cli")
    log.debug("cli.command", group=args.group, command=args.command)

    if args.group == "skills":
        if args.command == "scan":
            return _cmd_skills_scan(args.paths, settings, console)
        return asyncio.run(_cmd_skills_list(settings, console))

    return asyncio.run(_cmd_tasks(args, settings, console))


if __name__ == "__main__":
    sys.exit(main())
