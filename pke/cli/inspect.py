#!/usr/bin/env python3
"""Inspect PKE audit logs, evidence reports, and gate admissibility."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from pke.core.audit import AuditAction, AuditLogger
from pke.core.config import PKEConfig
from pke.core.models import Course
from pke.engine.gating import check_gate_b, check_prerequisites, prerequisites_for
from pke.engine.grading import generate_evidence_report
from pke.runtime import EngineContext, bootstrap_engine

app = typer.Typer(help="Inspect PKE audit logs, evidence reports, and invocation gates.")
console = Console()


def _load_context(config_path: Optional[Path], repo_root: Optional[Path]) -> EngineContext:
    try:
        return bootstrap_engine(config_path, repo_root=repo_root, lazy_backend=True)
    except FileNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid configuration: {exc}") from exc
    except RuntimeError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _load_course(ctx: EngineContext, course_id: str) -> Course:
    course = ctx.store.get(course_id)
    if course is None:
        raise typer.BadParameter(f"Course '{course_id}' not found in {ctx.config.store.backend} store")
    return course


def _print_table(headers: list[str], rows: List[dict], keys: list[str]) -> None:
    table = Table(*headers)
    for row in rows:
        table.add_row(*[str(row.get(key, "")) for key in keys])
    console.print(table)


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@app.command()
def audit(
    action: Optional[str] = typer.Option(None, "--action", help="Filter by audit action (e.g. CONTENT_ACCEPTED)."),
    course_id: Optional[str] = typer.Option(None, "--course", help="Filter by course id."),
    user_id: Optional[str] = typer.Option(None, "--user", help="Filter by user id."),
    limit: int = typer.Option(20, "--limit", min=1, help="Maximum records to show."),
    log_path: Optional[Path] = typer.Option(None, "--log", help="Read this audit JSONL instead of the configured one."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Root for relative paths and .env lookup."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of a table."),
) -> None:
    """List recent audit records, newest first."""

    if action:
        try:
            AuditAction(action)
        except ValueError as exc:
            choices = ", ".join(member.value for member in AuditAction)
            raise typer.BadParameter(f"Unknown action '{action}'. Choose from: {choices}") from exc

    if log_path is not None:
        log_path = log_path.expanduser().resolve()
        if not log_path.is_file():
            raise typer.BadParameter(f"Audit log not found: {log_path}")
        logger = AuditLogger(log_path, retention_days=PKEConfig().audit.retention_days)
    else:
        logger = _load_context(config_path, repo_root).audit

    result = logger.query(action=action, user_id=user_id, course_id=course_id, limit=limit)
    records = [record.model_dump(mode="json") for record in result["records"]]
    if as_json:
        _echo_json({"records": records, "total": result["total"]})
        return
    if not records:
        console.print("[yellow]No audit records matched.[/yellow]")
        return
    rows = []
    for record in records:
        invocation = record.get("invocation") or {}
        rows.append(
            {
                "timestamp": record["timestamp"],
                "action": record["action"],
                "user": record.get("user_id") or "",
                "course": record.get("course_id") or "",
                "invocation": invocation.get("number") or "",
                "grade": invocation.get("evidence_grade") or "",
                "success": "yes" if record.get("success") else "no",
            }
        )
    _print_table(
        ["Timestamp", "Action", "User", "Course", "Inv", "Grade", "OK"],
        rows,
        ["timestamp", "action", "user", "course", "invocation", "grade", "success"],
    )
    console.print(f"Showing {len(records)} of {result['total']} records")


@app.command()
def evidence(
    course_id: str = typer.Argument(..., help="Course identifier."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Root for relative paths and .env lookup."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of a table."),
) -> None:
    """Show per-invocation evidence grades and the overall score for a course."""

    ctx = _load_context(config_path, repo_root)
    report = generate_evidence_report(_load_course(ctx, course_id))
    if as_json:
        _echo_json(report)
        return
    if not report["invocations"]:
        console.print(f"[yellow]No accepted invocations for {course_id}.[/yellow]")
    else:
        rows = [
            {
                "number": entry["number"],
                "grade": entry["grade"],
                "source": entry["details"]["name"],
                "completed_at": entry["completed_at"],
            }
            for entry in report["invocations"]
        ]
        _print_table(["Invocation", "Grade", "Source", "Completed"], rows, ["number", "grade", "source", "completed_at"])
    overall = report["overall"]
    console.print(f"Overall: [bold]{overall['overall_grade']}[/bold] (score {overall['score']}, {overall['total']} graded)")


@app.command()
def gate(
    course_id: str = typer.Argument(..., help="Course identifier."),
    user_id: str = typer.Option(..., "--user", help="User requesting the invocation."),
    invocation: int = typer.Option(..., "--invocation", min=1, max=4, help="Invocation number (1-4)."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Root for relative paths and .env lookup."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of text."),
) -> None:
    """Dry-run gate B and prerequisite checks without touching the course."""

    ctx = _load_context(config_path, repo_root)
    course = _load_course(ctx, course_id)
    checks: List[Dict[str, Any]] = []
    for name, result in (
        ("gate_b", check_gate_b(course, user_id)),
        ("prerequisites", check_prerequisites(course, invocation)),
    ):
        checks.append({"check": name, "passed": result.passed, "code": result.code or "", "message": result.message})
    admissible = all(check["passed"] for check in checks)
    payload = {
        "course_id": course.id,
        "invocation": invocation,
        "current_stage": course.current_stage.value,
        "completed": course.completed_numbers,
        "required": prerequisites_for(invocation),
        "admissible": admissible,
        "checks": checks,
    }
    if as_json:
        _echo_json(payload)
    else:
        _print_table(["Check", "Passed", "Code", "Message"], checks, ["check", "passed", "code", "message"])
        colour = "green" if admissible else "red"
        console.print(f"[{colour}]Invocation {invocation} {'admissible' if admissible else 'blocked'}[/{colour}]")
    if not admissible:
        raise typer.Exit(code=1)


@app.command()
def prune(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root", help="Root for relative paths and .env lookup."),
    now: Optional[datetime] = typer.Option(None, "--now", help="Reference time for the retention cutoff."),
) -> None:
    """Drop audit records older than the configured retention window."""

    ctx = _load_context(config_path, repo_root)
    removed = ctx.audit.prune_expired(now=now)
    console.print(f"Removed {removed} audit records older than {ctx.audit.retention_days} days")


if __name__ == "__main__":  # pragma: no cover
    app()
