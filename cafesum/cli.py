"""Typer CLI entry point for cafesum."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, List, Optional

import typer

from .config import (
    EnvironmentSettingError,
    clear_environment_setting,
    get_settings,
    list_environment_settings,
    update_environment_setting,
)
from .core.pipeline.service import AnalysisResult, AnalysisService
from .data.models import AnalysisScope, FacetType
from .data.storage import PersistenceError
from .logging import configure_logging, get_logger
from .services.factory import ServiceConfigurationError

app = typer.Typer(help="cafesum World Café transcript analysis")
LOGGER = get_logger(__name__)


def _format_env_value(value: Any) -> str:
    if value is None:
        return "(unset)"
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _build_service(ctx: typer.Context) -> AnalysisService:
    backend = (ctx.obj or {}).get("backend")
    try:
        return AnalysisService.from_settings(backend=backend)
    except ServiceConfigurationError as exc:
        raise typer.BadParameter(str(exc), param_hint="--backend") from exc
    except PersistenceError as exc:
        typer.echo(f"Database unavailable: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _parse_facets(facets: Optional[List[str]]) -> Optional[List[FacetType]]:
    if not facets:
        return None
    try:
        return [FacetType(facet.strip().lower()) for facet in facets]
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--facet") from exc


def _report_analysis(result: AnalysisResult) -> None:
    if result.no_data:
        typer.echo(f"No data: {result.message}")
        raise typer.Exit(code=2)
    _echo_json(result.to_dict())
    if result.degraded_facets:
        typer.echo(f"Degraded facets: {', '.join(result.degraded_facets)}", err=True)


@app.callback()
def main(
    ctx: typer.Context,
    backend: Optional[str] = typer.Option(
        None, help="Completion backend: none/dummy/openai/groq (defaults to settings)"
    ),
) -> None:
    """Analyse World Café transcripts with an external completion capability."""

    configure_logging(get_settings().log_level)
    ctx.obj = {"backend": backend}


@app.command("import-transcripts")
def import_transcripts(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON list of transcripts"),
) -> None:
    """Store transcripts produced by the transcription service."""

    data = json.loads(path.read_text())
    if isinstance(data, dict):
        data = [data]
    service = _build_service(ctx)
    try:
        imported = service.import_transcripts(data)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="PATH") from exc
    sessions = sorted({transcript.session_id for transcript in imported})
    typer.echo(f"Imported {len(imported)} transcripts for sessions: {', '.join(sessions) or '-'}")


@app.command("analyze-session")
def analyze_session(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session identifier"),
    facet: Optional[List[str]] = typer.Option(None, "--facet", "-f", help="Facet to run; repeatable"),
) -> None:
    """Run the analysis facets across every table of a session."""

    service = _build_service(ctx)
    result = asyncio.run(service.generate_session_analysis(session_id, _parse_facets(facet)))
    _report_analysis(result)


@app.command("analyze-table")
def analyze_table(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table identifier"),
    facet: Optional[List[str]] = typer.Option(None, "--facet", "-f", help="Facet to run; repeatable"),
) -> None:
    """Run the analysis facets on one table's aggregated transcript."""

    service = _build_service(ctx)
    result = asyncio.run(service.generate_table_analysis(table_id, _parse_facets(facet)))
    _report_analysis(result)


@app.command()
def chat(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session identifier"),
    message: str = typer.Argument(..., help="Question about the session"),
) -> None:
    """Ask a question about a session."""

    service = _build_service(ctx)
    reply = asyncio.run(service.chat(session_id, message))
    if not reply.refused:
        typer.echo(reply.response)
        return
    typer.echo(f"Unable to answer ({reply.reason}): {reply.details}")
    for suggestion in reply.suggestions:
        typer.echo(f"  - {suggestion}")
    raise typer.Exit(code=2)


@app.command("refresh-digest")
def refresh_digest(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session identifier"),
) -> None:
    """Rebuild the cached chat digest after new transcripts arrive."""

    service = _build_service(ctx)
    record = asyncio.run(service.refresh_digest(session_id))
    if record is None:
        typer.echo(f"No transcripts found for session {session_id}")
        raise typer.Exit(code=2)
    typer.echo(
        f"Digest rebuilt from {record.metadata.get('transcript_count', 0)} transcripts "
        f"({len(record.payload.get('digest', ''))} characters)"
    )


@app.command()
def report(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session identifier"),
) -> None:
    """Produce the facilitator report for a session."""

    service = _build_service(ctx)
    facilitator_report = asyncio.run(service.generate_report(session_id))
    if facilitator_report.status == "no_data":
        typer.echo(f"No data: {facilitator_report.message}")
        raise typer.Exit(code=2)
    _echo_json(facilitator_report.model_dump(mode="json"))


@app.command()
def show(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session identifier"),
    facet: Optional[str] = typer.Option(None, help="Only show this facet"),
    table: Optional[str] = typer.Option(None, help="Only show records for this table"),
    scope: Optional[str] = typer.Option(None, help="Only show session or table records"),
) -> None:
    """List stored analysis records."""

    try:
        facet_type = FacetType(facet) if facet else None
        analysis_scope = AnalysisScope(scope) if scope else None
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    service = _build_service(ctx)
    if table is None:
        records = service.analyses.find(session_id, facet_type=facet_type, scope=analysis_scope)
    else:
        records = service.analyses.find(
            session_id, facet_type=facet_type, table_id=table, scope=analysis_scope
        )
    if not records:
        typer.echo("No analysis records found.")
        return
    _echo_json([record.model_dump(mode="json") for record in records])


@app.command("settings")
def show_settings() -> None:
    """List configuration values and the variables that override them."""

    for entry in list_environment_settings():
        typer.echo(
            f"{entry.env_name} = {_format_env_value(entry.value)}"
            f" (default: {_format_env_value(entry.default)})"
        )


@app.command("set-setting")
def set_setting(
    field: str = typer.Argument(..., help="Setting name, e.g. capability_id"),
    value: str = typer.Argument(..., help="New value"),
) -> None:
    """Persist an override to the .env file."""

    try:
        settings = update_environment_setting(field, value)
    except EnvironmentSettingError as exc:
        typer.echo(f"Failed to update {field}: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"{field} updated. Current value: {_format_env_value(getattr(settings, field))}")


@app.command("clear-setting")
def clear_setting(field: str = typer.Argument(..., help="Setting name")) -> None:
    """Drop an override and fall back to the default."""

    try:
        settings = clear_environment_setting(field)
    except EnvironmentSettingError as exc:
        typer.echo(f"Failed to reset {field}: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"{field} reset. Current value: {_format_env_value(getattr(settings, field))}")


if __name__ == "__main__":  # pragma: no cover
    app()
