"""Thin CLI wrapper for emcomm_isogen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from sqlalchemy.orm import Session, sessionmaker

from emcomm_isogen import __version__
from emcomm_isogen.config import Settings, get_settings, print_settings_json
from emcomm_isogen.errors import IsogenError, PrerequisiteError
from emcomm_isogen.station.schema import StationSchema
from emcomm_isogen.types import BuildStatus, ReleaseMode

app = typer.Typer(
    name="isogen",
    help="EmComm Tools ISO customizer - build a personalized ETC image",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"emcomm-isogen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """EmComm Tools ISO customizer - build a personalized ETC image."""


def _fail(error: IsogenError) -> typer.Exit:
    console.print(f"[red]Error ({error.code}): {error}[/red]")
    return typer.Exit(code=error.exit_code)


def _load_station(path: Path) -> StationSchema:
    """Load the station configuration, mapping every failure to a prerequisite error."""
    from emcomm_isogen.station.io import load_station

    try:
        return load_station(path)
    except FileNotFoundError:
        raise PrerequisiteError(
            f"Station configuration not found: {path}", code="config_not_found"
        ) from None
    except ValidationError as e:
        raise PrerequisiteError(
            f"Invalid station configuration {path}: {e}", code="config_invalid"
        ) from e
    except (ValueError, yaml.YAMLError) as e:
        raise PrerequisiteError(str(e), code="config_invalid") from e


def _session_factory(settings: Settings) -> "sessionmaker[Session]":
    from emcomm_isogen.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Logs directory:      {settings.logs_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print(f"  Station config:      {settings.station_config}")
    console.print()
    console.print("[bold]Sources:[/bold]")
    console.print(f"  Base image:          {settings.base_image_url}")
    console.print(f"  Installer repo:      {settings.github_repo}")
    console.print(f"  Add-ons:             {settings.addons_dir or settings.addons_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Offline mode:        {settings.offline}")
    console.print(f"  Keep work dir:       {settings.keep_work}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Fetch retries:       {settings.fetch_retries}")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Squashfs compression: {settings.squashfs_compression}")


@app.command()
def build(
    release: Annotated[
        ReleaseMode,
        typer.Option("--release", "-r", help="Installer release: stable, latest or tag"),
    ] = ReleaseMode.STABLE,
    tag: Annotated[
        str | None,
        typer.Option("--tag", "-t", help="Release tag (required with -r tag)"),
    ] = None,
    minimal: Annotated[
        bool,
        typer.Option("--minimal", "-m", help="Do not embed the cache into the image"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", "-d", help="Show all debug output, including tool output"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Echo every external command on the console"),
    ] = False,
    keep_work: Annotated[
        bool,
        typer.Option("--keep-work", "-k", help="Keep the work directory afterwards"),
    ] = False,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Station configuration file"),
    ] = None,
    addons: Annotated[
        bool,
        typer.Option("--addons", "-a", help="Overlay the community add-ons"),
    ] = False,
    layout_path: Annotated[
        Path | None,
        typer.Option(
            "--layout",
            help="lsblk -J output captured on the target machine, for auto-detect",
        ),
    ] = None,
) -> None:
    """Build a customized ETC ISO image.

    Requires root, the image tools and a station configuration.
    """
    from emcomm_isogen.builds.context import BuildContext
    from emcomm_isogen.builds.manifest import BuildManifest
    from emcomm_isogen.builds.service import (
        BuildRequest,
        check_prerequisites,
        run_build,
    )
    from emcomm_isogen.logs import build_log_path, configure_logging
    from emcomm_isogen.preseed.generator import load_layout

    if release == ReleaseMode.TAG and not tag:
        console.print("[red]--release tag requires --tag[/red]")
        raise typer.Exit(code=2)

    settings = get_settings()
    if config_path is not None:
        settings.station_config = config_path

    now = datetime.now()
    log_path = build_log_path(settings.logs_dir, now)
    level = "DEBUG" if debug else settings.log_level
    configure_logging(level, log_path, echo_commands=verbose)

    try:
        check_prerequisites()
        station = _load_station(settings.station_config)
        layout = load_layout(layout_path) if layout_path is not None else None
    except IsogenError as e:
        raise _fail(e) from None

    context = BuildContext(
        settings=settings,
        station=station,
        manifest=BuildManifest.new(now),
        log_path=log_path,
    )
    request = BuildRequest(
        release_mode=release,
        tag=tag,
        minimal=minimal,
        keep_work=keep_work or None,
        addons=addons,
    )

    console.print(f"[bold]Build {context.manifest.build_id}[/bold] (log: {log_path})")
    try:
        outcome = run_build(
            context, request, session_factory=_session_factory(settings), layout=layout
        )
    except IsogenError as e:
        console.print(f"  Log: {log_path}")
        raise _fail(e) from None

    console.print("[green]Build succeeded[/green]")
    console.print(f"  ISO:      {outcome.output_iso}")
    console.print(f"  Manifest: {outcome.manifest_path}")
    console.print(f"  Log:      {outcome.log_path}")


@app.command()
def releases(
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of releases and tags"),
    ] = 5,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List published installer releases and tags."""
    import httpx

    from emcomm_isogen.artifacts.releases import ReleaseResolver

    settings = get_settings()
    try:
        with httpx.Client() as client:
            resolver = ReleaseResolver(
                settings.github_repo, settings.github_api_base, client=client
            )
            published = resolver.list_releases(limit)
            tags = resolver.list_tags(limit)
    except IsogenError as e:
        raise _fail(e) from None

    if json_output:
        output = {
            "releases": [
                {"tag": r.tag, "name": r.name, "version": r.version, "published_at": r.published_at}
                for r in published
            ],
            "tags": [t.tag for t in tags],
        }
        console.print(json.dumps(output, indent=2))
        return

    console.print(f"[bold]Releases ({settings.github_repo}):[/bold]")
    if not published:
        console.print("  [yellow]No releases found[/yellow]")
    for index, r in enumerate(published):
        marker = " [green](stable)[/green]" if index == 0 else ""
        console.print(f"  {r.tag}{marker}  {r.name or ''}")
    console.print()
    console.print("[bold]Tags:[/bold]")
    if not tags:
        console.print("  [yellow]No tags found[/yellow]")
    for index, t in enumerate(tags):
        marker = " [blue](latest)[/blue]" if index == 0 else ""
        console.print(f"  {t.tag}{marker}")


@app.command()
def units(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the customization units in order and run the ordering check."""
    from emcomm_isogen.units.defaults import default_registry

    registry = default_registry()
    listing = registry.describe()
    try:
        registry.validate()
        problem = None
    except IsogenError as e:
        problem = e

    if json_output:
        console.print(json.dumps(listing, indent=2))
    else:
        console.print(f"[bold]{len(listing)} customization unit(s):[/bold]")
        for position, u in enumerate(listing, start=1):
            color = "green" if u["policy"] == "core" else "yellow"
            console.print(
                f"  {position:2d}. [{color}]{u['name']}[/{color}] "
                f"({u['stage']}, {u['policy']})"
            )
            console.print(f"      {u['description']}")
            console.print(f"      writes: {', '.join(u['writes'])}")
            if u["supersedes"]:
                console.print(f"      supersedes: {', '.join(u['supersedes'])}")

    if problem is not None:
        raise _fail(problem)
    if not json_output:
        console.print("[green]Ordering check passed[/green]")


@app.command()
def preseed(
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Station configuration file"),
    ] = None,
    detect: Annotated[
        bool,
        typer.Option(
            "--detect", help="Read this machine's disk layout with lsblk for auto-detect"
        ),
    ] = False,
    layout_path: Annotated[
        Path | None,
        typer.Option(
            "--layout",
            help="lsblk -J output captured on the target machine, for auto-detect",
        ),
    ] = None,
) -> None:
    """Render the preseed and its boot parameters to stdout."""
    from emcomm_isogen.preseed.generator import (
        generate,
        load_layout,
        profile_from_station,
        read_layout,
    )

    settings = get_settings()
    try:
        station = _load_station(config_path or settings.station_config)
        profile = profile_from_station(station)
        if layout_path is not None:
            layout = load_layout(layout_path)
        else:
            layout = read_layout() if detect else None
        output = generate(profile, layout)
    except IsogenError as e:
        raise _fail(e) from None

    typer.echo(output.preseed_text, nl=False)
    typer.echo(f"# boot parameters: {output.boot_params}")
    typer.echo(f"# partitioning strategy: {output.strategy.value}")


backups_app = typer.Typer(help="Manage user-state backups")
app.add_typer(backups_app, name="backups")


@backups_app.command("list")
def backups_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List golden-master and rolling backup sets, newest first."""
    from emcomm_isogen.backups.coordinator import list_sets, read_last_good

    settings = get_settings()
    backups_dir = settings.cache_dir / "backups"
    sets = list_sets(backups_dir, legacy_dir=settings.cache_dir)
    last_good = read_last_good(backups_dir)

    if json_output:
        output = [
            {
                "kind": s.kind.value,
                "archive": str(s.archive_path),
                "captured_at": s.captured_at.isoformat() if s.captured_at else None,
                "last_good": last_good is not None and last_good.archive_path == s.archive_path,
            }
            for s in sets
        ]
        console.print(json.dumps(output, indent=2))
        return

    if not sets:
        console.print("[yellow]No backup sets found[/yellow]")
        return
    console.print(f"[bold]Found {len(sets)} backup set(s):[/bold]")
    for s in sets:
        flag = ""
        if last_good is not None and last_good.archive_path == s.archive_path:
            flag = " [green](last good)[/green]"
        console.print(f"  [{s.kind.value}] {s.archive_path}{flag}")


@backups_app.command("golden-master")
def backups_golden_master(
    source: Annotated[
        Path,
        typer.Option("--source", "-s", help="Home directory to capture"),
    ] = Path.home(),
    paths: Annotated[
        list[str] | None,
        typer.Option("--path", "-p", help="Home-relative path (can be repeated)"),
    ] = None,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Station configuration file for default paths"),
    ] = None,
) -> None:
    """Create a golden-master backup set. Builds never modify golden masters."""
    from emcomm_isogen.backups.coordinator import create_golden_master

    settings = get_settings()
    try:
        if not paths:
            paths = _load_station(config_path or settings.station_config).backup_paths
        backup = create_golden_master(source, paths, settings.cache_dir / "backups")
    except IsogenError as e:
        raise _fail(e) from None
    console.print(f"[green]Golden master created:[/green] {backup.archive_path}")


manifest_app = typer.Typer(help="Inspect build manifests")
app.add_typer(manifest_app, name="manifest")


@manifest_app.command("list")
def manifest_list(
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (succeeded/failed/cancelled)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded builds."""
    from emcomm_isogen.builds.service import list_builds

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: " + ", ".join(s.value for s in BuildStatus))
            raise typer.Exit(code=1) from None

    factory = _session_factory(get_settings())
    with factory() as session:
        builds = list_builds(session, status=status_filter, limit=limit)
        if not builds:
            console.print("[]" if json_output else "[yellow]No build records found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "build_id": b.build_id,
                    "status": b.status,
                    "release_tag": b.release_tag,
                    "started_at": b.started_at.isoformat() if b.started_at else None,
                    "finished_at": b.finished_at.isoformat() if b.finished_at else None,
                    "output_path": b.output_path,
                    "error_type": b.error_type,
                }
                for b in builds
            ]
            console.print(json.dumps(output, indent=2))
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        for b in builds:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "cancelled": "magenta",
                "running": "blue",
            }.get(b.status, "white")
            console.print(
                f"  {b.build_id}  [{status_color}]{b.status}[/{status_color}]"
                f"  {b.release_tag or '-'}"
            )
            if b.error_type:
                console.print(f"    Error: {b.error_type}: {b.error_message}")


@manifest_app.command("show")
def manifest_show(
    build_id: Annotated[str, typer.Argument(help="Build ID (YYYYmmdd_HHMMSS)")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the manifest of one build."""
    from emcomm_isogen.builds.service import BuildNotFoundError, get_build

    factory = _session_factory(get_settings())
    with factory() as session:
        try:
            record = get_build(session, build_id)
        except BuildNotFoundError as e:
            raise _fail(e) from None

        if json_output:
            output = {
                "build_id": record.build_id,
                "status": record.status,
                "versions": record.versions,
                "output_path": record.output_path,
                "log_path": record.log_path,
                "error_type": record.error_type,
                "error_message": record.error_message,
                "restore_attempts": record.restore_attempts,
                "entries": [
                    {
                        "sequence": u.sequence,
                        "kind": u.kind,
                        "name": u.name,
                        "stage": u.stage,
                        "policy": u.policy,
                        "outcome": u.outcome,
                        "message": u.message,
                        "duration": u.duration,
                    }
                    for u in record.units
                ],
            }
            console.print(json.dumps(output, indent=2))
            return

        console.print(f"[bold]Build {record.build_id}[/bold]: {record.status}")
        for key, value in sorted((record.versions or {}).items()):
            console.print(f"  {key}: {value}")
        if record.output_path:
            console.print(f"  ISO: {record.output_path}")
        if record.log_path:
            console.print(f"  Log: {record.log_path}")
        if record.error_type:
            console.print(f"  [red]Error: {record.error_type}: {record.error_message}[/red]")
        console.print()
        for u in record.units:
            color = {"applied": "green", "failed": "red"}.get(u.outcome, "yellow")
            label = f"{u.kind}:{u.name}"
            detail = f" - {u.message}" if u.message else ""
            console.print(
                f"  {u.sequence:3d} {label:<32} [{color}]{u.outcome}[/{color}]"
                f" {u.duration:.1f}s{detail}"
            )
        for attempt in record.restore_attempts or []:
            console.print(
                f"  restore {attempt['kind']}: {attempt['archive'] or '-'} "
                f"{attempt['outcome']}"
            )


if __name__ == "__main__":
    app()
