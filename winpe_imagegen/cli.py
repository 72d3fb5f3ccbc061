"""Thin CLI wrapper for winpe_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from winpe_imagegen import __version__
from winpe_imagegen.config import Settings, get_settings, print_settings_json
from winpe_imagegen.errors import ImagegenError

if TYPE_CHECKING:
    from winpe_imagegen.builds.orchestrator import BuildOrchestrator
    from winpe_imagegen.mount.session import MountSessionManager

app = typer.Typer(
    name="winpe-imagegen",
    help="WinPE Image Generator - customize WinPE boot images and build ISO/USB media",
    no_args_is_help=True,
)
console = Console(soft_wrap=True)
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route library logging through rich at the given level."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.addHandler(
        RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
    )
    root.setLevel(level)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"winpe-imagegen version {__version__}")
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
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """WinPE Image Generator - customize WinPE boot images and build ISO/USB media."""
    configure_logging((log_level or get_settings().log_level).upper())


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
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:       {settings.cache_dir}")
        console.print(f"  Runtime catalog:       {settings.effective_catalog_path()}")
        console.print(f"  Work directory:        {settings.work_dir}")
        console.print(f"  Diagnostics directory: {settings.diagnostics_dir}")
        console.print(f"  Lock directory:        {settings.lock_dir}")
        console.print(f"  Database URL:          {settings.db_url}")
        console.print()
        console.print("[bold]Tools:[/bold]")
        console.print(f"  DISM:                  {settings.dism_path}")
        console.print(f"  reg:                   {settings.reg_path}")
        console.print(f"  oscdimg:               {settings.oscdimg_path}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Offline mode:          {settings.offline}")
        console.print(f"  Log level:             {settings.log_level}")
        console.print(f"  Min free space (MiB):  {settings.min_free_space_mb}")
        console.print(f"  Retry attempts:        {settings.retry_max_attempts}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Acquire:               {settings.acquire_timeout}")
        console.print(f"  Mount / dismount:      {settings.mount_timeout} / {settings.dismount_timeout}")
        console.print(f"  Task:                  {settings.task_timeout}")
        console.print(f"  Download:              {settings.download_timeout}")
        console.print(f"  Cache lock:            {settings.cache_lock_timeout}")
        console.print(f"  Assemble:              {settings.assemble_timeout}")


def build_orchestrator(settings: Settings) -> "BuildOrchestrator":
    """Wire the production collaborators into an orchestrator."""
    from winpe_imagegen.builds.diagnostics import DiagnosticsCollector
    from winpe_imagegen.builds.orchestrator import BuildOrchestrator
    from winpe_imagegen.builds.packager import OscdimgPackager
    from winpe_imagegen.mount.engine import DismEngine
    from winpe_imagegen.packages.cache import PackageCache

    dism_log = settings.work_dir / "dism.log"
    settings.work_dir.mkdir(parents=True, exist_ok=True)
    engine = DismEngine(settings.dism_path, settings.reg_path, log_path=dism_log)
    return BuildOrchestrator(
        engine=engine,
        packager=OscdimgPackager(settings.oscdimg_path),
        cache=PackageCache.from_settings(settings),
        settings=settings,
        diagnostics=DiagnosticsCollector(
            include_registry_hives=settings.collect_registry_hives,
            host_log=dism_log,
        ),
    )


builds_app = typer.Typer(help="Build WinPE media")
app.add_typer(builds_app, name="build")


@builds_app.command("run")
def build_run(
    source_image: Annotated[Path, typer.Argument(help="Boot image (.wim) to customize")],
    output: Annotated[Path, typer.Argument(help="ISO file or USB staging directory")],
    runtime_version: Annotated[
        str,
        typer.Option("--runtime-version", "-r", help="PowerShell version (X.Y.Z)"),
    ],
    image_index: Annotated[
        int, typer.Option("--index", help="Image index inside the WIM")
    ] = 1,
    media_dir: Annotated[
        Path | None,
        typer.Option("--media-dir", help="Media tree (default: folder above sources/)"),
    ] = None,
    artifact_format: Annotated[
        str, typer.Option("--format", "-f", help="Artifact format (iso/usb)")
    ] = "iso",
    include_recovery: Annotated[
        bool, typer.Option("--include-recovery", help="Embed a recovery image")
    ] = False,
    recovery_image: Annotated[
        Path | None,
        typer.Option("--recovery-image", help="Recovery image (Winre.wim) to embed"),
    ] = None,
    startup_script: Annotated[
        Path | None,
        typer.Option("--startup-script", help="Custom PowerShell startup script"),
    ] = None,
    optimize_size: Annotated[
        bool,
        typer.Option("--optimize-size/--no-optimize-size", help="Remove unused locales"),
    ] = True,
    configure_startup: Annotated[
        bool,
        typer.Option("--startup/--no-startup", help="Launch PowerShell at boot"),
    ] = True,
    keep_locales: Annotated[
        list[str] | None,
        typer.Option("--keep-locale", help="Locale to keep (can be repeated)"),
    ] = None,
    preserve_artifacts: Annotated[
        bool,
        typer.Option("--preserve-artifacts", help="Keep the build work directory"),
    ] = False,
    label: Annotated[str, typer.Option("--label", help="Volume label")] = "WINPE",
    acquire_timeout: Annotated[
        float | None,
        typer.Option("--acquire-timeout", help="Seconds to wait for the image lock"),
    ] = None,
    task_timeout: Annotated[
        float | None,
        typer.Option("--task-timeout", help="Seconds allowed per customization task"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Customize a boot image and package it as ISO or USB media."""
    from winpe_imagegen.builds.request import BuildFlags, BuildRequest, StageTimeouts
    from winpe_imagegen.builds.service import run_build
    from winpe_imagegen.db import create_all_tables, get_engine, get_session_factory
    from winpe_imagegen.errors import BuildFailedError

    settings = get_settings()

    try:
        request = BuildRequest(
            source_image=source_image,
            image_index=image_index,
            output_path=output,
            runtime_version=runtime_version,
            media_dir=media_dir,
            artifact_format=artifact_format,
            flags=BuildFlags(
                include_recovery=include_recovery,
                optimize_size=optimize_size,
                configure_startup=configure_startup,
                preserve_artifacts=preserve_artifacts,
            ),
            recovery_image=recovery_image,
            startup_script=startup_script,
            keep_locales=tuple(keep_locales or ["en-US"]),
            volume_label=label,
            timeouts=StageTimeouts.from_settings(
                settings, acquire=acquire_timeout, task=task_timeout
            ),
        )
    except ValidationError as e:
        console.print("[red]Invalid build request:[/red]")
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            console.print(f"  {loc}: {error['msg']}")
        raise typer.Exit(code=1) from None

    try:
        orchestrator = build_orchestrator(settings)
    except ImagegenError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=1) from None

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            record, artifact = run_build(session, orchestrator, request)
        except BuildFailedError as e:
            if json_output:
                output_data = {
                    "success": False,
                    "stage": e.stage.value,
                    "code": e.code,
                    "error": str(e.cause),
                    "error_type": type(e.cause).__name__,
                    "diagnostics_path": str(e.diagnostics_path)
                    if e.diagnostics_path
                    else None,
                    "tasks": [
                        {"name": r.name, "success": r.success, "error": r.error}
                        for r in e.task_results
                    ],
                }
                console.print(json.dumps(output_data, indent=2))
            else:
                console.print(f"[red]✗ Build failed during {e.stage.value}[/red]")
                console.print(f"  Error: {e.cause}")
                for result in e.task_results:
                    if not result.success:
                        console.print(f"  [red]- {result.name}: {result.error}[/red]")
                if e.diagnostics_path:
                    console.print(f"  Diagnostics: {e.diagnostics_path}")
            raise typer.Exit(code=1) from None

    if json_output:
        output_data = {
            "success": True,
            "build_id": record.id,
            "path": str(artifact.path),
            "sha256": artifact.sha256,
            "size_bytes": artifact.size_bytes,
            "includes_recovery": artifact.includes_recovery,
            "runtime_version": artifact.runtime_version,
            "manifest_path": str(artifact.manifest_path) if artifact.manifest_path else None,
        }
        console.print(json.dumps(output_data, indent=2))
    else:
        console.print(f"[green]✓ Build #{record.id} succeeded[/green]")
        console.print(f"  Artifact: {artifact.path}")
        console.print(f"  SHA-256: {artifact.sha256}")
        console.print(f"  Size: {artifact.size_bytes} bytes")


@builds_app.command("list")
def builds_list(
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    runtime_version: Annotated[
        str | None,
        typer.Option("--runtime-version", "-r", help="Filter by runtime version"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from winpe_imagegen.builds.service import list_builds
    from winpe_imagegen.db import create_all_tables, get_engine, get_session_factory
    from winpe_imagegen.types import BuildStatus

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    with factory() as session:
        builds = list_builds(
            session,
            status=status_filter,
            runtime_version=runtime_version,
            limit=limit,
        )

        if not builds:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": b.id,
                    "status": b.status,
                    "stage": b.stage,
                    "source_image": b.source_image,
                    "output_path": b.output_path,
                    "runtime_version": b.runtime_version,
                    "artifact_format": b.artifact_format,
                    "requested_at": b.requested_at.isoformat()
                    if b.requested_at
                    else None,
                    "finished_at": b.finished_at.isoformat() if b.finished_at else None,
                    "artifact_sha256": b.artifact_sha256,
                    "diagnostics_path": b.diagnostics_path,
                    "error_type": b.error_type,
                    "error_message": b.error_message,
                }
                for b in builds
            ]
            console.print(json.dumps(output, indent=2))
        else:
            console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
            console.print()
            for b in builds:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "running": "blue",
                    "pending": "yellow",
                }.get(b.status, "white")
                console.print(f"  [{status_color}]Build #{b.id}[/{status_color}]")
                console.print(f"    Image: {b.source_image}")
                console.print(f"    Runtime: {b.runtime_version} ({b.artifact_format})")
                console.print(f"    Status: {b.status} (stage: {b.stage})")
                if b.artifact_sha256:
                    console.print(f"    SHA-256: {b.artifact_sha256}")
                if b.error_message:
                    console.print(f"    Error: {b.error_message}")
                if b.diagnostics_path:
                    console.print(f"    Diagnostics: {b.diagnostics_path}")
                console.print()


@builds_app.command("show")
def builds_show(
    build_id: Annotated[int, typer.Argument(help="Build record ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show one build record, including its inputs and outcome."""
    from winpe_imagegen.builds.service import BuildNotFoundError, get_build
    from winpe_imagegen.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )

    engine = get_engine()
    create_all_tables(engine)

    with get_session(get_session_factory(engine)) as session:
        try:
            b = get_build(session, build_id)
        except BuildNotFoundError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            output = {
                "id": b.id,
                "status": b.status,
                "succeeded": b.is_succeeded(),
                "stage": b.stage,
                "source_image": b.source_image,
                "output_path": b.output_path,
                "runtime_version": b.runtime_version,
                "artifact_format": b.artifact_format,
                "requested_at": b.requested_at.isoformat() if b.requested_at else None,
                "started_at": b.started_at.isoformat() if b.started_at else None,
                "finished_at": b.finished_at.isoformat() if b.finished_at else None,
                "inputs": b.input_snapshot,
                "artifact_sha256": b.artifact_sha256,
                "artifact_size_bytes": b.artifact_size_bytes,
                "manifest_path": b.manifest_path,
                "diagnostics_path": b.diagnostics_path,
                "error_type": b.error_type,
                "error_code": b.error_code,
                "error_message": b.error_message,
            }
            console.print(json.dumps(output, indent=2))
            return

        if b.is_succeeded():
            console.print(f"[green]Build #{b.id} succeeded[/green]")
        else:
            console.print(f"[bold]Build #{b.id}: {b.status}[/bold] (stage: {b.stage})")
        console.print(f"  Image: {b.source_image}")
        console.print(f"  Output: {b.output_path} ({b.artifact_format})")
        console.print(f"  Runtime: {b.runtime_version}")
        if b.artifact_sha256:
            console.print(f"  SHA-256: {b.artifact_sha256}")
            console.print(f"  Size: {b.artifact_size_bytes} bytes")
        if b.manifest_path:
            console.print(f"  Manifest: {b.manifest_path}")
        if b.error_message:
            console.print(f"  Error ({b.error_code or b.error_type}): {b.error_message}")
        if b.diagnostics_path:
            console.print(f"  Diagnostics: {b.diagnostics_path}")


cache_app = typer.Typer(help="Manage the runtime package cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cached runtime packages."""
    from winpe_imagegen.packages.cache import PackageCache

    try:
        cache = PackageCache.from_settings(get_settings())
    except ImagegenError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    entries = cache.list_entries()
    if json_output:
        console.print(json.dumps([e.to_dict() | {"path": str(e.path)} for e in entries], indent=2))
        return
    if not entries:
        console.print("[yellow]No cached runtime packages[/yellow]")
        return
    console.print(f"[bold]Found {len(entries)} cached runtime(s):[/bold]")
    for entry in entries:
        console.print(f"  [green]{entry.version}[/green]  {entry.path}")
        console.print(f"    SHA-256: {entry.sha256}")
        console.print(f"    Validated: {entry.validated_at.isoformat()}")


@cache_app.command("fetch")
def cache_fetch(
    version: Annotated[str, typer.Argument(help="PowerShell version (X.Y.Z)")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Download and verify a runtime package."""
    from winpe_imagegen.packages.cache import PackageCache

    try:
        cache = PackageCache.from_settings(get_settings())
        if not json_output:
            console.print(f"[blue]Ensuring runtime {version}...[/blue]")
        entry = cache.get_or_fetch(version)
    except (ImagegenError, ValueError) as e:
        console.print(f"[red]Failed to fetch runtime {version}: {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(json.dumps(entry.to_dict() | {"path": str(entry.path)}, indent=2))
    else:
        console.print(f"[green]✓ Runtime {version} ready[/green]")
        console.print(f"  Path: {entry.path}")
        console.print(f"  SHA-256: {entry.sha256}")


@cache_app.command("prune")
def cache_prune(
    keep: Annotated[
        list[str] | None,
        typer.Option("--keep", "-k", help="Version to keep (can be repeated)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Remove cached runtime packages."""
    from winpe_imagegen.packages.cache import PackageCache

    try:
        cache = PackageCache.from_settings(get_settings())
        removed = cache.prune(keep_versions=keep)
    except ImagegenError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(json.dumps({"pruned": removed}, indent=2))
    elif not removed:
        console.print("[yellow]No runtime packages to prune[/yellow]")
    else:
        console.print(f"[bold]Pruned {len(removed)} runtime package(s):[/bold]")
        for version in removed:
            console.print(f"  - {version}")


@cache_app.command("info")
def cache_info(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show runtime cache information."""
    from winpe_imagegen.packages.cache import PackageCache

    try:
        cache = PackageCache.from_settings(get_settings())
    except ImagegenError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    info = cache.cache_info()
    catalog_versions = sorted(cache.catalog.versions)
    info["catalog_versions"] = catalog_versions
    if json_output:
        console.print(json.dumps(info, indent=2))
    else:
        console.print("[bold]Runtime Cache Information:[/bold]")
        console.print()
        console.print(f"  Cache directory: {info['cache_dir']}")
        console.print(f"  Exists: {info['exists']}")
        console.print(f"  Entries: {info['entries']}")
        console.print(f"  Total size: {info['total_size_bytes']} bytes")
        console.print(
            f"  Catalog versions: {', '.join(catalog_versions) or '(none)'}"
        )


sessions_app = typer.Typer(help="Inspect and recover mount sessions")
app.add_typer(sessions_app, name="sessions")


def _session_manager(settings: Settings) -> "MountSessionManager":
    from winpe_imagegen.mount.engine import DismEngine
    from winpe_imagegen.mount.session import MountSessionManager

    engine = DismEngine(settings.dism_path, settings.reg_path)
    return MountSessionManager.from_settings(engine, settings)


@sessions_app.command("show")
def sessions_show(
    image: Annotated[Path, typer.Argument(help="Boot image (.wim)")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the recorded owner of an image's mount session."""
    manager = _session_manager(get_settings())
    owner = manager.inspect(image)

    if json_output:
        console.print(
            json.dumps(
                {"image": str(image), "owner": owner, "stale": manager.is_stale(owner) if owner else False},
                indent=2,
            )
        )
        return
    if owner is None:
        console.print(f"[green]No mount session recorded for {image}[/green]")
        return
    stale = manager.is_stale(owner)
    color = "red" if stale else "yellow"
    console.print(f"[{color}]Mount session for {image}[/{color}]")
    for key in ("state", "pid", "host", "mount_dir", "acquired_at"):
        console.print(f"  {key}: {owner.get(key)}")
    console.print(f"  recoverable: {stale}")


@sessions_app.command("recover")
def sessions_recover(
    image: Annotated[Path, typer.Argument(help="Boot image (.wim)")],
    timeout: Annotated[
        float,
        typer.Option("--timeout", help="Seconds to wait for the image lock"),
    ] = 30,
) -> None:
    """Discard a stale mount session left behind by a dead or failed build."""
    manager = _session_manager(get_settings())
    try:
        owner = manager.recover_stale(image, timeout=timeout)
    except ImagegenError as e:
        console.print(f"[red]Cannot recover session: {e}[/red]")
        raise typer.Exit(code=1) from None

    if owner is None:
        console.print(f"[yellow]No stale session for {image}[/yellow]")
    else:
        console.print(f"[green]✓ Recovered mount session for {image}[/green]")
        console.print(f"  Previous owner: pid {owner.get('pid')} on {owner.get('host')}")


if __name__ == "__main__":
    app()
