"""Thin CLI wrapper for armbian_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from armbian_imagegen import __version__
from armbian_imagegen.config import get_settings, print_settings_json
from armbian_imagegen.errors import ImagegenError
from armbian_imagegen.types import BuildProgress, FlashProgress, FlashStatus, StorageKind

if TYPE_CHECKING:
    from armbian_imagegen.configuration.schema import BuildConfiguration

app = typer.Typer(
    name="armbian-imagegen",
    help="Armbian Image Generator - build customized images and flash Rockchip boards",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"armbian-imagegen version {__version__}")
        raise typer.Exit()


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data))


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]{escape(message)}[/red]")
    return typer.Exit(code=1)


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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Armbian Image Generator - build customized images and flash Rockchip boards."""
    level = "DEBUG" if verbose else get_settings().log_level
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


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
        console.print_json(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Build directory:     {settings.build_dir}")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  rkdeveloptool:       {settings.rkdeveloptool_path}")
    console.print(f"  Loader:              {settings.loader_path}")
    console.print(f"  Archive base URL:    {settings.archive_base_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Offline mode:        {settings.offline}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Cache max age:       {settings.cache_max_age_days} days")
    console.print()
    console.print("[bold]Flashing:[/bold]")
    console.print(f"  Device cooldown:     {settings.device_check_cooldown}s")
    console.print(f"  Compress above:      {settings.compression_threshold_bytes} bytes")
    console.print(f"  Loader settle:       {settings.loader_settle_seconds}s")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Query timeout:       {settings.query_timeout}")
    console.print(f"  Loader timeout:      {settings.loader_timeout}")
    console.print(f"  Write timeout:       {settings.write_timeout}")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Build timeout:       {settings.build_timeout}")


builds_app = typer.Typer(help="Build customized Armbian images")
app.add_typer(builds_app, name="build")


def _load_config_file(config_file: Path) -> "BuildConfiguration":
    from armbian_imagegen.configuration.io import load_configuration

    if not config_file.exists():
        raise _fail(f"File not found: {config_file}")
    try:
        return load_configuration(config_file)
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise _fail(f"Invalid configuration file: {e}") from None


@builds_app.command("run")
def build_run(
    config_file: Annotated[Path, typer.Argument(help="Build configuration (YAML or JSON)")],
    build_id: Annotated[
        str | None,
        typer.Option("--build-id", "-b", help="Build identifier (generated if omitted)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a customized image from a configuration file.

    Acquires the base image (cache, download or placeholder), injects the
    customization and packages the artifacts into the build directory.
    """
    from armbian_imagegen.builds.service import execute_build, generate_build_config

    build_config = _load_config_file(config_file)
    settings = get_settings()
    job_id = build_id or f"build_{int(time.time() * 1000)}"

    def on_progress(update: BuildProgress) -> None:
        if not json_output:
            console.print(
                f"  [blue]{update.phase}[/blue] {update.progress:3d}% {escape(update.message)}"
            )

    try:
        work_dir = generate_build_config(build_config, job_id, settings)
        artifacts = execute_build(work_dir, job_id, on_progress, settings=settings)
    except ImagegenError as e:
        raise _fail(f"Build failed: {e.message}") from None
    except OSError as e:
        raise _fail(f"Build failed: {e}") from None

    if json_output:
        _print_json(
            {
                "build_id": job_id,
                "work_dir": str(work_dir),
                "artifacts": [
                    {
                        "id": a.id,
                        "name": a.name,
                        "kind": a.kind.value,
                        "size_bytes": a.size_bytes,
                        "path": a.path,
                        "url": a.url,
                        "sha256": a.sha256,
                    }
                    for a in artifacts
                ],
            }
        )
        return

    console.print(f"[green]✓ Build {job_id} succeeded[/green]")
    console.print(f"  Work directory: {work_dir}")
    for a in artifacts:
        console.print(f"    {a.name} ({a.kind.value}, {a.size_bytes:,} bytes)")


@builds_app.command("scripts")
def build_scripts(
    config_file: Annotated[Path, typer.Argument(help="Build configuration (YAML or JSON)")],
) -> None:
    """Print the generated customization script for a configuration."""
    from armbian_imagegen.builds.scripts import generate_scripts

    scripts = generate_scripts(_load_config_file(config_file))
    if not scripts.customize_script:
        console.print("[yellow]Configuration has no customization[/yellow]")
        return
    console.print(scripts.customize_script, markup=False, highlight=False, soft_wrap=True)


@builds_app.command("clean")
def build_clean(
    build_id: Annotated[str, typer.Argument(help="Build to remove")],
) -> None:
    """Remove a build's work directory."""
    from armbian_imagegen.builds.service import cleanup_build

    try:
        removed = cleanup_build(build_id, get_settings())
    except ValueError as e:
        raise _fail(str(e)) from None

    if removed:
        console.print(f"[green]Removed build {escape(build_id)}[/green]")
    else:
        console.print(f"[yellow]Nothing removed for build {escape(build_id)}[/yellow]")


devices_app = typer.Typer(help="Detect Rockchip devices and their storage")
app.add_typer(devices_app, name="devices")


@devices_app.command("list")
def devices_list(
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Probe even within the detection cooldown"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List devices attached in maskrom/loader mode."""
    from armbian_imagegen.flash.service import FlashEngine

    devices = FlashEngine(get_settings()).detect_devices(force=force)

    if json_output:
        _print_json(
            [
                {
                    "id": d.id,
                    "mode": d.mode.value,
                    "chip_family": d.chip_family,
                    "status": d.status,
                }
                for d in devices
            ]
        )
        return

    if not devices:
        console.print("[yellow]No Rockchip devices found[/yellow]")
        return
    console.print(f"[bold]Found {len(devices)} device(s):[/bold]")
    for d in devices:
        console.print(f"  [green]Device {d.id}[/green]: {d.status}")


@devices_app.command("storage")
def devices_storage(
    device_id: Annotated[str, typer.Argument(help="Device number from 'devices list'")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Probe eMMC, SD card and SPI NOR on a device in loader mode."""
    from armbian_imagegen.flash.service import FlashEngine

    storages = FlashEngine(get_settings()).detect_storage_devices(device_id)

    if json_output:
        _print_json(
            [
                {
                    "kind": s.kind.value,
                    "name": s.name,
                    "code": s.code,
                    "available": s.available,
                    "capacity": s.capacity,
                    "recommended": s.recommended,
                    "description": s.description,
                }
                for s in storages
            ]
        )
        return

    console.print(f"[bold]Storage on device {device_id}:[/bold]")
    for s in storages:
        marker = "[green]✓[/green]" if s.available else "[red]✗[/red]"
        capacity = f" ({s.capacity})" if s.capacity else ""
        console.print(f"  {marker} {s.name}{capacity} - {s.description}")


flash_app = typer.Typer(help="Flash images to Rockchip boards")
app.add_typer(flash_app, name="flash")


@flash_app.command("image")
def flash_image_cmd(
    image_path: Annotated[Path, typer.Argument(help="Path to image file")],
    device_id: Annotated[str, typer.Argument(help="Device number from 'devices list'")],
    storage: Annotated[
        StorageKind,
        typer.Option("--storage", "-s", help="Storage target"),
    ] = StorageKind.EMMC,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompts"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Flash an image file to a board's eMMC, SD card or SPI NOR."""
    from armbian_imagegen.flash.service import FlashEngine

    if not force:
        console.print(
            f"[bold red]WARNING:[/bold red] This will OVERWRITE {storage.value} on device {device_id}"
        )
        console.print(f"  Image: {image_path}")
        confirm = typer.confirm("Are you sure you want to continue?", default=False)
        if not confirm:
            console.print("[yellow]Aborted[/yellow]")
            raise typer.Exit(code=0)

    def on_progress(update: FlashProgress) -> None:
        if not json_output:
            speed = f" ({update.transfer_speed})" if update.transfer_speed else ""
            console.print(
                f"  [blue]{update.phase.value}[/blue] {update.progress:3d}% "
                f"{escape(update.message)}{speed}"
            )

    engine = FlashEngine(get_settings())
    job_id = engine.flash_image(
        image_path.stem, image_path, device_id, on_progress, storage_target=storage
    )
    job = engine.get_flash_job(job_id)

    if json_output:
        _print_json(
            {
                "id": job.id,
                "device_id": job.device_id,
                "image_path": job.image_path,
                "storage_target": job.storage_target.value,
                "status": job.status.value,
                "phases": [p.value for p in job.phases],
                "error": job.error,
                "error_code": job.error_code,
            }
        )
    elif job.status == FlashStatus.COMPLETED:
        console.print("[green]✓ Flash succeeded[/green]")
    else:
        console.print(f"[red]✗ Flash failed: {escape(job.error or 'unknown error')}[/red]")

    if job.status != FlashStatus.COMPLETED:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
