"""
img-tool CLI Main Entry Point.

    img-tool [OPTIONS] IMAGE COMMAND [ARGS]...

Commands mount, chroot into, copy into, resize or download a raw disk image.
"""

from __future__ import annotations

import json
import re
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, NoReturn

import click
import humanize
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from imgtool import __version__
from imgtool.core.config import ImgToolConfig, load_config
from imgtool.core.errors import ImgToolError
from imgtool.core.models import Image, ResizeReport
from imgtool.core.session import Session
from imgtool.image.chroot import ChrootExecutor
from imgtool.image.mount import Work, open_session
from imgtool.image.resize import ResizeEngine
from imgtool.image.transfer import copy_into, download_image

console = Console(stderr=True)
output = Console()

EXIT_INTERRUPTED = 130
EXIT_TERMINATED = 143


def get_session(ctx: click.Context) -> Session:
    """Get or create session from context."""
    if "session" not in ctx.obj:
        ctx.obj["session"] = Session(config=ctx.obj["config"])
        ctx.call_on_close(ctx.obj["session"].close)
    return ctx.obj["session"]


def fail(message: str, code: int = 1) -> NoReturn:
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(code)


def prepare(ctx: click.Context, tools: list[str] | None = None) -> tuple[Session, Image]:
    """Create the session and run preflight checks for an image command."""
    session = get_session(ctx)
    image_path: Path = ctx.obj["image_path"]
    try:
        session.preflight(image_path, tools)
    except ImgToolError as e:
        fail(str(e), e.exit_code)
    return session, Image(image_path)


def run_in_image(
    session: Session, image: Image, name: str, work: Work, args: list[str]
) -> NoReturn:
    """Mount the image, run work in it and exit with the work's result code."""
    try:
        code = session.run(
            name,
            lambda: open_session(image, work, args, session.platform, session.config.mount),
            image=str(image),
            args=args,
        )
    except ImgToolError as e:
        fail(str(e), e.exit_code)
    sys.exit(code)


@click.group()
@click.version_option(version=__version__, prog_name="img-tool")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--quiet", "-q", is_flag=True, help="Only log warnings and errors")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
@click.argument("image", type=click.Path(path_type=Path))
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    json_output: bool,
    quiet: bool,
    verbose: bool,
    image: Path,
) -> None:
    """
    img-tool - Raw disk image toolkit.

    Mount, chroot into, copy into and resize raw disk images (files or
    block devices) with a FAT boot and an ext root partition.
    """
    ctx.ensure_object(dict)

    try:
        cfg = ImgToolConfig.load_file(config) if config else load_config()
    except (OSError, ValueError) as e:
        fail(f"Cannot load configuration: {e}")

    if quiet:
        cfg.logging.level = "WARNING"
    elif verbose:
        cfg.logging.level = "DEBUG"

    ctx.obj["config"] = cfg
    ctx.obj["json_output"] = json_output
    ctx.obj["quiet"] = quiet
    ctx.obj["image_path"] = image


@cli.command(
    "exec",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("script", required=False, type=click.Path(exists=True, dir_okay=False))
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def exec_command(ctx: click.Context, script: str | None, args: tuple[str, ...]) -> None:
    """Run SCRIPT (or an interactive shell) chrooted into the image."""
    session, image = prepare(ctx)
    executor = ChrootExecutor(session.platform, session.config.chroot)
    work_args = [script, *args] if script else []
    run_in_image(session, image, "exec", executor, work_args)


@cli.command("copy")
@click.argument("src", type=click.Path(exists=True))
@click.argument("dst")
@click.pass_context
def copy_command(ctx: click.Context, src: str, dst: str) -> None:
    """Copy SRC from the host to DST inside the image root."""
    session, image = prepare(ctx)
    run_in_image(session, image, "copy", copy_into, [src, dst])


@cli.command("size")
@click.argument("new_size", required=False)
@click.pass_context
def size_command(ctx: click.Context, new_size: str | None) -> None:
    """Show image geometry, or resize the image to NEW_SIZE (e.g. 4G)."""
    size_bytes = None
    if new_size is not None:
        size_bytes = parse_size(new_size)
        if size_bytes is None or size_bytes <= 0:
            fail(f"Invalid size: {new_size}")

    session, image = prepare(ctx)
    engine = ResizeEngine(session.platform, session.config.mount, session.config.resize)

    try:
        report = session.run(
            "size",
            lambda: engine.resize(image, size_bytes),
            image=str(image),
            requested_bytes=size_bytes,
        )
    except ImgToolError as e:
        fail(str(e), e.exit_code)

    if ctx.obj["json_output"]:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print_report(report)


@cli.command("load")
@click.argument("url")
@click.pass_context
def load_command(ctx: click.Context, url: str) -> None:
    """Download a zipped image from URL and unpack it to IMAGE."""
    session = get_session(ctx)
    image_path: Path = ctx.obj["image_path"]
    try:
        session.preflight()
    except ImgToolError as e:
        fail(str(e), e.exit_code)

    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=console,
        disable=ctx.obj["quiet"],
    ) as progress:
        task = progress.add_task("Downloading", total=None)

        def on_progress(done: int, total: int | None) -> None:
            progress.update(task, completed=done, total=total)

        try:
            session.run(
                "load",
                lambda: download_image(url, image_path, session.config.load, on_progress),
                url=url,
                image=str(image_path),
            )
        except ImgToolError as e:
            fail(str(e), e.exit_code)

    if not ctx.obj["quiet"]:
        console.print(f"[green]Image saved to {image_path}[/green]")


def print_report(report: ResizeReport) -> None:
    """Show a resize report as a table."""

    def size(value: int | None) -> str:
        if value is None:
            return "-"
        return f"{humanize.naturalsize(value, binary=True)} ({value:,} bytes)"

    table = Table(title=f"Image {report.image_path}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Kind", report.kind.value)
    table.add_row("Root partition", str(report.partition_number))
    table.add_row("Partition start", size(report.partition_start_bytes))
    table.add_row("Partition size", size(report.partition_size_bytes))
    table.add_row("Minimum filesystem", size(report.minimum_filesystem_bytes))
    table.add_row("Minimum image", size(report.minimum_image_bytes))
    table.add_row("Current image", size(report.current_image_bytes))
    table.add_row("Allocated / capacity", size(report.object_bytes))

    if report.action != "report":
        table.add_row("Action", report.action)
        table.add_row("Target image", size(report.target_image_bytes))
        table.add_row("Target partition", size(report.target_partition_bytes))
    if report.changed:
        table.add_row("Disk identifier", f"{report.old_disk_id} -> {report.new_disk_id}")
        table.add_row("PARTUUID updated", "Yes" if report.partuuid_updated else "No")

    output.print(table)
    for warning in report.warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")


def parse_size(size_str: str) -> int | None:
    """Parse size string like '10G' to bytes."""
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([KMGT]?)B?$", size_str.strip().upper())
    if not match:
        return None

    value = float(match.group(1))
    unit = match.group(2)

    multipliers = {
        "": 1,
        "K": 1024,
        "M": 1024**2,
        "G": 1024**3,
        "T": 1024**4,
    }

    return int(value * multipliers.get(unit, 1))


def _terminate(signum: int, frame: Any) -> None:
    raise SystemExit(EXIT_TERMINATED)


def install_signal_handlers(handler: Callable[[int, Any], None] = _terminate) -> None:
    """Route SIGTERM through SystemExit so cleanup in finally blocks still runs."""
    signal.signal(signal.SIGTERM, handler)


def main() -> None:
    """Main entry point."""
    install_signal_handlers()
    try:
        # click's standalone mode would turn Ctrl-C into exit code 1
        rv = cli.main(obj={}, standalone_mode=False)
    except (KeyboardInterrupt, click.exceptions.Abort):
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    sys.exit(rv if isinstance(rv, int) else 0)


if __name__ == "__main__":
    main()
