"""
crosrec CLI

Guides the user from the remote catalog to a recovered disk: pick an image,
download and verify it, pick a drive, write it.
"""

import sys
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, NoReturn, Optional

import requests
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from crosrec.catalog import load_catalog, parse_catalog, check_version
from crosrec.config import (
    DEFAULT_CONFIG_URL,
    DEFAULT_WORKDIR,
    TOOL_VERSION,
    Settings,
    debug_log,
    working_directory,
)
from crosrec.core.messages import CatalogError, FatalCategory, RecoveryError, UserQuit
from crosrec.core.results import DownloadArtifact
from crosrec.devices import select_backend
from crosrec.download import acquire
from crosrec.host import HostCapabilities, detect_host
from crosrec.selection import choose_drive, choose_image, match_model
from crosrec.state import DEFAULT_STATE_DIR, StateStore
from crosrec.transfer import make_session
from crosrec.writer import select_partition_reader, write_image

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(level=logging.INFO, rich_tracebacks=True)],
)
logger = logging.getLogger("crosrec")

# Setup Rich consoles
console = Console()
err_console = Console(stderr=True)

app = typer.Typer(help="💾 Chrome OS recovery image writer")


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    err_console.print(f"⚠️  {text}", style="yellow", markup=False)


def print_error(text: str) -> None:
    """Print error message."""
    err_console.print(f"❌ {text}", style="red", markup=False)


def say(text: str) -> None:
    console.print(text, markup=False, highlight=False)


def ask(text: str) -> str:
    return typer.prompt(text, default="", show_default=False, prompt_suffix="")


def fail(exc: RecoveryError) -> NoReturn:
    """Report a fatal condition and leave with its exit status."""
    if isinstance(exc, UserQuit):
        if exc.exit_code:
            print_warning(exc.message)
        raise typer.Exit(exc.exit_code)

    print_error(exc.message)
    if exc.category is not FatalCategory.NONE:
        err_console.print()
        err_console.print(exc.remediation, style="dim", markup=False)
    raise typer.Exit(1)


class TransferProgress:
    """Progress callback that opens its Rich display on the first update."""

    def __init__(self, description: str):
        self.description = description
        self.progress: Optional[Progress] = None
        self.task = None

    def __call__(self, done: int, total: int) -> None:
        if self.progress is None:
            self.progress = Progress(
                TextColumn(f"[bold]{self.description}[/]"),
                BarColumn(),
                DownloadColumn(),
                TransferSpeedColumn(),
                TimeRemainingColumn(),
                console=console,
            )
            self.progress.start()
            self.task = self.progress.add_task(self.description, total=total or None)
        self.progress.update(self.task, completed=done, total=total or None)

    def stop(self) -> None:
        if self.progress is not None:
            self.progress.stop()


@contextmanager
def transfer_progress(description: str) -> Iterator[TransferProgress]:
    bar = TransferProgress(description)
    try:
        yield bar
    finally:
        bar.stop()


def host_for(settings: Settings) -> HostCapabilities:
    try:
        return detect_host(settings.checksum, settings.unpack)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def fetch_image(
    settings: Settings,
    caps: HostCapabilities,
    workdir: Path,
    store: StateStore,
    session: requests.Session,
) -> DownloadArtifact:
    """Load the catalog, settle on one image and download it."""
    header, stanza_text = load_catalog(settings.config_url, workdir, session)
    check_version(header.declared_version, TOOL_VERSION, header.update_hint)
    catalog = parse_catalog(stanza_text, caps.checksum_kind)
    if not catalog.valid:
        raise CatalogError("The config file isn't valid.")

    if settings.model:
        index = match_model(catalog, settings.model, say)
    else:
        index = choose_image(catalog, store, ask, say)
    stanza = catalog.get(index)
    say("")

    with transfer_progress(f"Downloading {stanza.zip_name}") as bar:
        return acquire(stanza, workdir, caps, store, ask, say, session=session, progress_cb=bar)


def run_recovery(settings: Settings) -> None:
    """The full catalog-to-disk sequence."""
    with working_directory(settings.workdir) as workdir, debug_log(workdir):
        err_console.print(f"Working in {workdir}/", markup=False)
        if settings.device:
            logger.debug("DEVICE=%s is reserved and not used for selection", settings.device)

        caps = host_for(settings)
        if caps.missing_tools:
            for tool in caps.missing_tools:
                print_error(f'need "{tool}"')
            raise RecoveryError("Some required utilities are missing.", FatalCategory.PERMISSION)

        with make_session() as session:
            artifact = fetch_image(settings, caps, workdir, StateStore(settings.state_dir), session)
        print_success(f"Verified {artifact.path.name} ({artifact.size:,} bytes)")

        backend = select_backend(caps)
        device = choose_drive(backend.list_devices, artifact.required_mb, ask, say)

        console.print(Panel(
            f"[bold yellow]Writing to {device.node}. Its contents will be overwritten.[/bold yellow]",
            border_style="red",
            expand=False,
        ))
        with transfer_progress("Writing root filesystem") as bar:
            result = write_image(
                artifact,
                device,
                backend,
                workdir,
                select_partition_reader(caps),
                progress_cb=bar,
            )

        for warning in result.warnings:
            print_warning(warning)
        console.print(result.to_summary(), markup=False)
        print_success("Recovery image written")


@app.callback(invoke_without_command=True)
def main_command(
    ctx: typer.Context,
    config_url: str = typer.Option(
        DEFAULT_CONFIG_URL, "--config", envvar="CROSREC_CONFIG_URL",
        help="Catalog URL (debugging only)",
    ),
    workdir: str = typer.Option(
        DEFAULT_WORKDIR, "--workdir", envvar="WORKDIR",
        help="Persistent working directory (lets downloads resume)",
    ),
    model: Optional[str] = typer.Option(
        None, "--model", envvar="MODEL",
        help="Hardware class; selects the image without prompting",
    ),
    device: Optional[str] = typer.Option(None, "--device", envvar="DEVICE", hidden=True),
    state_dir: Path = typer.Option(
        Path(DEFAULT_STATE_DIR), "--state-dir", envvar="CROSREC_STATE_DIR",
        help="Where the saved choice and last URL are kept",
    ),
    checksum: Optional[str] = typer.Option(
        None, "--checksum", envvar="CROSREC_CHECKSUM", help="Force sha1 or md5",
    ),
    unpack: Optional[str] = typer.Option(
        None, "--unpack", envvar="CROSREC_UNPACK", help="Force zip or gzip",
    ),
) -> None:
    """Write a recovery image to a USB drive. Just run it."""
    settings = Settings(
        workdir=workdir or None,
        config_url=config_url,
        model=model or None,
        device=device or None,
        state_dir=state_dir,
        checksum=checksum,
        unpack=unpack,
    )
    ctx.obj = settings
    if ctx.invoked_subcommand is not None:
        return

    try:
        run_recovery(settings)
    except RecoveryError as e:
        fail(e)


@app.command("list-drives")
def list_drives(ctx: typer.Context) -> None:
    """List removable USB drives that could receive an image."""
    print_header("Removable Drives")

    caps = host_for(ctx.obj)
    try:
        devices = select_backend(caps).list_devices()
    except RecoveryError as e:
        fail(e)

    if not devices:
        print_warning("No removable USB drives found")
        return

    table = Table(title="USB Drives")
    table.add_column("#", style="cyan")
    table.add_column("Device", style="magenta")
    table.add_column("Capacity", style="green")
    table.add_column("Description")

    for i, dev in enumerate(devices, 1):
        table.add_row(str(i), dev.node, f"{dev.size_mb:,} MB", dev.description)

    console.print(table)


@app.command("list-images")
def list_images(ctx: typer.Context) -> None:
    """Show the images offered by the catalog."""
    settings: Settings = ctx.obj
    print_header("Recovery Images")
    console.print(f"Catalog: {settings.config_url}", markup=False)

    caps = host_for(settings)
    try:
        with working_directory(None) as tmp:
            header, stanza_text = load_catalog(settings.config_url, tmp)
    except RecoveryError as e:
        fail(e)

    catalog = parse_catalog(stanza_text, caps.checksum_kind)
    console.print(f"Catalog version: {header.declared_version or 'missing'} (tool {TOOL_VERSION})")

    table = Table(title=f"{catalog.count} images")
    table.add_column("#", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("File")
    table.add_column("Image Size", justify="right")
    table.add_column("Problems", style="red")

    for record in catalog.records:
        size = f"{record.file_size:,}" if record.file_size is not None else "-"
        table.add_row(str(record.index), record.name, record.file, size, ", ".join(record.problems))

    console.print(table)
    if not catalog.valid:
        print_error("The config file isn't valid.")
        raise typer.Exit(1)


@app.command("reset-selection")
def reset_selection(ctx: typer.Context) -> None:
    """Forget the saved image choice so the next run asks again."""
    settings: Settings = ctx.obj
    try:
        StateStore(settings.state_dir).clear_has_run()
    except RecoveryError as e:
        fail(e)
    print_success("Saved image choice cleared")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
