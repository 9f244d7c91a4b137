"""
PackSync command line interface
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeRemainingColumn
from rich.table import Table
from rich.theme import Theme

from .config import ConfigStore, EngineConfig
from .core.download import ContentDownloader
from .core.errors import ModpackError
from .core.remote import AgentCommandClient, AgentFileSystem, LocalFileSystem, RemoteFileSystem
from .managers.modpack import PackSource
from .managers.modpack.fetch_pool import ProgressCallback
from .managers.modpack.modpack_manager import ModpackManager, UpdateStatus
from .utils.logger import configure_logging

# Custom theme for the CLI
custom_theme = Theme({
    "info": "dim cyan",
    "warning": "magenta",
    "error": "bold red",
    "success": "bold green",
})

console = Console(theme=custom_theme)

app = typer.Typer(help="Install and update Modrinth modpacks on Minecraft servers")
config_app = typer.Typer(help="Show or change the engine configuration")
app.add_typer(config_app, name="config")


def print_header(text: str):
    console.print(Panel(f"[bold white]{text}[/bold white]", style="blue", expand=False))


def print_success(text: str):
    console.print(f"[success]✔ {text}[/success]")


def print_error(text: str):
    console.print(f"[error]✖ {text}[/error]")


def print_warning(text: str):
    console.print(f"[warning]⚠ {text}[/warning]")


def console_log(message: str):
    """log_callback that mirrors engine messages on the console"""
    text = message.rstrip("\n")
    if text.startswith("[OK] "):
        console.print(text[5:], style="success", markup=False, highlight=False)
    elif text.startswith("⚠ "):
        console.print(text, style="warning", markup=False, highlight=False)
    elif text.startswith("✗ "):
        console.print(text, style="error", markup=False, highlight=False)
    elif text.startswith("Step "):
        console.print(text, style="bold", markup=False, highlight=False)
    else:
        console.print(text, markup=False, highlight=False)


# ==================== WIRING ====================

@app.callback()
def main(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(
        None, "--root", help="Local servers directory (default: the configured panel agent)"),
    config_dir: Optional[Path] = typer.Option(
        None, "--config-dir", help="Directory holding config.json (default: ~/.packsync)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    configure_logging(verbose)
    ctx.obj = {"root": root, "store": ConfigStore(config_dir)}


def _store(ctx: typer.Context) -> ConfigStore:
    return ctx.obj["store"]


def _filesystem(ctx: typer.Context, config: EngineConfig, instance: str) -> RemoteFileSystem:
    root = ctx.obj.get("root")
    if root is not None:
        downloader = ContentDownloader(config.user_agent, timeout=config.timeouts.download)
        return LocalFileSystem(str(root), downloader)

    if config.panel_url and config.daemon_id:
        client = AgentCommandClient(config.panel_url, config.daemon_id, config.panel_token, config.user_agent)
        return AgentFileSystem(client, config.timeouts, instance_id=instance)

    print_error("No target filesystem: pass --root or set panel_url and daemon_id")
    raise typer.Exit(code=1)


def _manager(ctx: typer.Context, instance: str) -> ModpackManager:
    config = _store(ctx).load()
    return ModpackManager(config, _filesystem(ctx, config, instance), log_callback=console_log)


@contextmanager
def _progress(label: str) -> Iterator[ProgressCallback]:
    progress = Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=None, complete_style="blue"),
        MofNCompleteColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=True,
    )
    with progress:
        task = progress.add_task(label, total=None)

        def on_progress(done: int, total: int, path: str):
            progress.update(task, total=total, completed=done)

        yield on_progress


def _fail(error: ModpackError):
    print_error(str(error))
    raise typer.Exit(code=1)


# ==================== COMMANDS ====================

@app.command("install")
def install(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance directory, relative to the servers root"),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Modrinth project id or slug"),
    version: Optional[str] = typer.Option(None, "--version", help="Modrinth version id (default: latest)"),
    url: Optional[str] = typer.Option(None, "--url", help="Direct .mrpack download URL"),
    archive: Optional[str] = typer.Option(None, "--archive", help=".mrpack already inside the instance"),
):
    """
    Install a modpack into an instance
    """
    chosen = [bool(project or version), bool(url), bool(archive)]
    if sum(chosen) != 1:
        print_error("Choose exactly one source: --project/--version, --url or --archive")
        raise typer.Exit(code=1)

    if url:
        source = PackSource(kind="url", url=url)
    elif archive:
        source = PackSource(kind="upload", file_name=archive)
    else:
        source = PackSource(kind="modrinth", project_id=project, version_id=version)

    print_header(f"Installing modpack into {instance}")
    manager = _manager(ctx, instance)
    try:
        with _progress("Downloading files") as on_progress:
            result = manager.install_modpack(instance, source, on_progress=on_progress)
    except ModpackError as e:
        _fail(e)

    print_success(f"Installed {result.fetched} files ({result.record.loader.kind.value} "
                  f"{result.record.loader.version}, Minecraft {result.record.minecraft_version})")
    if result.bootstrap_path:
        print_warning(f"Loader needs a manual setup, see {result.bootstrap_path}")
    if result.cleanup_error:
        print_warning(f"Temporary files were not removed: {result.cleanup_error}")


@app.command("update")
def update(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance directory, relative to the servers root"),
    version: Optional[str] = typer.Option(None, "--version", help="Modrinth version id (default: latest)"),
    url: Optional[str] = typer.Option(None, "--url", help="Direct .mrpack download URL"),
):
    """
    Update the installed modpack, keeping worlds and configs
    """
    target = None
    if version:
        target = PackSource(kind="modrinth", version_id=version)
    elif url:
        target = PackSource(kind="url", url=url)

    print_header(f"Updating modpack on {instance}")
    manager = _manager(ctx, instance)
    try:
        with _progress("Downloading changed files") as on_progress:
            result = manager.update_modpack(instance, target=target, on_progress=on_progress)
    except ModpackError as e:
        _fail(e)

    if result.status == UpdateStatus.NO_CHANGES:
        print_success("Already up to date")
        return

    print_success(f"Updated to {result.record.source.version_id or 'new version'}: "
                  f"{result.fetched} downloaded, {len(result.deleted)} removed")
    if result.plan and result.plan.protected:
        print_warning(f"{len(result.plan.protected)} protected files left untouched")
    if result.bootstrap_path:
        print_warning(f"Loader needs a manual setup, see {result.bootstrap_path}")
    if result.cleanup_error:
        print_warning(f"Temporary files were not removed: {result.cleanup_error}")


@app.command("status")
def status(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance directory, relative to the servers root"),
):
    """
    Show the modpack installed on an instance
    """
    manager = _manager(ctx, instance)
    try:
        record = manager.get_installed_pack(instance)
    except ModpackError as e:
        _fail(e)

    if record is None:
        print_warning(f"No modpack installed on {instance}")
        raise typer.Exit(code=1)

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Source", record.source.kind)
    if record.source.project_id:
        table.add_row("Project", record.source.project_id)
    table.add_row("Version", record.source.version_id or "-")
    table.add_row("Minecraft", record.minecraft_version)
    table.add_row("Loader", f"{record.loader.kind.value} {record.loader.version}")
    table.add_row("Server jar", record.jar_path or "(manual setup)")
    table.add_row("Files", str(len(record.files)))
    table.add_row("Installed", record.installed_at)
    console.print(Panel(table, title=instance, border_style="blue", expand=False))


@app.command("plan")
def plan(
    ctx: typer.Context,
    instance: str = typer.Argument(..., help="Instance directory, relative to the servers root"),
    version: Optional[str] = typer.Option(None, "--version", help="Modrinth version id (default: latest)"),
):
    """
    Show what an update would change, without changing anything
    """
    target = PackSource(kind="modrinth", version_id=version) if version else None
    manager = _manager(ctx, instance)
    try:
        update_plan = manager.preview_update(instance, target=target)
    except ModpackError as e:
        _fail(e)

    if update_plan is None:
        print_success("Already up to date")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Action", style="cyan")
    table.add_column("Path", style="white")
    for decision in update_plan.decisions:
        if decision.action.value == "skip_unchanged":
            continue
        table.add_row(decision.action.value, decision.path)
    console.print(table)

    summary = update_plan.summary()
    console.print(
        f"[info]{summary['fetch']} to download, {summary['skip_unchanged']} unchanged, "
        f"{summary['skip_protected']} protected, {summary['delete_obsolete']} to remove[/info]")


# ==================== CONFIG ====================

@config_app.command("show")
def config_show(ctx: typer.Context):
    """
    Print the current configuration
    """
    config = _store(ctx).load()
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    for key, value in config.to_dict().items():
        if key == "timeouts":
            for name, seconds in value.items():
                table.add_row(f"timeouts.{name}", f"{seconds:g}s")
        elif key == "panel_token" and value:
            table.add_row(key, "********")
        else:
            table.add_row(key, str(value))
    console.print(table)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Config key (e.g. fetch_concurrency, timeouts.download)"),
    value: str = typer.Argument(..., help="New value"),
):
    """
    Change one configuration value
    """
    try:
        _store(ctx).set_value(key, value)
    except KeyError:
        print_error(f"Unknown config key: {key}")
        raise typer.Exit(code=1)
    except ValueError as e:
        print_error(f"Invalid value for {key}: {e}")
        raise typer.Exit(code=1)
    print_success(f"Updated {key}")


if __name__ == "__main__":
    app()
