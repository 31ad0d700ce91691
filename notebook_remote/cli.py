"""
CLI interface for notebook-remote with Rich output.
"""

import logging
import sys
from contextlib import closing
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm
from rich.status import Status
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from notebook_remote.cell import CellType, CodeCell, HeadingCell
from notebook_remote.config import DiscardOutputs, Settings
from notebook_remote.errors import KernelNotReady
from notebook_remote.execution import ExecutionCoordinator
from notebook_remote.kernel import InProcessTransport, KernelSession
from notebook_remote.notebook import Notebook
from notebook_remote.persistence import HttpDocumentStore, PersistenceManager
from notebook_remote.utils import format_output, format_rich_output, get_cell_status, get_cell_type_icon, truncate_text

console = Console()


def _make_store(settings: Settings) -> HttpDocumentStore:
    return HttpDocumentStore(timeout=settings.http_timeout)


def _settings(ctx: click.Context, server: Optional[str]) -> Settings:
    settings: Settings = ctx.obj["settings"]
    if server:
        settings = settings.model_copy(update={"server_url": server})
    return settings


def display_cells(notebook: Notebook):
    """Display all cells of a notebook with their outputs."""
    console.print(Panel(
        f"[bold white]{notebook.name}[/bold white]  [dim]{notebook.server}[/dim]"
        + ("  [yellow]*modified[/yellow]" if notebook.dirty else ""),
        title="[bold blue]notebook-remote[/bold blue]",
        border_style="blue",
        padding=(0, 1),
    ))

    if not notebook.cells:
        console.print("[dim]This notebook is empty.[/dim]")
        return

    for cell in notebook.cells:
        status_char, status_style = get_cell_status(cell)
        type_icon = get_cell_type_icon(cell)

        if isinstance(cell, CodeCell):
            title_label = f"In [{cell.execution_count or ' '}]"
            content = Syntax(cell.input, "python", theme="monokai", line_numbers=True, word_wrap=True) \
                if cell.input.strip() else Text("(empty)", style="dim italic")
        elif isinstance(cell, HeadingCell):
            title_label = "Heading"
            content = Markdown("#" * cell.level + " " + cell.input)
        elif cell.cell_type == CellType.MARKDOWN:
            title_label = "Markdown"
            content = Markdown(cell.input) if cell.input.strip() else Text("(empty)", style="dim italic")
        else:
            title_label = "Raw"
            content = Text(cell.input)

        console.print(Panel(
            content,
            title=f"[{status_style}]{type_icon}  {title_label}[/{status_style}]",
            title_align="left",
            subtitle=f"[{status_style}]{status_char}[/{status_style}]" if status_char != "--" else None,
            subtitle_align="right",
            border_style=status_style,
            padding=(0, 1),
        ))

        if isinstance(cell, CodeCell) and cell.outputs and cell.collapsed:
            summary = truncate_text(format_output(cell.outputs[0]).replace("\n", " "), 60)
            console.print(f"[dim]  {len(cell.outputs)} output(s) collapsed: {summary}[/dim]")
        elif isinstance(cell, CodeCell) and cell.outputs:
            for output in cell.outputs:
                if output.is_error:
                    console.print(Panel(
                        format_rich_output(output),
                        title="[red]Error[/red]",
                        title_align="left",
                        border_style="red",
                        padding=(0, 1),
                    ))
                else:
                    console.print(Panel(
                        format_rich_output(output),
                        title=f"[blue]Out [{cell.execution_count or ''}][/blue]",
                        title_align="left",
                        border_style="blue",
                        padding=(0, 1),
                    ))


def _open(manager: PersistenceManager, settings: Settings, notebook_id: str,
          with_kernel: bool = False) -> Notebook:
    errors = []
    factory = None
    if with_kernel:
        def factory(nb: Notebook) -> KernelSession:
            return KernelSession(InProcessTransport(), bus=nb.bus, settings=settings)

    notebook = manager.open(
        settings.server_url,
        notebook_id,
        kernel_factory=factory,
        on_failure=lambda nb, error: errors.append(error),
    )
    if errors:
        console.print(f"[red]Could not open {notebook_id}: {errors[0]}[/red]")
        sys.exit(1)
    return notebook


def _save(manager: PersistenceManager, notebook: Notebook) -> bool:
    outcome = {}
    notebook.bus.on("saved", lambda _ctx, payload: outcome.setdefault("saved", payload))
    notebook.bus.on("save_failed", lambda _ctx, payload: outcome.setdefault("failed", payload))
    manager.save(notebook)
    if "failed" in outcome:
        console.print(f"[red]Save failed: {outcome['failed']['error']}[/red]")
        return False
    console.print("[dim]Saved[/dim]")
    return True


def _close(notebook: Notebook, settings: Settings, interactive: bool = False):
    confirm = None
    if settings.confirm_kill and interactive:
        def confirm(nb: Notebook) -> bool:
            return Confirm.ask(f"Kill the kernel of {nb.title}?")
    notebook.close(confirm=confirm)


@click.group()
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def main(ctx: click.Context, log_level: str):
    """notebook-remote: run and persist notebooks stored on a remote server."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj.setdefault("settings", Settings.from_env())


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8888, show_default=True, type=int)
@click.option("--notebook-dir", type=click.Path(file_okay=False), default=None,
              help="Directory of notebook files (in memory if omitted)")
@click.option("--save-status", default=204, show_default=True, type=int,
              help="Status code answered to a successful save")
def serve(host: str, port: int, notebook_dir: Optional[str], save_status: int):
    """Run a development document store."""
    from notebook_remote.server import launch_server

    console.print(f"[green]Serving notebooks on http://{host}:{port}[/green]")
    launch_server(host=host, port=port,
                  notebook_dir=Path(notebook_dir) if notebook_dir else None,
                  save_status=save_status)


@main.command()
@click.argument("notebook_id")
@click.option("--server", "-s", default=None, help="Document store URL")
@click.option("--name", "-n", default=None, help="Notebook name")
@click.pass_context
def new(ctx: click.Context, notebook_id: str, server: Optional[str], name: Optional[str]):
    """Create a new notebook on the server."""
    settings = _settings(ctx, server)

    nb = Notebook(server=settings.server_url, notebook_id=notebook_id,
                  metadata={"name": name or notebook_id})
    nb.add_cell(CellType.HEADING, input=nb.name)
    nb.add_cell(CellType.CODE, input="# Start writing Python code here.\n")
    nb.add_cell(CellType.MARKDOWN, input="## Notes\n\nAdd your notes here.")

    with closing(_make_store(settings)) as store:
        if not _save(PersistenceManager(store, settings), nb):
            sys.exit(1)
    console.print(Panel(
        f"[green]Created:[/green] {notebook_id}\n"
        f"[dim]Name:[/dim] {nb.name}\n"
        f"[dim]Cells:[/dim] {len(nb)}",
        title="[bold blue]notebook-remote[/bold blue]",
        border_style="green",
    ))


@main.command()
@click.argument("notebook_id")
@click.option("--server", "-s", default=None, help="Document store URL")
@click.pass_context
def show(ctx: click.Context, notebook_id: str, server: Optional[str]):
    """Display a notebook."""
    settings = _settings(ctx, server)
    with closing(_make_store(settings)) as store:
        nb = _open(PersistenceManager(store, settings), settings, notebook_id)
    display_cells(nb)
    _close(nb, settings)


@main.command()
@click.argument("notebook_id")
@click.option("--server", "-s", default=None, help="Document store URL")
@click.option("--no-save", is_flag=True, help="Do not save outputs back to the server")
@click.option("--strip-outputs", is_flag=True, help="Save without outputs")
@click.pass_context
def run(ctx: click.Context, notebook_id: str, server: Optional[str], no_save: bool, strip_outputs: bool):
    """Run every code cell of a notebook and save the results."""
    settings = _settings(ctx, server)
    if strip_outputs:
        settings = settings.model_copy(update={"discard_outputs": DiscardOutputs.ALWAYS})

    with closing(_make_store(settings)) as store:
        manager = PersistenceManager(store, settings)
        nb = _open(manager, settings, notebook_id, with_kernel=True)

        coordinator = ExecutionCoordinator(nb)
        code_cells = [c for c in nb.code_cells() if c.input.strip()]
        if not code_cells:
            console.print("[yellow]No code cells to execute[/yellow]")
            _close(nb, settings)
            return

        try:
            with Status("Executing...", console=console, spinner="dots"):
                for cell in code_cells:
                    coordinator.execute(cell)
        except KernelNotReady as e:
            console.print(f"[red]Could not run {notebook_id}: {e}[/red]")
            _close(nb, settings)
            sys.exit(1)

        display_cells(nb)
        errors = sum(1 for c in code_cells if c.has_error)
        if errors:
            console.print(f"[yellow]Executed {len(code_cells)} cells, {errors} error(s)[/yellow]")
        else:
            console.print(f"[green]All {len(code_cells)} cells executed successfully[/green]")

        ok = True
        if not no_save:
            ok = _save(manager, nb)
    _close(nb, settings)
    if not ok:
        sys.exit(1)


@main.command(name="list")
@click.option("--server", "-s", default=None, help="Document store URL")
@click.pass_context
def list_notebooks(ctx: click.Context, server: Optional[str]):
    """List notebooks on the server."""
    settings = _settings(ctx, server)
    url = f"{settings.server_url.rstrip('/')}/api/notebooks"
    result = {}
    with closing(_make_store(settings)) as store:
        store.fetch(url, on_success=lambda doc: result.update(doc),
                    on_failure=lambda error: result.update(error=error))
    if "error" in result:
        console.print(f"[red]{result['error']}[/red]")
        sys.exit(1)

    notebooks = result.get("notebooks", [])
    if not notebooks:
        console.print("[yellow]No notebooks found[/yellow]")
        return

    table = Table(title="Notebooks", border_style="blue", show_lines=True)
    table.add_column("Id", style="bold cyan")
    table.add_column("Name", style="white")
    table.add_column("Cells", justify="right", style="green")
    for item in notebooks:
        table.add_row(item.get("id", ""), truncate_text(item.get("name", ""), 40), str(item.get("cell_count", 0)))
    console.print(table)


if __name__ == "__main__":
    main()
