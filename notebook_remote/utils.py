"""
Utility functions for notebook-remote.
"""

import json

from rich.syntax import Syntax
from rich.text import Text

from notebook_remote.cell import Cell, CellType, CodeCell, ExecutionState, Output, OutputType


def _preferred_text(data: dict) -> str:
    # Prefer rich types over plain text
    if "text/html" in data:
        return data["text/html"]
    if "text/markdown" in data:
        return data["text/markdown"]
    if "application/json" in data:
        val = data["application/json"]
        return json.dumps(val, indent=2) if not isinstance(val, str) else val
    return data.get("text/plain", "")


def format_output(output: Output) -> str:
    """
    Format an output record for display (plain text).

    Args:
        output: Output of a code cell

    Returns:
        Formatted string for display
    """
    if output.output_type == OutputType.STREAM:
        return output.text or ""
    if output.output_type == OutputType.ERROR:
        return f"{output.ename}: {output.evalue}"
    return _preferred_text(output.data)


def format_rich_output(output: Output):
    """
    Format an output record as a Rich renderable.

    Args:
        output: Output of a code cell

    Returns:
        Rich renderable object for console display
    """
    if output.output_type == OutputType.STREAM:
        text = (output.text or "").rstrip("\n")
        if output.name == "stderr":
            return Text(text, style="yellow")
        return Text(text)

    if output.output_type == OutputType.ERROR:
        error_text = Text()
        error_text.append(f"{output.ename}", style="bold red")
        error_text.append(f": {output.evalue}", style="red")
        for tb_line in output.traceback:
            error_text.append(f"\n{tb_line.rstrip()}", style="dim red")
        return error_text

    data = output.data
    if output.output_type == OutputType.EXECUTE_RESULT and set(data) <= {"text/plain"}:
        return Syntax(data.get("text/plain", ""), "python", theme="monokai", line_numbers=False)
    if "application/json" in data and "text/html" not in data and "text/markdown" not in data:
        return Syntax(_preferred_text(data), "json", theme="monokai", line_numbers=False)
    return Text(_preferred_text(data), style="cyan")


def get_cell_type_icon(cell: Cell) -> str:
    """Get a short label for the cell type."""
    if cell.cell_type == CellType.CODE:
        return "py"
    if cell.cell_type == CellType.MARKDOWN:
        return "md"
    if cell.cell_type == CellType.RAW:
        return "raw"
    return f"h{cell.level}"


def get_cell_status(cell: Cell) -> tuple[str, str]:
    """
    Get status indicator and style for a cell.

    Returns:
        Tuple of (indicator_string, rich_style)
    """
    if not isinstance(cell, CodeCell):
        return ("--", "dim")
    if cell.state in (ExecutionState.QUEUED, ExecutionState.RUNNING):
        return ("..", "yellow")
    if cell.state == ExecutionState.ERRORED or cell.has_error:
        return ("err", "red")
    if cell.state == ExecutionState.COMPLETED or cell.execution_count is not None:
        return ("ok", "green")
    return ("--", "dim")


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to max_length, adding ellipsis if needed."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
