from typing import List, Optional

from rich.console import Console
from rich.table import Table


def _execution_order(component) -> List[str]:
    if hasattr(component, "components"):
        return [c.name for c in component.components]
    fluxes = getattr(component, "fluxes", None) or getattr(component, "rfluxes", None) or []
    order = [f.name for f in fluxes]
    order += [d.name for d in getattr(component, "dfluxes", [])]
    return order


def summary_table(component) -> Table:
    table = Table(
        title=f"{type(component).__name__} Summary: [bold cyan]{component.name}[/bold cyan]",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Category", style="dim", width=20)
    table.add_column("Variables")
    table.add_row("Input Variables", ", ".join(component.input_names) or "None")
    table.add_row("State Variables", ", ".join(component.state_names) or "None")
    table.add_row("Parameter Variables", ", ".join(component.param_names) or "None")
    table.add_row("Output Variables", ", ".join(component.output_names) or "None")
    if component.nn_names:
        table.add_row("Neural Networks", ", ".join(component.nn_names))
    order = _execution_order(component)
    if order:
        table.add_row("[dim]Execution Order[/dim]", f"[dim]{' → '.join(order)}[/dim]")
    return table


def print_summary(component, console: Optional[Console] = None) -> Table:
    table = summary_table(component)
    (console or Console()).print(table)
    return table
