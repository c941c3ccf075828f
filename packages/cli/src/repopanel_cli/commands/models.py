"""models command: show how panel roles resolve with the current credentials."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from repopanel_core.errors import NoModelAvailable
from repopanel_core.models import MODES, ROLES
from repopanel_core.router import ModelRouter

console = Console()


@click.command("models")
@click.option("--mode", type=click.Choice(MODES), default=MODES[0], show_default=True, help="Mode to resolve for.")
@click.pass_context
def models_cmd(ctx, mode: str):
    """List the model registry and the model serving each panel role.

    A model is available when it is enabled, supports the mode and its
    api_key_env variable holds a real key.
    """
    config = ctx.obj["config"]
    router = ModelRouter.from_config(config)
    available = {m.id for m in router.available(mode)}

    registry = Table(title="Model Registry", show_header=True, header_style="bold cyan")
    registry.add_column("ID", style="bold")
    registry.add_column("Role")
    registry.add_column("Provider")
    registry.add_column("Key variable")
    registry.add_column("Available", justify="center")
    for entry in config["models"]:
        ok = entry["id"] in available
        registry.add_row(
            entry["id"],
            entry["role"],
            entry["provider"],
            entry.get("api_key_env") or "",
            "[green]yes[/green]" if ok else "[dim]no[/dim]",
        )
    console.print(registry)

    try:
        panel = router.resolve_panel(mode)
    except NoModelAvailable as e:
        console.print(f"[red]{e}[/red]")
        ctx.exit(1)

    roles = Table(title=f"Panel for {mode}", show_header=True, header_style="bold cyan")
    roles.add_column("Role", style="bold")
    roles.add_column("Model")
    roles.add_column("Fallback", justify="center")
    for role in ROLES:
        handle = panel[role]
        roles.add_row(role, handle.model_id, "[yellow]yes[/yellow]" if handle.fallback else "")
    console.print(roles)
