"""CLI entry point for repopanel.

Commands:
  run      ask the model panel a question about a repository
  models   show which model serves each panel role
  history  display past panel reports from the configured store
  stats    aggregate findings across report history
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from repopanel_cli.commands.history import history_cmd
from repopanel_cli.commands.models import models_cmd
from repopanel_cli.commands.run import run_cmd
from repopanel_cli.commands.stats import stats_cmd

console = Console()


def _build_store(config: dict):
    """Instantiate the configured store from .repopanel.yml settings.

    Store selection:
      store: sqlite → SQLiteStore (uses store_path or .repopanel.db)
      (default)     → NoOpStore  (no persistence)

    This factory lives in cli.py so neither repopanel_core nor
    repopanel_store know about the CLI config format.
    """
    from repopanel_store.noop import NoOpStore

    if config.get("store", "noop") == "sqlite":
        from repopanel_store.sqlite import SQLiteStore

        return SQLiteStore(db_path=config.get("store_path", ".repopanel.db"))

    return NoOpStore()


@click.group()
@click.version_option(
    version=importlib.metadata.version("repopanel"),
    prog_name="repopanel",
)
@click.option(
    "--config",
    "config_path",
    default=".repopanel.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="REPOPANEL_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Log panel stages to stderr.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Multi-model analysis panel for code repositories."""
    from repopanel_core.config import load_config

    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )

    ctx.ensure_object(dict)

    config = load_config(config_path)
    store = _build_store(config)
    ctx.obj["store"] = store
    ctx.obj["config"] = config
    ctx.call_on_close(store.close)


main.add_command(run_cmd)
main.add_command(models_cmd)
main.add_command(history_cmd)
main.add_command(stats_cmd)
