from pathlib import Path

import click

from casino_deployment.constants import CONSTRUCTOR_PARAMS_DIR, DEFAULT_FINALITY_TIMEOUT
from casino_deployment.types import MinInt


def _deployment_file(ctx, param, value):
    """Accepts a path or the name of a bundled deployment file."""
    filepath = Path(value)
    if not filepath.exists() and not filepath.suffix:
        filepath = CONSTRUCTOR_PARAMS_DIR / f"{value}.yml"
    if not filepath.is_file():
        raise click.BadParameter(f"No deployment file found at {value}")
    return filepath


config_option = click.option(
    "--config",
    "-c",
    "config_filepath",
    help="Deployment file (or the name of one in deployments/constructor_params).",
    type=click.Path(dir_okay=False, path_type=Path),
    callback=_deployment_file,
    required=True,
)

autosign_option = click.option(
    "--autosign",
    help="Sign transactions without asking for confirmation.",
    is_flag=True,
    default=False,
)

timeout_option = click.option(
    "--timeout",
    "-t",
    help="Seconds to wait for each transaction to become final.",
    type=MinInt(1),
    default=DEFAULT_FINALITY_TIMEOUT,
    show_default=True,
)

synthetic_option = click.option(
    "--synthetic/--no-synthetic",
    help="Allow completing randomness requests through a mock coordinator (local networks only).",
    default=None,
)
