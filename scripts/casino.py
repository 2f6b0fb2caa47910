#!/usr/bin/python3
import functools
import os

import click
from ape.cli import ConnectedProviderCommand, account_option, network_option
from dotenv import load_dotenv

from casino_deployment.ape_client import ApeChainClient
from casino_deployment.constants import (
    DEFAULT_EXPLORER_API_URL,
    EXPLORER_API_KEY_ENVVAR,
    EXPLORER_API_URL_ENVVAR,
)
from casino_deployment.exceptions import DeploymentError
from casino_deployment.manifest import Manifest, ManifestStore
from casino_deployment.networks import check_chain_id, check_plugins, verify_contracts
from casino_deployment.options import (
    autosign_option,
    config_option,
    synthetic_option,
    timeout_option,
)
from casino_deployment.params import DeploymentConfig
from casino_deployment.verify import ExplorerVerifier, VerificationStatus, verify_manifest
from casino_deployment.workflow import FUND, PHASES, WIRE, Workflow


def _halt_on_failure(func):
    """Reports a failed step with its name and exits non-zero."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DeploymentError as e:
            raise click.ClickException(f"{e.__class__.__name__} at {e}")

    return wrapper


def _workflow(
    account,
    config_filepath,
    autosign=False,
    timeout=None,
    discard_pending=False,
    synthetic=None,
) -> Workflow:
    check_plugins()
    config = DeploymentConfig.from_yaml(config_filepath)
    check_chain_id(config.chain_id)
    randomness = config.randomness or dict()
    mock_randomness = randomness.get("synthetic", False) if synthetic is None else synthetic
    client = ApeChainClient(account, autosign=autosign, mock_randomness=mock_randomness)
    kwargs = dict(discard_pending=discard_pending, allow_synthetic=synthetic)
    if timeout:
        kwargs["finality_timeout"] = timeout
    click.echo(f"Account: {client.account_address}")
    click.echo(f"Config: {config_filepath}")
    click.echo(f"Manifest: {config.manifest_filepath}")
    return Workflow(config, client, **kwargs)


def _load_manifest(config: DeploymentConfig) -> Manifest:
    store = ManifestStore(config.manifest_filepath)
    return store.load(config.network, chain_id=config.chain_id)


def _summary(manifest: Manifest) -> None:
    click.echo(f"\nNetwork: {manifest.network} (updated {manifest.timestamp})")
    for name, record in manifest.records.items():
        click.echo(f"  {name:<24} {record.status.value:<9} {record.address or record.tx_hash}")
    applied = [step_id for step_id, state in manifest.wiring.items() if state.applied]
    click.echo(f"  wiring steps applied: {len(applied)}")
    if manifest.vrf_config:
        vrf = manifest.vrf_config
        click.echo(f"  randomness: subscription {vrf.subscription_id} on {vrf.coordinator}")
        click.echo(f"  consumers: {', '.join(vrf.consumers) or '-'}")
        for request in vrf.requests:
            click.echo(
                f"  request {request['requestId']}: {request['status']} {request['result'] or ''}"
            )


@click.group()
def cli():
    """Casino deployment workflow"""
    load_dotenv(override=True)


@cli.command(cls=ConnectedProviderCommand)
@account_option()
@network_option(required=True)
@config_option
@autosign_option
@timeout_option
@click.option("--only", multiple=True, help="Deploy only the named units.")
@click.option(
    "--discard-pending",
    is_flag=True,
    default=False,
    help="Redeploy units whose previous deployment transaction is still unresolved.",
)
@_halt_on_failure
def deploy(account, network, config_filepath, autosign, timeout, only, discard_pending):
    """Deploy every unit in dependency order."""
    workflow = _workflow(
        account, config_filepath, autosign, timeout, discard_pending=discard_pending
    )
    manifest = workflow.deploy(workflow.load_manifest(), only=only or None)
    _summary(manifest)


@cli.command(cls=ConnectedProviderCommand)
@account_option()
@network_option(required=True)
@config_option
@autosign_option
@timeout_option
@_halt_on_failure
def wire(account, network, config_filepath, autosign, timeout):
    """Grant roles and register cross-contract addresses."""
    manifest = _workflow(account, config_filepath, autosign, timeout).run([WIRE])
    _summary(manifest)


@cli.command(cls=ConnectedProviderCommand)
@account_option()
@network_option(required=True)
@config_option
@autosign_option
@timeout_option
@_halt_on_failure
def fund(account, network, config_filepath, autosign, timeout):
    """Transfer the configured token balances."""
    manifest = _workflow(account, config_filepath, autosign, timeout).run([FUND])
    _summary(manifest)


@cli.command(cls=ConnectedProviderCommand, name="setup-randomness")
@account_option()
@network_option(required=True)
@config_option
@autosign_option
@timeout_option
@synthetic_option
@click.option(
    "--skip-request",
    is_flag=True,
    default=False,
    help="Only set up the subscription and its consumers.",
)
@_halt_on_failure
def setup_randomness(account, network, config_filepath, autosign, timeout, synthetic, skip_request):
    """Create and fund the subscription, register consumers and test a request."""
    workflow = _workflow(account, config_filepath, autosign, timeout, synthetic=synthetic)
    manifest = workflow.setup_randomness(workflow.load_manifest(), request=not skip_request)
    _summary(manifest)


@cli.command(cls=ConnectedProviderCommand)
@account_option()
@network_option(required=True)
@config_option
@autosign_option
@timeout_option
@synthetic_option
@click.option(
    "--phase",
    "-p",
    "phases",
    multiple=True,
    type=click.Choice(PHASES),
    help="Phases to run; all of them by default.",
)
@_halt_on_failure
def run(account, network, config_filepath, autosign, timeout, synthetic, phases):
    """Run the whole workflow (or the selected phases) in order."""
    workflow = _workflow(account, config_filepath, autosign, timeout, synthetic=synthetic)
    selected = [phase for phase in PHASES if phase in phases] if phases else PHASES
    manifest = workflow.run(selected)
    _summary(manifest)


@cli.command(cls=ConnectedProviderCommand)
@network_option(required=True)
@config_option
@click.option(
    "--sources-dir",
    type=click.Path(file_okay=False, exists=True),
    help="Standard JSON input per contract type; publishes through the explorer API directly.",
)
@_halt_on_failure
def verify(network, config_filepath, sources_dir):
    """Publish the sources of every deployed contract."""
    config = DeploymentConfig.from_yaml(config_filepath)
    manifest = _load_manifest(config)
    if not sources_dir:
        check_plugins()
        verify_contracts(manifest)
        return

    verifier = ExplorerVerifier(
        api_url=os.environ.get(EXPLORER_API_URL_ENVVAR, DEFAULT_EXPLORER_API_URL),
        api_key=os.environ.get(EXPLORER_API_KEY_ENVVAR),
        chain_id=config.chain_id,
    )
    results = verify_manifest(manifest, verifier, sources_dir)
    failed = [name for name, status in results.items() if status != VerificationStatus.SUCCESS]
    if failed:
        raise click.ClickException(f"Verification did not succeed for {', '.join(failed)}")


@cli.command()
@config_option
@_halt_on_failure
def status(config_filepath):
    """Show what the manifest records for the deployment file's network."""
    config = DeploymentConfig.from_yaml(config_filepath)
    _summary(_load_manifest(config))
