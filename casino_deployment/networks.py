import os

from ape import networks
from ape_etherscan.utils import API_KEY_ENV_KEY_MAP

from casino_deployment.constants import LOCAL_NETWORKS
from casino_deployment.manifest import Manifest


def is_local_network() -> bool:
    """Returns True when connected to a development chain."""
    return networks.provider.network.name in LOCAL_NETWORKS


def check_etherscan_plugin() -> None:
    """
    Checks that the ape-etherscan plugin is installed and that
    the appropriate API key environment variable is set.
    """
    if is_local_network():
        # unnecessary for local deployment
        return
    ecosystem_name = networks.provider.network.ecosystem.name
    explorer_envvar = API_KEY_ENV_KEY_MAP.get(ecosystem_name)
    api_key = os.environ.get(explorer_envvar) if explorer_envvar else None
    if not api_key:
        raise ValueError(f"{explorer_envvar or 'Explorer API key'} is not set.")


def check_plugins() -> None:
    print("Checking plugins...")
    check_etherscan_plugin()


def check_chain_id(expected_chain_id) -> None:
    """Refuses to run a deployment file against a different live chain."""
    if expected_chain_id is None or is_local_network():
        return
    chain_id = networks.provider.network.chain_id
    if int(expected_chain_id) != chain_id:
        raise ValueError(
            f"chain_id in deployment file ({expected_chain_id}) does not match "
            f"chain_id of current network ({chain_id})."
        )


def verify_contracts(manifest: Manifest) -> None:
    """Publishes the source of every deployed contract through the network's explorer."""
    explorer = networks.provider.network.explorer
    if explorer is None:
        raise ValueError(f"No explorer configured for {networks.provider.network.name}.")
    for name, address in manifest.contracts.items():
        print(f"(i) Verifying {name} at {address}...")
        explorer.publish_contract(address)
