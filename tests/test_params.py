import random
from collections import OrderedDict
from pathlib import Path

import pytest
from eth_utils import encode_hex, keccak
from web3 import Web3

from casino_deployment.exceptions import ConfigError, DependencyCycle, UnresolvedDependency
from casino_deployment.params import (
    Constant,
    ContractName,
    DeploymentConfig,
    ResolutionContext,
    make_unit,
    topological_order,
)
from tests.conftest import DEPLOYER, deployed

CONSTRUCTOR_PARAMS_DIR = Path(__file__).parent.parent / "deployments" / "constructor_params"


def _config(**overrides):
    config = {
        "deployment": {"name": "test", "network": "local", "chain_id": 31337},
        "contracts": ["Token"],
    }
    config.update(overrides)
    return config


def test_variables_are_processed():
    unit = make_unit(
        "Vault",
        constructor_args=OrderedDict(
            token="$Token",
            owner="$deployer",
            fee="$FEE",
            role="$role:GAME_ROLE",
            amount="1.5 ether",
            plain=7,
        ),
        constants={"FEE": 250},
    )
    assert unit.contract_type == "Vault"
    assert unit.depends_on == ("Token",)
    assert isinstance(unit.constructor_args["token"], ContractName)
    assert unit.constructor_args["amount"] == Web3.to_wei(15, "ether") // 10
    assert unit.constructor_args["plain"] == 7


def test_resolve_against_manifest(chain, manifest):
    manifest = deployed(chain, manifest, "Token")
    unit = make_unit(
        "Vault",
        constructor_args=OrderedDict(
            token="$Token",
            owner="$deployer",
            fee="$FEE",
            admin="$role:DEFAULT_ADMIN_ROLE",
            game="$role:GAME_ROLE",
            tokens=["$Token", "$deployer"],
        ),
        constants={"FEE": 250},
    )
    resolved = unit.resolve(ResolutionContext(manifest=manifest, deployer_address=DEPLOYER))

    token = manifest.address_of("Token")
    assert list(resolved.values()) == [
        token,
        DEPLOYER,
        250,
        "0x" + "00" * 32,
        encode_hex(keccak(text="GAME_ROLE")),
        [token, DEPLOYER],
    ]


def test_resolve_undeployed_dependency(manifest):
    unit = make_unit("Treasury", constructor_args={"token": "$Token"})
    context = ResolutionContext(manifest=manifest, deployer_address=DEPLOYER)
    with pytest.raises(UnresolvedDependency) as error:
        unit.resolve(context)
    assert error.value.name == "Treasury"
    assert "Token" in error.value.cause


def test_missing_constant():
    contracts = [{"Treasury": {"constructor": {"fee": "$MISSING"}}}]
    with pytest.raises(ConfigError, match="MISSING") as error:
        DeploymentConfig(_config(constants={"FEE": 250}, contracts=contracts))
    assert error.value.name == "Treasury"


def test_upper_case_unit_reference():
    contracts = ["WETH", {"Vault": {"constructor": {"weth": "$WETH", "fee": "$FEE"}}}]
    config = DeploymentConfig(_config(constants={"FEE": 250}, contracts=contracts))
    vault = config.units[1]
    assert vault.depends_on == ("WETH",)
    assert isinstance(vault.constructor_args["weth"], ContractName)
    assert isinstance(vault.constructor_args["fee"], Constant)


def test_explicit_dependencies_are_kept():
    unit = make_unit(
        "Art", constructor_args={"pass": "$MintPass"}, depends_on=["Registry", "MintPass"]
    )
    assert unit.depends_on == ("Registry", "MintPass")


def _names(units):
    return [unit.name for unit in units]


def test_declared_order_is_kept_when_consistent():
    units = [
        make_unit("Token"),
        make_unit("Treasury", {"token": "$Token"}),
        make_unit("Vault", {"token": "$Token", "treasury": "$Treasury"}),
    ]
    assert _names(topological_order(units)) == ["Token", "Treasury", "Vault"]


def test_dependencies_come_first():
    units = [
        make_unit("Game", {"bets": "$Bets", "vrf": "$MockVRF"}),
        make_unit("MockVRF"),
        make_unit("Token"),
        make_unit("Bets", {"token": "$Token"}),
    ]
    assert _names(topological_order(units)) == ["MockVRF", "Token", "Bets", "Game"]


def test_external_dependencies_do_not_constrain_order():
    units = [make_unit("Game", {"vrf": "$Coordinator"}), make_unit("Bets")]
    assert _names(topological_order(units)) == ["Game", "Bets"]


def test_cycle_is_rejected():
    units = [
        make_unit("Token"),
        make_unit("Game", {"bets": "$Bets"}),
        make_unit("Bets", {"game": "$Game"}),
    ]
    with pytest.raises(DependencyCycle) as error:
        topological_order(units)
    assert error.value.name == "Game"
    assert "Bets" in error.value.cause


def test_duplicate_unit_names():
    with pytest.raises(ConfigError, match="duplicate"):
        topological_order([make_unit("Token"), make_unit("Token")])


@pytest.mark.parametrize("seed", range(20))
def test_order_respects_random_acyclic_graphs(seed):
    rng = random.Random(seed)
    names = [f"Unit{i}" for i in range(12)]
    # edges only point to earlier names, so the graph is acyclic
    dependencies = {
        name: rng.sample(names[:i], rng.randint(0, min(i, 3))) for i, name in enumerate(names)
    }
    declared = names[:]
    rng.shuffle(declared)
    units = [make_unit(name, depends_on=dependencies[name]) for name in declared]

    ordered = _names(topological_order(units))
    assert sorted(ordered) == sorted(names)
    for name in names:
        for dependency in dependencies[name]:
            assert ordered.index(dependency) < ordered.index(name)


def test_deployment_config():
    config = DeploymentConfig(
        _config(
            constants={"TEAM": "0x" + "11" * 20},
            contracts=[
                "Token",
                {"Treasury": {"constructor": {"token": "$Token", "team": "$TEAM"}}},
                {"Game": {"contract_type": "CrapsGameV2Plus", "depends_on": ["Treasury"]}},
            ],
        )
    )
    assert config.name == "test"
    assert config.network == "local"
    assert config.chain_id == 31337
    assert [unit.name for unit in config.units] == ["Token", "Treasury", "Game"]
    assert config.units[2].contract_type == "CrapsGameV2Plus"
    assert config.units[1].depends_on == ("Token",)
    assert config.wiring == []
    assert config.randomness is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"deployment": None},
        {"deployment": {"name": "test"}},
        {"contracts": []},
        {"contracts": [{"Token": None, "Treasury": None}]},
        {"contracts": [{"Token": {"constructor": ["$deployer"]}}]},
        {"wiring": {"grant_role": {}}},
    ],
)
def test_malformed_deployment_file(overrides):
    with pytest.raises(ConfigError):
        DeploymentConfig(_config(**overrides))


def test_cycle_in_deployment_file():
    contracts = [{"A": {"depends_on": ["B"]}}, {"B": {"constructor": {"a": "$A"}}}]
    with pytest.raises(DependencyCycle):
        DeploymentConfig(_config(contracts=contracts))


def test_manifest_filepath(tmp_path):
    config = DeploymentConfig(_config())
    assert config.manifest_filepath.name == "test.json"

    artifacts = {"dir": str(tmp_path), "filename": "casino.json"}
    config = DeploymentConfig(_config(artifacts=artifacts))
    assert config.manifest_filepath == tmp_path / "casino.json"


@pytest.mark.parametrize("filename", ["local.yml", "base-sepolia.yml"])
def test_bundled_deployment_files(filename):
    config = DeploymentConfig.from_yaml(CONSTRUCTOR_PARAMS_DIR / filename)
    ordered = [unit.name for unit in topological_order(config.units)]
    assert ordered.index("BOTToken") < ordered.index("Treasury") < ordered.index("StakingPool")
    assert ordered.index("VaultFactory") < ordered.index("BotManager")
    assert config.randomness["consumers"]
