import pytest
from eth_utils import encode_hex, keccak

from casino_deployment.exceptions import (
    ConfigError,
    TransactionReverted,
    UnresolvedDependency,
    WiringVerificationFailed,
)
from casino_deployment.params import DeploymentConfig
from casino_deployment.wiring import (
    WiringExecutor,
    add_consumer_step,
    fund_step,
    grant_role_step,
    set_address_step,
    steps_from_config,
)
from tests.conftest import DEPLOYER, NETWORK, deployed

GAME_ROLE = encode_hex(keccak(text="GAME_ROLE"))


@pytest.fixture()
def executor(chain, store):
    return WiringExecutor(chain, store, finality_timeout=1)


@pytest.fixture()
def casino(chain, manifest):
    return deployed(
        chain,
        manifest,
        "BOTToken",
        "CrapsGame",
        "CrapsBets",
        "MockVRF",
        contract_types={"MockVRF": "VRFCoordinatorV2_5Mock"},
    )


def _grant(manifest, step_id="grant_role:CrapsBets:GAME_ROLE:CrapsGame"):
    return grant_role_step(
        step_id,
        "CrapsBets",
        manifest.address_of("CrapsBets"),
        GAME_ROLE,
        manifest.address_of("CrapsGame"),
    )


def test_add_consumer_twice(chain, store, casino, executor):
    chain.subscriptions[1] = dict(balance=0, owner=DEPLOYER, consumers=list())
    game = casino.address_of("CrapsGame")
    step = add_consumer_step(
        "vrf:add_consumer:1:CrapsGame",
        "VRFCoordinatorV2_5Mock",
        casino.address_of("MockVRF"),
        1,
        game,
    )

    manifest = executor.apply(casino, [step])
    assert len(chain.calls("addConsumer")) == 1
    assert manifest.is_applied(step.id)
    assert manifest.wiring[step.id].tx_hash is not None

    manifest = executor.apply(manifest, [step])
    assert len(chain.calls("addConsumer")) == 1
    assert manifest.is_applied(step.id)
    assert chain.subscriptions[1]["consumers"] == [game]


def test_already_configured_submits_nothing(chain, store, casino, executor):
    step = _grant(casino)
    chain.set(step.action.address, "hasRole", step.action.args, True)

    manifest = executor.apply_step(casino, step)
    assert chain.submitted == []
    assert manifest.is_applied(step.id)
    assert manifest.wiring[step.id].tx_hash is None
    assert store.load(NETWORK).is_applied(step.id)


def test_postcondition_failure(chain, casino, executor):
    chain.no_effect.add("grantRole")
    with pytest.raises(WiringVerificationFailed) as error:
        executor.apply_step(casino, _grant(casino))
    assert error.value.name == "grant_role:CrapsBets:GAME_ROLE:CrapsGame"


def test_revert_halts_remaining_steps(chain, store, casino, executor):
    game = casino.address_of("CrapsGame")
    steps = [
        _grant(casino),
        set_address_step(
            "set_address:CrapsBets.setGame",
            "CrapsBets",
            casino.address_of("CrapsBets"),
            "setGame",
            "game",
            game,
        ),
        fund_step("fund:BOTToken:CrapsGame", "BOTToken", casino.address_of("BOTToken"), game, 5),
    ]
    chain.revert.add("setGame")
    with pytest.raises(TransactionReverted) as error:
        executor.apply(casino, steps)

    assert error.value.name == "set_address:CrapsBets.setGame"
    assert [call.method for call in chain.submitted] == ["grantRole", "setGame"]
    saved = store.load(NETWORK)
    assert saved.is_applied(steps[0].id)
    assert not saved.is_applied(steps[1].id)


def test_rejected_step(chain, casino, executor):
    chain.reject.add("grantRole")
    with pytest.raises(TransactionReverted) as error:
        executor.apply_step(casino, _grant(casino))
    assert error.value.name == "grant_role:CrapsBets:GAME_ROLE:CrapsGame"


def test_fund_step(chain, casino, executor):
    token = casino.address_of("BOTToken")
    game = casino.address_of("CrapsGame")
    step = fund_step("fund:BOTToken:CrapsGame", "BOTToken", token, game, 10**18)

    executor.apply(casino, [step, step])
    assert len(chain.calls("transfer")) == 1
    assert chain.read_balance(token, game) == 10**18


def _config(wiring):
    return DeploymentConfig(
        {
            "deployment": {"name": "test", "network": NETWORK},
            "constants": {"AMOUNT": "10 ether"},
            "contracts": ["BOTToken", "CrapsGame", "CrapsBets", "MockVRF"],
            "wiring": wiring,
        }
    )


def test_steps_from_config(chain, casino, executor):
    wiring = [
        {"grant_role": {"contract": "CrapsBets", "role": "GAME_ROLE", "account": "$CrapsGame"}},
        {
            "set_address": {
                "contract": "CrapsGame",
                "setter": "setBets",
                "getter": "bets",
                "value": "$CrapsBets",
            }
        },
        {
            "call": {
                "id": "bets:setContracts",
                "contract": "CrapsBets",
                "method": "setContracts",
                "args": ["$CrapsGame"],
                "check": {"method": "gameContract", "equals": "$CrapsGame"},
            }
        },
        {"fund": {"token": "BOTToken", "recipient": "$CrapsGame", "amount": "$AMOUNT"}},
    ]
    config = _config(wiring)
    steps = steps_from_config(config, config.wiring, casino, deployer_address=DEPLOYER)

    game = casino.address_of("CrapsGame")
    bets = casino.address_of("CrapsBets")
    assert [step.id for step in steps] == [
        "grant_role:CrapsBets:GAME_ROLE:$CrapsGame",
        "set_address:CrapsGame.setBets",
        "bets:setContracts",
        "fund:BOTToken:$CrapsGame",
    ]
    assert steps[0].action.args == (GAME_ROLE, game)
    assert steps[1].action.args == (bets,)
    assert steps[3].action.args == (game, 10 * 10**18)

    chain.effects["setBets"] = lambda chain, call: chain.set(call.address, "bets", value=bets)
    chain.effects["setContracts"] = lambda chain, call: chain.set(
        call.address, "gameContract", value=call.args[0].lower()
    )
    manifest = executor.apply(casino, steps)
    assert all(manifest.is_applied(step.id) for step in steps)

    steps = steps_from_config(config, config.wiring, manifest, deployer_address=DEPLOYER)
    submitted = len(chain.submitted)
    executor.apply(manifest, steps)
    assert len(chain.submitted) == submitted


@pytest.mark.parametrize(
    "entry",
    [
        {"transfer": {"token": "BOTToken"}},
        {"grant_role": {"contract": "CrapsBets", "role": "GAME_ROLE"}},
        {"call": {"contract": "CrapsBets", "method": "pause", "check": {"method": "paused"}}},
        {"grant_role": {}, "fund": {}},
        "grant_role",
    ],
)
def test_malformed_steps(casino, entry):
    config = _config([entry])
    with pytest.raises(ConfigError):
        steps_from_config(config, config.wiring, casino, deployer_address=DEPLOYER)


def test_duplicate_step_ids(casino):
    entry = {"grant_role": {"contract": "CrapsBets", "role": "GAME_ROLE", "account": "$CrapsGame"}}
    config = _config([entry, entry])
    with pytest.raises(ConfigError, match="duplicate"):
        steps_from_config(config, config.wiring, casino, deployer_address=DEPLOYER)


def test_step_on_undeployed_contract(chain, manifest):
    manifest = deployed(chain, manifest, "CrapsGame")
    entry = {"grant_role": {"contract": "CrapsBets", "role": "GAME_ROLE", "account": "$CrapsGame"}}
    config = _config([entry])
    with pytest.raises(UnresolvedDependency):
        steps_from_config(config, config.wiring, manifest, deployer_address=DEPLOYER)
