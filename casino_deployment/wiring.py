import typing
from typing import Any, Callable, List, NamedTuple

from casino_deployment.chain import Call, ChainClient, Query
from casino_deployment.constants import DEFAULT_FINALITY_TIMEOUT
from casino_deployment.exceptions import (
    ConfigError,
    TransactionReverted,
    WiringVerificationFailed,
)
from casino_deployment.manifest import Manifest, ManifestStore, WiringState, _now
from casino_deployment.params import DeploymentConfig, ResolutionContext, _resolve_param


class Condition(NamedTuple):
    """A read of contract state plus the predicate it must satisfy."""

    query: Query
    predicate: Callable[[Any], bool]
    description: str

    def holds(self, client: ChainClient) -> bool:
        return bool(self.predicate(client.read(self.query)))


class WiringStep(NamedTuple):
    """An idempotent post-deployment configuration call."""

    id: str
    precondition: Condition
    action: Call
    postcondition: Condition


# Predicates


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()  # addresses and hex strings
    return a == b


def equals(expected: Any) -> Callable[[Any], bool]:
    return lambda value: _same(value, expected)


def at_least(minimum: int) -> Callable[[Any], bool]:
    return lambda value: int(value) >= int(minimum)


def min_length(minimum: int) -> Callable[[Any], bool]:
    return lambda value: len(value) >= int(minimum)


def truthy(value: Any) -> bool:
    return bool(value)


def contains(item: Any) -> Callable[[Any], bool]:
    return lambda values: any(_same(v, item) for v in values)


# Steps


def _idempotent_step(step_id: str, action: Call, check: Condition) -> WiringStep:
    return WiringStep(id=step_id, precondition=check, action=action, postcondition=check)


def grant_role_step(
    step_id: str, contract_type: str, address: str, role: str, account: str
) -> WiringStep:
    check = Condition(
        query=Query(address, contract_type, "hasRole", (role, account)),
        predicate=truthy,
        description=f"{account} has role {role} on {contract_type}",
    )
    action = Call(address, contract_type, "grantRole", (role, account))
    return _idempotent_step(step_id, action, check)


def set_address_step(
    step_id: str, contract_type: str, address: str, setter: str, getter: str, value: str
) -> WiringStep:
    check = Condition(
        query=Query(address, contract_type, getter),
        predicate=equals(value),
        description=f"{contract_type}.{getter}() == {value}",
    )
    action = Call(address, contract_type, setter, (value,))
    return _idempotent_step(step_id, action, check)


def fund_step(
    step_id: str, token_type: str, token_address: str, recipient: str, amount: int
) -> WiringStep:
    check = Condition(
        query=Query(token_address, token_type, "balanceOf", (recipient,)),
        predicate=at_least(amount),
        description=f"{token_type} balance of {recipient} >= {amount}",
    )
    action = Call(token_address, token_type, "transfer", (recipient, amount))
    return _idempotent_step(step_id, action, check)


def subscription_consumers(subscription: typing.Sequence[Any]) -> typing.Sequence[str]:
    """
    Consumer list out of a getSubscription() result; it is the last field for
    both the v2 and v2.5 coordinator layouts.
    """
    return subscription[-1]


def add_consumer_step(
    step_id: str,
    coordinator_type: str,
    coordinator_address: str,
    subscription_id: int,
    consumer: str,
) -> WiringStep:
    is_consumer = contains(consumer)
    check = Condition(
        query=Query(coordinator_address, coordinator_type, "getSubscription", (subscription_id,)),
        predicate=lambda subscription: is_consumer(subscription_consumers(subscription)),
        description=f"{consumer} is a consumer of subscription {subscription_id}",
    )
    action = Call(coordinator_address, coordinator_type, "addConsumer", (subscription_id, consumer))
    return _idempotent_step(step_id, action, check)


# Executor


class WiringExecutor:
    """
    Applies wiring steps strictly in declared order.

    A step whose precondition already holds submits nothing and is still
    reported as applied. Otherwise its action is submitted, awaited, and the
    postcondition verified before the next step starts.
    """

    def __init__(
        self,
        client: ChainClient,
        store: ManifestStore,
        finality_timeout: float = DEFAULT_FINALITY_TIMEOUT,
    ):
        self.client = client
        self.store = store
        self.finality_timeout = finality_timeout

    def apply(self, manifest: Manifest, steps: typing.Sequence[WiringStep]) -> Manifest:
        for step in steps:
            manifest = self.apply_step(manifest, step)
        return manifest

    def apply_step(self, manifest: Manifest, step: WiringStep) -> Manifest:
        if step.precondition.holds(self.client):
            print(f"(i) {step.id} already configured ({step.precondition.description}).")
            if manifest.is_applied(step.id):
                return manifest
            manifest = manifest.with_wiring(step.id, WiringState(applied=True, applied_at=_now()))
            self.store.save(manifest)
            return manifest

        print(f"\nWiring {step.id}: {step.action}")
        try:
            handle = self.client.submit(step.action)
        except TransactionReverted as e:
            raise TransactionReverted(step.id, e.cause) from e

        receipt = self.client.wait_for_finality(handle, self.finality_timeout)
        if not receipt.succeeded:
            raise TransactionReverted(
                step.id, receipt.error or f"transaction {receipt.tx_hash} reverted"
            )

        if not step.postcondition.holds(self.client):
            raise WiringVerificationFailed(
                step.id,
                f"transaction {receipt.tx_hash} confirmed but "
                f"'{step.postcondition.description}' does not hold",
            )

        state = WiringState(applied=True, applied_at=_now(), tx_hash=receipt.tx_hash)
        manifest = manifest.with_wiring(step.id, state)
        self.store.save(manifest)
        print(f"(i) {step.id} applied (tx {receipt.tx_hash})")
        return manifest


# Deployment file steps

STEP_KINDS = ("grant_role", "set_address", "call", "fund")
CHECK_PREDICATES = ("equals", "at_least", "min_length", "truthy")


class _StepBuilder:
    """Turns raw wiring/funding entries of a deployment file into steps."""

    def __init__(self, config: DeploymentConfig, context: ResolutionContext):
        self.config = config
        self.context = context

    def value(self, step_id: str, raw: Any) -> Any:
        return _resolve_param(self.config.process(step_id, raw), self.context)

    def contract(self, step_id: str, name: str):
        """Returns (contract_type, address) of a deployed unit."""
        address = self.context.manifest.address_of(name, requested_by=step_id)
        return self.context.manifest.get(name).contract_type, address

    def build(self, entry: Any) -> WiringStep:
        if not isinstance(entry, dict) or len(entry) != 1:
            raise ConfigError(str(entry), "wiring steps must be single-key mappings")
        kind = list(entry.keys())[0]
        data = entry[kind] or dict()
        if kind not in STEP_KINDS:
            raise ConfigError(kind, f"unknown step kind; expected one of {', '.join(STEP_KINDS)}")
        try:
            return getattr(self, f"_build_{kind}")(data)
        except KeyError as e:
            raise ConfigError(data.get("id", kind), f"missing field {e} in {kind} step")

    def _build_grant_role(self, data: dict) -> WiringStep:
        default_id = f"grant_role:{data['contract']}:{data['role']}:{data['account']}"
        step_id = data.get("id") or default_id
        contract_type, address = self.contract(step_id, data["contract"])
        role = self.value(step_id, f"$role:{data['role']}")
        account = self.value(step_id, data["account"])
        return grant_role_step(step_id, contract_type, address, role, account)

    def _build_set_address(self, data: dict) -> WiringStep:
        step_id = data.get("id") or f"set_address:{data['contract']}.{data['setter']}"
        contract_type, address = self.contract(step_id, data["contract"])
        value = self.value(step_id, data["value"])
        return set_address_step(
            step_id, contract_type, address, data["setter"], data["getter"], value
        )

    def _build_fund(self, data: dict) -> WiringStep:
        step_id = data.get("id") or f"fund:{data['token']}:{data['recipient']}"
        token_type, token_address = self.contract(step_id, data["token"])
        recipient = self.value(step_id, data["recipient"])
        amount = self.value(step_id, data["amount"])
        return fund_step(step_id, token_type, token_address, recipient, int(amount))

    def _build_call(self, data: dict) -> WiringStep:
        step_id = data.get("id") or f"call:{data['contract']}.{data['method']}"
        contract_type, address = self.contract(step_id, data["contract"])
        args = tuple(self.value(step_id, arg) for arg in data.get("args") or ())
        action = Call(address, contract_type, data["method"], args)
        check = self._check(step_id, contract_type, address, data["check"])
        return _idempotent_step(step_id, action, check)

    def _check(self, step_id: str, contract_type: str, address: str, data: dict) -> Condition:
        method = data["method"]
        args = tuple(self.value(step_id, arg) for arg in data.get("args") or ())
        predicates = [name for name in CHECK_PREDICATES if name in data]
        if len(predicates) != 1:
            raise ConfigError(
                step_id, f"check needs exactly one of {', '.join(CHECK_PREDICATES)}"
            )
        name = predicates[0]
        if name == "truthy":
            predicate = truthy
            description = f"{contract_type}.{method}() is set"
        else:
            expected = self.value(step_id, data[name])
            predicate = {"equals": equals, "at_least": at_least, "min_length": min_length}[name](
                expected
            )
            description = f"{contract_type}.{method}() {name} {expected}"
        return Condition(Query(address, contract_type, method, args), predicate, description)


def steps_from_config(
    config: DeploymentConfig,
    entries: typing.Sequence[Any],
    manifest: Manifest,
    deployer_address: str,
) -> List[WiringStep]:
    """Builds wiring steps from deployment file entries, resolving addresses from the manifest."""
    context = ResolutionContext(manifest=manifest, deployer_address=deployer_address)
    builder = _StepBuilder(config, context)
    steps = [builder.build(entry) for entry in entries]

    seen = set()
    for step in steps:
        if step.id in seen:
            raise ConfigError(step.id, "duplicate wiring step id")
        seen.add(step.id)
    return steps
