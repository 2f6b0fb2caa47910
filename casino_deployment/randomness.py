"""
Randomness request/fulfillment coordination.

A VRF request and its fulfillment are two separate transactions, usually sent
by two different parties: the operator requests, the oracle network fulfills.
The coordinator registers consumers with a subscription, issues a request,
waits for the consumer's state to reflect the callback and validates the
result. On chains with a mock coordinator it can complete its own request,
but only after genuine polling came up empty and only when explicitly allowed.
"""

import time
import typing
from enum import Enum
from typing import Any, NamedTuple, Optional, Tuple

from casino_deployment.chain import Call, ChainClient, Query, Receipt, TxHandle
from casino_deployment.constants import (
    DEFAULT_FINALITY_TIMEOUT,
    DEFAULT_POLL_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SYNTHESIZE_AFTER,
    DICE_PER_ROLL,
    DIE_MAX,
    DIE_MIN,
    MOCK_FIRST_ID,
    REQUEST_EVENT_ID_FIELDS,
    SUBSCRIPTION_CREATED_EVENT,
    SUBSCRIPTION_EVENT_ID_FIELDS,
)
from casino_deployment.exceptions import (
    DeploymentError,
    FinalityTimeout,
    FulfillmentTimeout,
    InvalidRandomness,
    TransactionReverted,
    UnresolvedDependency,
)
from casino_deployment.manifest import Manifest, ManifestStore, VrfConfig
from casino_deployment.wiring import (
    Condition,
    WiringExecutor,
    WiringStep,
    add_consumer_step,
    at_least,
)


class RequestStatus(Enum):
    REQUESTED = "requested"
    FULFILLED = "fulfilled"
    TIMED_OUT = "timed_out"


class ConsumerTarget(NamedTuple):
    """A contract that requests randomness and exposes the last result it received."""

    name: str
    address: str
    contract_type: str
    request_method: str = "requestDiceRoll"
    result_method: str = "getLastRoll"

    @property
    def result_query(self) -> Query:
        return Query(self.address, self.contract_type, self.result_method)

    @property
    def label(self) -> str:
        return f"{self.name}.{self.request_method}"


class RandomnessRequest(NamedTuple):
    subscription_id: int
    consumer_address: str
    request_id: Optional[int]
    tx_hash: str
    status: RequestStatus
    result: Optional[Tuple[int, ...]] = None
    sentinel: Any = None  # consumer result observed right before the request

    def to_json(self) -> typing.Dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "consumer": self.consumer_address,
            "requestId": self.request_id,
            "txHash": self.tx_hash,
            "status": self.status.value,
            "result": list(self.result) if self.result is not None else None,
        }


def _as_tuple(value: Any) -> Tuple[Any, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def validate_dice(label: str, value: Any) -> Tuple[int, ...]:
    """
    Checks a dice result read back from a consumer: every die in [1, 6]
    and, when the consumer reports one, a total that matches their sum.
    """
    fields = _as_tuple(value)
    if len(fields) < DICE_PER_ROLL:
        raise InvalidRandomness(label, f"expected {DICE_PER_ROLL} dice, got {value!r}")

    dice = tuple(int(v) for v in fields[:DICE_PER_ROLL])
    for die in dice:
        if not DIE_MIN <= die <= DIE_MAX:
            raise InvalidRandomness(label, f"die value {die} outside [{DIE_MIN}, {DIE_MAX}]")

    total = sum(dice)
    if len(fields) > DICE_PER_ROLL and int(fields[DICE_PER_ROLL]) != total:
        raise InvalidRandomness(
            label, f"reported total {fields[DICE_PER_ROLL]} does not match dice {dice}"
        )
    return (*dice, total)


def _is_unset(value: Any) -> bool:
    return all(not v for v in _as_tuple(value))


class RandomnessCoordinator:
    def __init__(
        self,
        client: ChainClient,
        store: ManifestStore,
        coordinator_address: str,
        coordinator_type: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_POLL_ATTEMPTS,
        allow_synthetic: bool = False,
        synthesize_after: int = DEFAULT_SYNTHESIZE_AFTER,
        finality_timeout: float = DEFAULT_FINALITY_TIMEOUT,
        sleep: typing.Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.store = store
        self.coordinator_address = coordinator_address
        self.coordinator_type = coordinator_type
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.allow_synthetic = allow_synthetic
        self.synthesize_after = synthesize_after
        self.finality_timeout = finality_timeout
        self.sleep = sleep
        self.wiring = WiringExecutor(client, store, finality_timeout=finality_timeout)

    @property
    def synthetic_enabled(self) -> bool:
        return self.allow_synthetic and self.client.supports_synthetic_fulfillment

    def _vrf_config(self, manifest: Manifest) -> VrfConfig:
        vrf_config = manifest.vrf_config or VrfConfig()
        known = vrf_config.coordinator
        if known and known.lower() != self.coordinator_address.lower():
            # a different coordinator means a different subscription namespace
            return VrfConfig(coordinator=self.coordinator_address)
        return vrf_config._replace(coordinator=self.coordinator_address)

    def _save(self, manifest: Manifest, vrf_config: VrfConfig) -> Manifest:
        if manifest.vrf_config == vrf_config:
            return manifest
        manifest = manifest.with_vrf_config(vrf_config)
        self.store.save(manifest)
        return manifest

    def _transact(self, label: str, call: Call) -> Receipt:
        try:
            handle = self.client.submit(call)
        except TransactionReverted as e:
            raise TransactionReverted(label, e.cause) from e
        receipt = self.client.wait_for_finality(handle, self.finality_timeout)
        if not receipt.succeeded:
            raise TransactionReverted(
                label, receipt.error or f"transaction {receipt.tx_hash} reverted"
            )
        return receipt

    def subscription_id(self, manifest: Manifest) -> int:
        subscription_id = self._vrf_config(manifest).subscription_id
        if subscription_id is None:
            raise UnresolvedDependency("vrf", "no randomness subscription has been set up")
        return subscription_id

    # Subscription

    def ensure_subscription(
        self,
        manifest: Manifest,
        subscription_id: Optional[int] = None,
        key_hash: Optional[str] = None,
    ) -> Manifest:
        """
        Adopts a known subscription or creates a new one on the coordinator.

        The creating transaction is recorded before waiting on it, so a run
        that stops while it is in flight settles that transaction next time
        instead of creating a second subscription.
        """
        vrf_config = self._vrf_config(manifest)
        if subscription_id is None:
            subscription_id = vrf_config.subscription_id

        if subscription_id is None and vrf_config.pending_subscription_tx:
            manifest, vrf_config, subscription_id = self._settle_subscription(
                manifest, vrf_config, TxHandle(vrf_config.pending_subscription_tx)
            )
            if subscription_id is not None:
                print(f"(i) Subscription {subscription_id} was created by the previous run")

        if subscription_id is None:
            print(f"\nCreating randomness subscription on {self.coordinator_address}")
            try:
                handle = self.client.submit(
                    Call(self.coordinator_address, self.coordinator_type, "createSubscription")
                )
            except TransactionReverted as e:
                raise TransactionReverted("createSubscription", e.cause) from e
            vrf_config = vrf_config._replace(pending_subscription_tx=handle.tx_hash)
            manifest = self._save(manifest, vrf_config)

            manifest, vrf_config, subscription_id = self._settle_subscription(
                manifest, vrf_config, handle
            )
            if subscription_id is None:
                raise TransactionReverted(
                    "createSubscription", f"transaction {handle.tx_hash} reverted"
                )
            print(f"(i) Created subscription {subscription_id}")
        else:
            print(f"(i) Using randomness subscription {subscription_id}")

        vrf_config = vrf_config._replace(
            subscription_id=int(subscription_id),
            key_hash=key_hash or vrf_config.key_hash,
            pending_subscription_tx=None,
        )
        return self._save(manifest, vrf_config)

    def _settle_subscription(
        self, manifest: Manifest, vrf_config: VrfConfig, handle: TxHandle
    ) -> Tuple[Manifest, VrfConfig, Optional[int]]:
        """
        Waits for a createSubscription transaction and reads the new id from it.
        Returns no id when the transaction reverted. A timeout leaves the
        transaction recorded as pending.
        """
        try:
            receipt = self.client.wait_for_finality(handle, self.finality_timeout)
        except FinalityTimeout:
            raise FinalityTimeout(
                "createSubscription",
                f"subscription transaction {handle.tx_hash} is still unresolved",
                tx_hash=handle.tx_hash,
            )

        # the outcome is known from here on
        vrf_config = vrf_config._replace(pending_subscription_tx=None)
        if not receipt.succeeded:
            print(f"(i) Subscription transaction {handle.tx_hash} reverted")
            return self._save(manifest, vrf_config), vrf_config, None

        subscription_id = receipt.find_event_arg(
            SUBSCRIPTION_CREATED_EVENT, SUBSCRIPTION_EVENT_ID_FIELDS
        )
        if subscription_id is None:
            subscription_id = receipt.return_value
        if subscription_id is None:
            self._save(manifest, vrf_config)
            raise DeploymentError(
                "createSubscription",
                f"no subscription id found in transaction {receipt.tx_hash}",
            )
        return manifest, vrf_config, subscription_id

    def funding_step(self, manifest: Manifest, amount: int) -> WiringStep:
        subscription_id = self.subscription_id(manifest)
        check = Condition(
            query=Query(
                self.coordinator_address,
                self.coordinator_type,
                "getSubscription",
                (subscription_id,),
            ),
            predicate=lambda subscription: at_least(amount)(subscription[0]),
            description=f"subscription {subscription_id} balance >= {amount}",
        )
        action = Call(
            self.coordinator_address,
            self.coordinator_type,
            "fundSubscription",
            (subscription_id, amount),
        )
        return WiringStep(
            id=f"vrf:fund:{subscription_id}", precondition=check, action=action, postcondition=check
        )

    def fund_subscription(self, manifest: Manifest, amount: int) -> Manifest:
        return self.wiring.apply_step(manifest, self.funding_step(manifest, amount))

    # Consumers

    def consumer_step(self, manifest: Manifest, consumer_address: str) -> WiringStep:
        subscription_id = self.subscription_id(manifest)
        return add_consumer_step(
            step_id=f"vrf:add_consumer:{subscription_id}:{consumer_address}",
            coordinator_type=self.coordinator_type,
            coordinator_address=self.coordinator_address,
            subscription_id=subscription_id,
            consumer=consumer_address,
        )

    def register_consumers(
        self, manifest: Manifest, consumers: typing.Sequence[str]
    ) -> Manifest:
        """Adds every consumer to the subscription's allow-list, skipping registered ones."""
        steps = [self.consumer_step(manifest, consumer) for consumer in consumers]
        manifest = self.wiring.apply(manifest, steps)

        vrf_config = self._vrf_config(manifest)
        registered = list(vrf_config.consumers)
        for consumer in consumers:
            if consumer.lower() not in (c.lower() for c in registered):
                registered.append(consumer)
        return self._save(manifest, vrf_config._replace(consumers=tuple(registered)))

    # Request / fulfillment

    def _record_request(self, manifest: Manifest, request: RandomnessRequest) -> Manifest:
        vrf_config = self._vrf_config(manifest)
        requests = [r for r in vrf_config.requests if r.get("txHash") != request.tx_hash]
        requests.append(request.to_json())
        return self._save(manifest, vrf_config._replace(requests=tuple(requests)))

    def _placeholder_request_id(self, manifest: Manifest) -> int:
        """Mock coordinators number requests sequentially from one."""
        return MOCK_FIRST_ID + len(self._vrf_config(manifest).requests)

    def request(
        self, manifest: Manifest, consumer: ConsumerTarget
    ) -> Tuple[Manifest, RandomnessRequest]:
        subscription_id = self.subscription_id(manifest)
        if not self.consumer_step(manifest, consumer.address).precondition.holds(self.client):
            raise UnresolvedDependency(
                consumer.label,
                f"{consumer.address} is not a consumer of subscription {subscription_id}",
            )

        sentinel = self.client.read(consumer.result_query)
        print(f"\nRequesting randomness from {consumer.label}")
        receipt = self._transact(
            consumer.label, Call(consumer.address, consumer.contract_type, consumer.request_method)
        )

        request_id = receipt.find_event_arg(None, REQUEST_EVENT_ID_FIELDS)
        if request_id is None:
            request_id = receipt.return_value
        if request_id is None and self.synthetic_enabled:
            request_id = self._placeholder_request_id(manifest)
            print(f"(i) No request id emitted; assuming mock request {request_id}")
        elif request_id is None:
            print("WARNING: No request id found; tracking fulfillment through consumer state.")

        request = RandomnessRequest(
            subscription_id=subscription_id,
            consumer_address=consumer.address,
            request_id=int(request_id) if request_id is not None else None,
            tx_hash=receipt.tx_hash,
            status=RequestStatus.REQUESTED,
            sentinel=sentinel,
        )
        print(f"(i) Request {request.request_id} submitted (tx {request.tx_hash})")
        return self._record_request(manifest, request), request

    def _synthesize(self, consumer: ConsumerTarget, request: RandomnessRequest) -> None:
        print(f"(i) Synthesizing fulfillment of request {request.request_id}")
        try:
            handle = self.client.synthesize_fulfillment(
                self.coordinator_type,
                self.coordinator_address,
                request.request_id,
                consumer.address,
            )
        except TransactionReverted as e:
            raise TransactionReverted(consumer.label, e.cause) from e
        receipt = self.client.wait_for_finality(handle, self.finality_timeout)
        if not receipt.succeeded:
            raise TransactionReverted(
                consumer.label, receipt.error or f"fulfillment {receipt.tx_hash} reverted"
            )
        if receipt.find_event_arg(None, ("success",)) is False:
            raise InvalidRandomness(
                consumer.label, f"consumer callback failed in fulfillment {receipt.tx_hash}"
            )

    def _fulfilled(self, manifest: Manifest, consumer: ConsumerTarget, request, value):
        request = request._replace(status=RequestStatus.FULFILLED, result=_as_tuple(value))
        manifest = self._record_request(manifest, request)
        dice = validate_dice(consumer.label, value)
        request = request._replace(result=dice)
        print(f"(i) Request {request.request_id} fulfilled: {dice[0]} + {dice[1]} = {dice[2]}")
        return self._record_request(manifest, request), request

    def await_fulfillment(
        self, manifest: Manifest, consumer: ConsumerTarget, request: RandomnessRequest
    ) -> Tuple[Manifest, RandomnessRequest]:
        """
        Polls the consumer until its result changes from the value seen before
        the request. Raises FulfillmentTimeout after ``max_attempts`` reads.
        """
        synthesized = False
        for attempt in range(1, self.max_attempts + 1):
            value = self.client.read(consumer.result_query)
            if value != request.sentinel:
                return self._fulfilled(manifest, consumer, request, value)

            can_synthesize = self.synthetic_enabled and request.request_id is not None
            if can_synthesize and not synthesized and attempt >= self.synthesize_after:
                self._synthesize(consumer, request)
                synthesized = True
                value = self.client.read(consumer.result_query)
                # after a successful callback an unchanged, non-zero result is an identical roll
                if value != request.sentinel or not _is_unset(value):
                    return self._fulfilled(manifest, consumer, request, value)

            if attempt < self.max_attempts:
                print(f"(i) Waiting for fulfillment ({attempt}/{self.max_attempts})...")
                self.sleep(self.poll_interval)

        timed_out = request._replace(status=RequestStatus.TIMED_OUT)
        self._record_request(manifest, timed_out)
        raise FulfillmentTimeout(
            consumer.label,
            f"request {request.request_id} not fulfilled after {self.max_attempts} polls",
            request=timed_out,
        )

    def roll(
        self, manifest: Manifest, consumer: ConsumerTarget, retries: int = 0
    ) -> Tuple[Manifest, RandomnessRequest]:
        """Requests randomness and waits for it, re-requesting up to ``retries`` times."""
        for attempt in range(retries + 1):
            manifest, request = self.request(manifest, consumer)
            try:
                return self.await_fulfillment(manifest, consumer, request)
            except FulfillmentTimeout as e:
                manifest = self.store.load(manifest.network)
                if attempt == retries:
                    raise
                print(f"WARNING: {e}; requesting again.")
