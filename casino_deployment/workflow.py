import time
import typing
from typing import Any, Iterable, List, NamedTuple, Optional

from casino_deployment.chain import ChainClient
from casino_deployment.constants import (
    DEFAULT_FINALITY_TIMEOUT,
    DEFAULT_POLL_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SYNTHESIZE_AFTER,
)
from casino_deployment.deployer import Deployer
from casino_deployment.exceptions import ConfigError
from casino_deployment.manifest import Manifest, ManifestStore
from casino_deployment.params import DeploymentConfig, ResolutionContext, _resolve_param
from casino_deployment.randomness import ConsumerTarget, RandomnessCoordinator
from casino_deployment.wiring import WiringExecutor, steps_from_config

DEPLOY = "deploy"
WIRE = "wire"
FUND = "fund"
SETUP_RANDOMNESS = "setup-randomness"

PHASES = [DEPLOY, WIRE, FUND, SETUP_RANDOMNESS]


class RandomnessSettings(NamedTuple):
    coordinator_address: str
    coordinator_type: str
    consumers: List[ConsumerTarget]
    subscription_id: Optional[int] = None
    key_hash: Optional[str] = None
    fund_amount: Optional[int] = None
    request: Optional[ConsumerTarget] = None
    retries: int = 0
    synthetic: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_attempts: int = DEFAULT_POLL_ATTEMPTS
    synthesize_after: int = DEFAULT_SYNTHESIZE_AFTER


def _consumer(manifest: Manifest, name: str, request: Optional[dict] = None) -> ConsumerTarget:
    address = manifest.address_of(name, requested_by="randomness")
    request = request or dict()
    optional = {
        field: request[key]
        for field, key in (("request_method", "method"), ("result_method", "result"))
        if key in request
    }
    return ConsumerTarget(
        name=name, address=address, contract_type=manifest.get(name).contract_type, **optional
    )


def randomness_settings(
    config: DeploymentConfig, manifest: Manifest, deployer_address: str
) -> RandomnessSettings:
    """Reads the randomness section of a deployment file against the current manifest."""
    data = config.randomness
    if not data:
        raise ConfigError("randomness", "no randomness section in deployment file")

    context = ResolutionContext(manifest=manifest, deployer_address=deployer_address)

    def value(key: str, default: Any = None) -> Any:
        if data.get(key) is None:
            return default
        return _resolve_param(config.process("randomness", data[key]), context)

    try:
        coordinator = data["coordinator"]
    except KeyError:
        raise ConfigError("randomness", "coordinator is not set")
    if isinstance(coordinator, str) and not coordinator.startswith(("0x", "$")):
        # a deployed unit
        coordinator_address = manifest.address_of(coordinator, requested_by="randomness")
        coordinator_type = data.get("coordinator_type") or manifest.get(coordinator).contract_type
    else:
        coordinator_address = value("coordinator")
        coordinator_type = data.get("coordinator_type")
        if not coordinator_type:
            raise ConfigError("randomness", "coordinator_type is required for an address")

    consumers = [_consumer(manifest, name) for name in data.get("consumers") or ()]

    request = None
    request_data = data.get("request")
    if request_data:
        request = _consumer(manifest, request_data["consumer"], request_data)

    polling = data.get("polling") or dict()
    subscription_id = value("subscription_id")
    fund_amount = value("fund_amount")
    return RandomnessSettings(
        coordinator_address=coordinator_address,
        coordinator_type=coordinator_type,
        consumers=consumers,
        subscription_id=int(subscription_id) if subscription_id is not None else None,
        key_hash=value("key_hash"),
        fund_amount=int(fund_amount) if fund_amount else None,
        request=request,
        retries=int((request_data or {}).get("retries", 0)),
        synthetic=bool(data.get("synthetic", False)),
        poll_interval=float(polling.get("interval", DEFAULT_POLL_INTERVAL)),
        poll_attempts=int(polling.get("attempts", DEFAULT_POLL_ATTEMPTS)),
        synthesize_after=int(polling.get("synthesize_after", DEFAULT_SYNTHESIZE_AFTER)),
    )


class Workflow:
    """
    The ordered pipeline of phases described by a deployment file.

    Every phase takes the current manifest and returns the next one; the
    manifest store always holds the latest persisted value, so any phase can
    be rerun or resumed from a fresh invocation.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        client: ChainClient,
        store: Optional[ManifestStore] = None,
        finality_timeout: float = DEFAULT_FINALITY_TIMEOUT,
        discard_pending: bool = False,
        allow_synthetic: Optional[bool] = None,
        sleep: typing.Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.client = client
        self.store = store or ManifestStore(config.manifest_filepath)
        self.finality_timeout = finality_timeout
        self.allow_synthetic = allow_synthetic
        self.sleep = sleep
        self.deployer = Deployer(
            client, self.store, finality_timeout=finality_timeout, discard_pending=discard_pending
        )
        self.wiring = WiringExecutor(client, self.store, finality_timeout=finality_timeout)

    def load_manifest(self) -> Manifest:
        return self.store.load(self.config.network, chain_id=self.config.chain_id)

    def deploy(self, manifest: Manifest, only: Optional[Iterable[str]] = None) -> Manifest:
        return self.deployer.deploy(manifest, self.config.units, only=only)

    def _apply(self, manifest: Manifest, entries: typing.Sequence) -> Manifest:
        steps = steps_from_config(
            self.config, entries, manifest, deployer_address=self.client.account_address
        )
        return self.wiring.apply(manifest, steps)

    def wire(self, manifest: Manifest) -> Manifest:
        return self._apply(manifest, self.config.wiring)

    def fund(self, manifest: Manifest) -> Manifest:
        return self._apply(manifest, self.config.funding)

    def randomness_coordinator(self, settings: RandomnessSettings) -> RandomnessCoordinator:
        allow_synthetic = self.allow_synthetic
        if allow_synthetic is None:
            allow_synthetic = settings.synthetic
        return RandomnessCoordinator(
            client=self.client,
            store=self.store,
            coordinator_address=settings.coordinator_address,
            coordinator_type=settings.coordinator_type,
            poll_interval=settings.poll_interval,
            max_attempts=settings.poll_attempts,
            allow_synthetic=allow_synthetic,
            synthesize_after=settings.synthesize_after,
            finality_timeout=self.finality_timeout,
            sleep=self.sleep,
        )

    def setup_randomness(self, manifest: Manifest, request: bool = True) -> Manifest:
        settings = randomness_settings(self.config, manifest, self.client.account_address)
        coordinator = self.randomness_coordinator(settings)

        manifest = coordinator.ensure_subscription(
            manifest, subscription_id=settings.subscription_id, key_hash=settings.key_hash
        )
        if settings.fund_amount:
            manifest = coordinator.fund_subscription(manifest, settings.fund_amount)
        manifest = coordinator.register_consumers(
            manifest, [consumer.address for consumer in settings.consumers]
        )

        if request and settings.request is not None:
            manifest, _ = coordinator.roll(manifest, settings.request, retries=settings.retries)
        return manifest

    def run(self, phases: typing.Sequence[str] = tuple(PHASES)) -> Manifest:
        unknown = [phase for phase in phases if phase not in PHASES]
        if unknown:
            raise ConfigError(", ".join(unknown), f"unknown phase; expected {', '.join(PHASES)}")

        handlers = {
            DEPLOY: self.deploy,
            WIRE: self.wire,
            FUND: self.fund,
            SETUP_RANDOMNESS: self.setup_randomness,
        }
        manifest = self.load_manifest()
        for phase in phases:
            print(f"\n=== {phase} ({self.config.network}) ===")
            manifest = handlers[phase](manifest)
        return manifest
