import json
import os
import tempfile
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional, Tuple

from eth_utils import to_checksum_address

from casino_deployment.constants import MANIFEST_VERSION, STANDARD_MANIFEST_JSON_FORMAT
from casino_deployment.exceptions import ManifestCorrupt, UnresolvedDependency

UnitName = str
StepId = str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _jsonable(value: Any) -> Any:
    """Converts resolved constructor values into something JSON can carry."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


class DeploymentStatus(Enum):
    PENDING = "pending"
    DEPLOYED = "deployed"
    FAILED = "failed"


class DeploymentRecord(NamedTuple):
    """Persisted outcome of deploying a single unit."""

    name: UnitName
    contract_type: str
    status: DeploymentStatus
    address: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    deployed_at: Optional[str] = None
    constructor_args: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_deployed(self) -> bool:
        return self.status == DeploymentStatus.DEPLOYED

    @property
    def is_pending(self) -> bool:
        return self.status == DeploymentStatus.PENDING


class WiringState(NamedTuple):
    applied: bool
    applied_at: Optional[str] = None
    tx_hash: Optional[str] = None


class VrfConfig(NamedTuple):
    coordinator: Optional[str] = None
    subscription_id: Optional[int] = None
    key_hash: Optional[str] = None
    consumers: Tuple[str, ...] = ()
    requests: Tuple[Dict[str, Any], ...] = ()
    pending_subscription_tx: Optional[str] = None


class Manifest(NamedTuple):
    """
    Everything deployed and configured so far on one network.

    A manifest is never changed in place; every ``with_*`` method returns a new
    value that replaces the previous one.
    """

    network: str
    chain_id: Optional[int] = None
    version: int = MANIFEST_VERSION
    timestamp: Optional[str] = None
    records: Dict[UnitName, DeploymentRecord] = {}
    wiring: Dict[StepId, WiringState] = {}
    vrf_config: Optional[VrfConfig] = None

    @classmethod
    def empty(cls, network: str, chain_id: Optional[int] = None) -> "Manifest":
        return cls(network=network, chain_id=chain_id, records=OrderedDict(), wiring=OrderedDict())

    def get(self, name: UnitName) -> Optional[DeploymentRecord]:
        return self.records.get(name)

    def is_deployed(self, name: UnitName) -> bool:
        record = self.records.get(name)
        return record is not None and record.is_deployed

    def address_of(self, name: UnitName, requested_by: Optional[str] = None) -> str:
        """Returns the confirmed address of a unit."""
        record = self.records.get(name)
        if record is None or not record.is_deployed:
            state = record.status.value if record else "not deployed"
            raise UnresolvedDependency(
                requested_by or name, f"'{name}' has no confirmed address ({state})"
            )
        return record.address

    @property
    def contracts(self) -> Dict[UnitName, str]:
        """Addresses of deployed units, by name."""
        return OrderedDict(
            (name, record.address) for name, record in self.records.items() if record.is_deployed
        )

    def is_applied(self, step_id: StepId) -> bool:
        state = self.wiring.get(step_id)
        return bool(state and state.applied)

    def with_record(self, record: DeploymentRecord) -> "Manifest":
        records = OrderedDict(self.records)
        records[record.name] = record
        return self._replace(records=records, timestamp=_now())

    def with_wiring(self, step_id: StepId, state: WiringState) -> "Manifest":
        wiring = OrderedDict(self.wiring)
        wiring[step_id] = state
        return self._replace(wiring=wiring, timestamp=_now())

    def with_vrf_config(self, vrf_config: VrfConfig) -> "Manifest":
        return self._replace(vrf_config=vrf_config, timestamp=_now())


#
# Serialization
#


def _record_to_json(record: DeploymentRecord) -> Dict[str, Any]:
    return {
        "contract_type": record.contract_type,
        "status": record.status.value,
        "address": record.address,
        "tx_hash": record.tx_hash,
        "block_number": record.block_number,
        "deployed_at": record.deployed_at,
        "constructor_args": _jsonable(record.constructor_args or {}),
        "error": record.error,
    }


def _record_from_json(name: UnitName, data: Dict[str, Any]) -> DeploymentRecord:
    address = data.get("address")
    return DeploymentRecord(
        name=name,
        contract_type=data["contract_type"],
        status=DeploymentStatus(data["status"]),
        address=to_checksum_address(address) if address else None,
        tx_hash=data.get("tx_hash"),
        block_number=data.get("block_number"),
        deployed_at=data.get("deployed_at"),
        constructor_args=OrderedDict(data.get("constructor_args") or {}),
        error=data.get("error"),
    )


def _vrf_config_to_json(vrf_config: VrfConfig) -> Dict[str, Any]:
    return {
        "coordinator": vrf_config.coordinator,
        "subscriptionId": vrf_config.subscription_id,
        "keyHash": vrf_config.key_hash,
        "consumers": list(vrf_config.consumers),
        "requests": [dict(r) for r in vrf_config.requests],
        "pendingSubscriptionTx": vrf_config.pending_subscription_tx,
    }


def _vrf_config_from_json(data: Dict[str, Any]) -> VrfConfig:
    subscription_id = data.get("subscriptionId")
    return VrfConfig(
        coordinator=data.get("coordinator"),
        subscription_id=int(subscription_id) if subscription_id is not None else None,
        key_hash=data.get("keyHash"),
        consumers=tuple(data.get("consumers") or ()),
        requests=tuple(data.get("requests") or ()),
        pending_subscription_tx=data.get("pendingSubscriptionTx"),
    )


def manifest_to_json(manifest: Manifest) -> Dict[str, Any]:
    data = {
        "version": manifest.version,
        "network": manifest.network,
        "chain_id": manifest.chain_id,
        "timestamp": manifest.timestamp,
        "contracts": dict(manifest.contracts),
        "records": {name: _record_to_json(r) for name, r in manifest.records.items()},
        "wiring": {step_id: state._asdict() for step_id, state in manifest.wiring.items()},
    }
    if manifest.vrf_config is not None:
        data["vrfConfig"] = _vrf_config_to_json(manifest.vrf_config)
    return data


def manifest_from_json(network: str, data: Dict[str, Any]) -> Manifest:
    version = data.get("version")
    if version != MANIFEST_VERSION:
        raise ValueError(f"unsupported manifest version {version}")

    records = OrderedDict(
        (name, _record_from_json(name, entry)) for name, entry in data.get("records", {}).items()
    )
    wiring = OrderedDict(
        (step_id, WiringState(**entry)) for step_id, entry in data.get("wiring", {}).items()
    )
    vrf_data = data.get("vrfConfig")
    return Manifest(
        network=network,
        chain_id=data.get("chain_id"),
        version=version,
        timestamp=data.get("timestamp"),
        records=records,
        wiring=wiring,
        vrf_config=_vrf_config_from_json(vrf_data) if vrf_data is not None else None,
    )


class ManifestStore:
    """
    A JSON file holding the manifests of any number of networks, keyed by network name.

    Writes replace the whole file atomically so an interrupted save never leaves
    a partially written manifest behind. The workflow is the only writer.
    """

    def __init__(self, filepath: Path):
        self.filepath = Path(filepath)

    def _read_all(self) -> Dict[str, Any]:
        if not self.filepath.exists():
            return dict()
        try:
            with open(self.filepath, "r") as file:
                data = json.load(file)
        except (OSError, ValueError) as e:
            raise ManifestCorrupt(str(self.filepath), f"unreadable manifest ({e})")
        if not isinstance(data, dict):
            raise ManifestCorrupt(str(self.filepath), "expected an object keyed by network")
        return data

    def load(self, network: str, chain_id: Optional[int] = None) -> Manifest:
        """Returns the manifest for ``network``; an empty one if nothing was recorded yet."""
        entry = self._read_all().get(network)
        if entry is None:
            return Manifest.empty(network=network, chain_id=chain_id)
        try:
            manifest = manifest_from_json(network, entry)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ManifestCorrupt(str(self.filepath), f"invalid '{network}' entry ({e})")
        if chain_id is not None and manifest.chain_id not in (None, chain_id):
            raise ManifestCorrupt(
                str(self.filepath),
                f"'{network}' was recorded for chain {manifest.chain_id}, not {chain_id}",
            )
        return manifest

    def get(self, network: str, name: UnitName) -> Optional[DeploymentRecord]:
        return self.load(network).get(name)

    def save(self, manifest: Manifest) -> Path:
        data = self._read_all()
        data[manifest.network] = manifest_to_json(manifest)

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.filepath.parent, prefix=f".{self.filepath.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as file:
                json.dump(data, file, **STANDARD_MANIFEST_JSON_FORMAT)
                file.write("\n")
                file.flush()
                os.fsync(file.fileno())
            os.replace(temp_path, self.filepath)
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise
        return self.filepath
