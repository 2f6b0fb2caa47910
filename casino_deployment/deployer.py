import typing
from typing import Iterable, Optional

from eth_utils import to_checksum_address

from casino_deployment.chain import ChainClient, Deploy, Receipt, TxHandle
from casino_deployment.constants import DEFAULT_FINALITY_TIMEOUT, ZERO_ADDRESS
from casino_deployment.exceptions import (
    ConfigError,
    FinalityTimeout,
    TransactionReverted,
    UnresolvedDependency,
)
from casino_deployment.manifest import (
    DeploymentRecord,
    DeploymentStatus,
    Manifest,
    ManifestStore,
    _now,
)
from casino_deployment.params import DeploymentUnit, ResolutionContext, topological_order


class Deployer:
    """
    Deploys units in dependency order, one confirmed transaction at a time,
    persisting the manifest after every state change.

    Units already ``Deployed`` are skipped and their addresses reused. A unit
    left ``Pending`` by an interrupted run is re-checked on-chain before
    anything is redeployed. The first failure stops the whole run.
    """

    def __init__(
        self,
        client: ChainClient,
        store: ManifestStore,
        finality_timeout: float = DEFAULT_FINALITY_TIMEOUT,
        discard_pending: bool = False,
    ):
        self.client = client
        self.store = store
        self.finality_timeout = finality_timeout
        self.discard_pending = discard_pending

    def _save(self, manifest: Manifest) -> Manifest:
        self.store.save(manifest)
        return manifest

    def deploy(
        self,
        manifest: Manifest,
        units: typing.Sequence[DeploymentUnit],
        only: Optional[Iterable[str]] = None,
    ) -> Manifest:
        ordered = topological_order(units)
        if only:
            selected = set(only)
            unknown = selected - {unit.name for unit in units}
            if unknown:
                raise ConfigError(", ".join(sorted(unknown)), "not declared in deployment file")
            ordered = [unit for unit in ordered if unit.name in selected]

        print(f"Deployment order: {', '.join(unit.name for unit in ordered)}")
        for unit in ordered:
            manifest = self.deploy_unit(manifest, unit)
        return manifest

    def deploy_unit(self, manifest: Manifest, unit: DeploymentUnit) -> Manifest:
        record = manifest.get(unit.name)
        if record is not None and record.is_deployed:
            print(f"(i) {unit.name} already deployed at {record.address}; skipping.")
            return manifest

        if record is not None and record.is_pending:
            manifest = self._reconcile_pending(manifest, record)
            if manifest.is_deployed(unit.name):
                return manifest

        missing = [dep for dep in unit.depends_on if not manifest.is_deployed(dep)]
        if missing:
            raise UnresolvedDependency(
                unit.name, f"depends on {', '.join(missing)}, which is not deployed"
            )

        context = ResolutionContext(manifest=manifest, deployer_address=self.client.account_address)
        resolved_params = unit.resolve(context)

        print(f"\nDeploying {unit.name} ({unit.contract_type})")
        transaction = Deploy(
            name=unit.name, contract_type=unit.contract_type, args=tuple(resolved_params.values())
        )
        try:
            handle = self.client.submit(transaction)
        except TransactionReverted as e:
            failed = self._record(unit, DeploymentStatus.FAILED, resolved_params, error=e.cause)
            self._save(manifest.with_record(failed))
            raise

        pending = self._record(
            unit, DeploymentStatus.PENDING, resolved_params, tx_hash=handle.tx_hash
        )
        manifest = self._save(manifest.with_record(pending))

        # a timeout or an interrupt leaves the Pending record behind for the next run
        receipt = self.client.wait_for_finality(handle, self.finality_timeout)

        manifest = self._save(manifest.with_record(self._apply_receipt(pending, receipt)))
        record = manifest.get(unit.name)
        if not record.is_deployed:
            raise TransactionReverted(unit.name, record.error)

        print(f"(i) {unit.name} deployed to {record.address} (tx {record.tx_hash})")
        return manifest

    def _reconcile_pending(self, manifest: Manifest, record: DeploymentRecord) -> Manifest:
        """Settles a deployment whose outcome was unknown when the previous run stopped."""
        print(f"(i) {record.name} has a pending deployment {record.tx_hash}; checking its status.")
        if not record.tx_hash:
            failed = record._replace(status=DeploymentStatus.FAILED, error="never submitted")
            return self._save(manifest.with_record(failed))

        try:
            receipt = self.client.wait_for_finality(
                TxHandle(tx_hash=record.tx_hash, description=record.name), self.finality_timeout
            )
        except FinalityTimeout:
            if not self.discard_pending:
                raise FinalityTimeout(
                    record.name,
                    f"deployment transaction {record.tx_hash} is still unresolved; "
                    "check it on-chain or rerun with pending deployments discarded",
                    tx_hash=record.tx_hash,
                )
            print(f"WARNING: Discarding unresolved deployment {record.tx_hash} of {record.name}.")
            failed = record._replace(
                status=DeploymentStatus.FAILED, error=f"discarded unresolved {record.tx_hash}"
            )
            return self._save(manifest.with_record(failed))

        settled = self._apply_receipt(record, receipt)
        if settled.is_deployed:
            print(f"(i) {record.name} was deployed to {settled.address} by the previous run.")
        else:
            print(f"(i) Previous deployment of {record.name} failed: {settled.error}")
        return self._save(manifest.with_record(settled))

    @staticmethod
    def _apply_receipt(pending: DeploymentRecord, receipt: Receipt) -> DeploymentRecord:
        address = receipt.contract_address
        if receipt.succeeded and address and address != ZERO_ADDRESS:
            return pending._replace(
                status=DeploymentStatus.DEPLOYED,
                address=to_checksum_address(address),
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
                deployed_at=_now(),
                error=None,
            )

        if receipt.succeeded:
            error = f"transaction {receipt.tx_hash} confirmed without a contract address"
        else:
            error = receipt.error or f"transaction {receipt.tx_hash} reverted"
        return pending._replace(status=DeploymentStatus.FAILED, error=error)

    @staticmethod
    def _record(
        unit: DeploymentUnit,
        status: DeploymentStatus,
        resolved_params: typing.OrderedDict,
        tx_hash: Optional[str] = None,
        error: Optional[str] = None,
    ) -> DeploymentRecord:
        return DeploymentRecord(
            name=unit.name,
            contract_type=unit.contract_type,
            status=status,
            tx_hash=tx_hash,
            constructor_args=resolved_params,
            error=error,
        )
