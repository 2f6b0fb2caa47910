from collections import OrderedDict
from typing import Any, Dict, Optional

from ape import networks, project
from ape.api import AccountAPI, ReceiptAPI, TransactionAPI
from ape.contracts import ContractContainer, ContractInstance
from ape.exceptions import ApeException, TransactionNotFoundError
from eth_utils import to_checksum_address, to_hex
from web3.exceptions import Web3Exception

from casino_deployment.chain import (
    Call,
    ChainClient,
    Deploy,
    Event,
    Query,
    Receipt,
    ReceiptStatus,
    Transaction,
    TxHandle,
)
from casino_deployment.confirm import _confirm_resolution, _continue
from casino_deployment.exceptions import FinalityTimeout, TransactionReverted
from casino_deployment.networks import is_local_network


def _get_dependency_contract_container(contract: str) -> ContractContainer:
    for dependency_name, dependency_versions in project.dependencies.items():
        if len(dependency_versions) > 1:
            raise ValueError(f"Ambiguous {dependency_name} dependency for {contract}")
        try:
            dependency_api = list(dependency_versions.values())[0]
            contract_container = getattr(dependency_api, contract)
            return contract_container
        except AttributeError:
            continue
    raise ValueError(f"No contract found with name '{contract}'.")


def get_contract_container(contract: str) -> ContractContainer:
    try:
        contract_container = getattr(project, contract)
    except AttributeError:
        # not in root project; check dependencies
        contract_container = _get_dependency_contract_container(contract)

    return contract_container


class ApeChainClient(ChainClient):
    """
    Represents an ape account plus annotated transaction submission.

    Transactions are signed by the account and broadcast raw so that
    submission and finality stay two separate steps.
    """

    def __init__(
        self,
        account: AccountAPI,
        autosign: bool = False,
        mock_randomness: bool = False,
        required_confirmations: Optional[int] = None,
    ):
        if autosign:
            print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        self._account = account
        self._autosign = autosign
        if hasattr(account, "set_autosign"):
            account.set_autosign(autosign)
        self.mock_randomness = mock_randomness
        self.required_confirmations = required_confirmations
        self._instances: Dict[str, ContractInstance] = dict()

    @property
    def account_address(self) -> str:
        return self._account.address

    def _instance(self, contract_type: str, address: str) -> ContractInstance:
        key = f"{contract_type}@{address.lower()}"
        if key not in self._instances:
            self._instances[key] = get_contract_container(contract_type).at(address)
        return self._instances[key]

    def _serialize_deployment(self, transaction: Deploy) -> TransactionAPI:
        container = get_contract_container(transaction.contract_type)
        abi_inputs = container.constructor.abi.inputs
        named_args = OrderedDict(
            (abi_input.name or f"arg{i}", value)
            for i, (abi_input, value) in enumerate(zip(abi_inputs, transaction.args))
        )
        if not self._autosign:
            _confirm_resolution(named_args, transaction.name)
        return container.constructor.serialize_transaction(
            *transaction.args, sender=self._account
        )

    def _serialize_call(self, transaction: Call) -> TransactionAPI:
        instance = self._instance(transaction.contract_type, transaction.address)
        method = getattr(instance, transaction.method)
        print(f"\nTransacting {transaction}")
        if not self._autosign:
            _continue()
        kwargs = {"sender": self._account}
        if transaction.value:
            kwargs["value"] = transaction.value
        return method.as_transaction(*transaction.args, **kwargs)

    def submit(self, transaction: Transaction) -> TxHandle:
        if isinstance(transaction, Deploy):
            description = transaction.name
        else:
            description = str(transaction)

        try:
            if isinstance(transaction, Deploy):
                txn = self._serialize_deployment(transaction)
            else:
                txn = self._serialize_call(transaction)
            txn = self._account.prepare_transaction(txn)
            signed = self._account.sign_transaction(txn)
            if signed is None:
                raise TransactionReverted(description, "signing was declined")
            txn_hash = networks.provider.web3.eth.send_raw_transaction(
                signed.serialize_transaction()
            )
        except (ApeException, Web3Exception) as e:
            raise TransactionReverted(description, str(e)) from e

        return TxHandle(tx_hash=to_hex(txn_hash), description=description)

    def wait_for_finality(self, handle: TxHandle, timeout: float) -> Receipt:
        kwargs = {"timeout": int(timeout)}
        if self.required_confirmations is not None:
            kwargs["required_confirmations"] = self.required_confirmations
        try:
            receipt = networks.provider.get_receipt(handle.tx_hash, **kwargs)
        except TransactionNotFoundError as e:
            raise FinalityTimeout(
                handle.description or handle.tx_hash,
                f"transaction {handle.tx_hash} not final after {timeout}s ({e})",
                tx_hash=handle.tx_hash,
            ) from e
        return self._to_receipt(receipt)

    @staticmethod
    def _to_receipt(receipt: ReceiptAPI) -> Receipt:
        events = tuple(
            Event(name=log.event_name, args=dict(log.event_arguments)) for log in receipt.events
        )

        return_value = None
        if not receipt.failed and getattr(networks.provider, "supports_tracing", False):
            return_value = receipt.return_value

        tx_hash = receipt.txn_hash
        if isinstance(tx_hash, bytes):
            tx_hash = to_hex(tx_hash)

        contract_address = receipt.contract_address
        return Receipt(
            tx_hash=tx_hash,
            status=ReceiptStatus.REVERTED if receipt.failed else ReceiptStatus.SUCCESS,
            contract_address=to_checksum_address(contract_address) if contract_address else None,
            block_number=receipt.block_number,
            return_value=return_value,
            events=events,
            error=f"reverted in block {receipt.block_number}" if receipt.failed else None,
        )

    def read(self, query: Query) -> Any:
        instance = self._instance(query.contract_type, query.address)
        return getattr(instance, query.method)(*query.args)

    @property
    def supports_synthetic_fulfillment(self) -> bool:
        return self.mock_randomness and is_local_network()

    def synthesize_fulfillment(
        self, coordinator_type: str, coordinator: str, request_id: int, consumer: str
    ) -> TxHandle:
        if not self.supports_synthetic_fulfillment:
            return super().synthesize_fulfillment(
                coordinator_type, coordinator, request_id, consumer
            )
        fulfillment = Call(
            coordinator, coordinator_type, "fulfillRandomWords", (request_id, consumer)
        )
        return self.submit(fulfillment)
