import itertools
from collections import OrderedDict

import pytest
from eth_utils import to_checksum_address

from casino_deployment.chain import (
    Call,
    ChainClient,
    Deploy,
    Event,
    Receipt,
    ReceiptStatus,
    TxHandle,
)
from casino_deployment.exceptions import FinalityTimeout, TransactionReverted
from casino_deployment.manifest import (
    DeploymentRecord,
    DeploymentStatus,
    Manifest,
    ManifestStore,
)

DEPLOYER = to_checksum_address("0x" + "de" * 20)
NETWORK = "local"
CHAIN_ID = 31337

DEFAULT_RESULTS = {"hasRole": False, "balanceOf": 0, "getLastRoll": (0, 0, 0)}


class FakeChain(ChainClient):
    """
    An in-memory chain. Transactions execute when submitted; receipts are
    handed out by ``wait_for_finality``. Behaviour is keyed by unit name for
    deployments and by method name for calls.
    """

    def __init__(self, account=DEPLOYER):
        self._account = account
        self.submitted = list()
        self.reads = list()
        self.contracts = OrderedDict()
        self.storage = dict()
        self.effects = dict()
        self.reject = set()
        self.revert = set()
        self.no_effect = set()
        self.unresolved = set()
        self.interrupt = set()
        self.synthetic = False
        self.emit_request_id = True
        self.rolls = itertools.cycle([(3, 4), (6, 1), (2, 2)])
        self.subscriptions = OrderedDict()
        self.requests = OrderedDict()
        self._receipts = dict()
        self._nonce = 0

    @property
    def account_address(self):
        return self._account

    # test helpers

    def create(self, contract_type):
        """Places a contract on chain without a transaction."""
        self._nonce += 1
        address = to_checksum_address("0x" + f"{0xC0DE0000 + self._nonce:040x}")
        self.contracts[address] = contract_type
        return address

    def set(self, address, method, args=(), value=None):
        self.storage[(address.lower(), method, tuple(args))] = value

    def calls(self, method):
        return [tx for tx in self.submitted if not isinstance(tx, Deploy) and tx.method == method]

    def deployments(self):
        return [tx.name for tx in self.submitted if isinstance(tx, Deploy)]

    def fulfill(self, consumer):
        d1, d2 = next(self.rolls)
        self.set(consumer, "getLastRoll", value=(d1, d2, d1 + d2))

    def fulfill_pending(self):
        for request_id, consumer in list(self.requests.items()):
            if consumer is not None:
                self.fulfill(consumer)
                self.requests[request_id] = None

    # ChainClient

    @staticmethod
    def _key(transaction):
        return transaction.name if isinstance(transaction, Deploy) else transaction.method

    def submit(self, transaction):
        key = self._key(transaction)
        if key in self.reject:
            raise TransactionReverted(key, "rejected by node")

        self.submitted.append(transaction)
        self._nonce += 1
        tx_hash = "0x" + f"{self._nonce:064x}"
        if key in self.revert:
            receipt = Receipt(
                tx_hash, ReceiptStatus.REVERTED, block_number=self._nonce, error=f"{key} reverted"
            )
        elif isinstance(transaction, Deploy):
            address = self.create(transaction.contract_type)
            receipt = Receipt(
                tx_hash, ReceiptStatus.SUCCESS, contract_address=address, block_number=self._nonce
            )
        else:
            events, return_value = self._execute(transaction)
            receipt = Receipt(
                tx_hash,
                ReceiptStatus.SUCCESS,
                block_number=self._nonce,
                return_value=return_value,
                events=tuple(events),
            )
        self._receipts[tx_hash] = (key, receipt)
        return TxHandle(tx_hash=tx_hash, description=key)

    def wait_for_finality(self, handle, timeout):
        key, receipt = self._receipts[handle.tx_hash]
        if key in self.interrupt:
            raise KeyboardInterrupt
        if key in self.unresolved or handle.tx_hash in self.unresolved:
            raise FinalityTimeout(key, "not final", tx_hash=handle.tx_hash)
        return receipt

    def read(self, query):
        self.reads.append(query)
        if query.method == "getSubscription":
            subscription = self.subscriptions.get(query.args[0])
            if subscription is None:
                return 0, 0, "0x" + "0" * 40, ()
            consumers = tuple(subscription["consumers"])
            return subscription["balance"], 0, subscription["owner"], consumers
        key = (query.address.lower(), query.method, tuple(query.args))
        return self.storage.get(key, DEFAULT_RESULTS.get(query.method))

    @property
    def supports_synthetic_fulfillment(self):
        return self.synthetic

    def synthesize_fulfillment(self, coordinator_type, coordinator, request_id, consumer):
        if not self.synthetic:
            return super().synthesize_fulfillment(
                coordinator_type, coordinator, request_id, consumer
            )
        return self.submit(
            Call(coordinator, coordinator_type, "fulfillRandomWords", (request_id, consumer))
        )

    # contract behaviour

    def _execute(self, call):
        if call.method in self.no_effect:
            return [], None
        if call.method in self.effects:
            return [], self.effects[call.method](self, call)
        handler = getattr(self, f"_on_{call.method}", None)
        if handler is None:
            return [], None
        return handler(call)

    def _on_grantRole(self, call):
        role, account = call.args
        self.set(call.address, "hasRole", (role, account), True)
        return [Event("RoleGranted", {"role": role, "account": account})], None

    def _on_transfer(self, call):
        recipient, amount = call.args
        balance = self.read_balance(call.address, recipient)
        self.set(call.address, "balanceOf", (recipient,), balance + amount)
        return [Event("Transfer", {"to": recipient, "value": amount})], True

    def read_balance(self, token, account):
        return self.storage.get((token.lower(), "balanceOf", (account,)), 0)

    def _on_createSubscription(self, call):
        subscription_id = len(self.subscriptions) + 1
        self.subscriptions[subscription_id] = dict(
            balance=0, owner=self._account, consumers=list()
        )
        return [Event("SubscriptionCreated", {"subId": subscription_id})], subscription_id

    def _on_fundSubscription(self, call):
        subscription_id, amount = call.args
        self.subscriptions[subscription_id]["balance"] += amount
        return [], None

    def _on_addConsumer(self, call):
        subscription_id, consumer = call.args
        self.subscriptions[subscription_id]["consumers"].append(consumer)
        return [Event("SubscriptionConsumerAdded", {"subId": subscription_id})], None

    def _on_requestDiceRoll(self, call):
        request_id = len(self.requests) + 1
        self.requests[request_id] = call.address
        if not self.emit_request_id:
            return [], None
        return [Event("RandomWordsRequested", {"requestId": request_id})], request_id

    def _on_fulfillRandomWords(self, call):
        request_id, consumer = call.args
        self.fulfill(consumer)
        self.requests[request_id] = None
        return [Event("RandomWordsFulfilled", {"requestId": request_id, "success": True})], None


def deployed(chain, manifest, *names, contract_types=None):
    """Returns ``manifest`` with the named units already deployed on ``chain``."""
    contract_types = contract_types or dict()
    for name in names:
        contract_type = contract_types.get(name, name)
        record = DeploymentRecord(
            name=name,
            contract_type=contract_type,
            status=DeploymentStatus.DEPLOYED,
            address=chain.create(contract_type),
            tx_hash="0x" + "00" * 32,
            block_number=1,
            constructor_args=OrderedDict(),
        )
        manifest = manifest.with_record(record)
    return manifest


@pytest.fixture()
def chain():
    return FakeChain()


@pytest.fixture()
def manifest_filepath(tmp_path):
    return tmp_path / "artifacts" / "local.json"


@pytest.fixture()
def store(manifest_filepath):
    return ManifestStore(manifest_filepath)


@pytest.fixture()
def manifest():
    return Manifest.empty(network=NETWORK, chain_id=CHAIN_ID)
