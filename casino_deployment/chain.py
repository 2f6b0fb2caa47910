"""
The chain client boundary.

Everything the workflow needs from a blockchain goes through a ``ChainClient``:
submitting a transaction returns a handle, finality is awaited separately, and
contract state is read with plain queries. The workflow never assumes that a
submission is confirmed synchronously.
"""

import typing
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional, Tuple, Union


class Deploy(NamedTuple):
    """Creates a new contract of ``contract_type`` for the unit ``name``."""

    name: str
    contract_type: str
    args: Tuple[Any, ...] = ()


class Call(NamedTuple):
    """A state-changing method call on a deployed contract."""

    address: str
    contract_type: str
    method: str
    args: Tuple[Any, ...] = ()
    value: int = 0

    def __str__(self) -> str:
        pretty_args = ", ".join(str(a) for a in self.args)
        return f"{self.contract_type}[{self.address[:10]}].{self.method}({pretty_args})"


class Query(NamedTuple):
    """A read-only method call on a deployed contract."""

    address: str
    contract_type: str
    method: str
    args: Tuple[Any, ...] = ()

    def __str__(self) -> str:
        pretty_args = ", ".join(str(a) for a in self.args)
        return f"{self.contract_type}[{self.address[:10]}].{self.method}({pretty_args})"


Transaction = Union[Deploy, Call]


class TxHandle(NamedTuple):
    tx_hash: str
    description: str = ""


class ReceiptStatus(Enum):
    SUCCESS = "success"
    REVERTED = "reverted"


class Event(NamedTuple):
    name: str
    args: Dict[str, Any]


class Receipt(NamedTuple):
    tx_hash: str
    status: ReceiptStatus
    contract_address: Optional[str] = None
    block_number: Optional[int] = None
    return_value: Any = None
    events: Tuple[Event, ...] = ()
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ReceiptStatus.SUCCESS

    def find_event_arg(self, event_name: Optional[str], fields: typing.Iterable[str]) -> Any:
        """
        Returns the first matching argument of an emitted event, optionally
        restricted to events called ``event_name``.
        """
        for event in self.events:
            if event_name and event.name != event_name:
                continue
            for field in fields:
                if field in event.args:
                    return event.args[field]
        return None


class ChainClient(ABC):
    """The operations the workflow relies on; implemented by chain adapters."""

    @property
    @abstractmethod
    def account_address(self) -> str:
        """Address of the account that signs submitted transactions."""
        raise NotImplementedError

    @abstractmethod
    def submit(self, transaction: Transaction) -> TxHandle:
        """
        Broadcasts a transaction and returns its handle without waiting for it.
        Raises TransactionReverted when the transaction is rejected before broadcast.
        """
        raise NotImplementedError

    @abstractmethod
    def wait_for_finality(self, handle: TxHandle, timeout: float) -> Receipt:
        """
        Blocks until the transaction is final or ``timeout`` seconds pass.
        Raises FinalityTimeout when the outcome is still unknown.
        """
        raise NotImplementedError

    @abstractmethod
    def read(self, query: Query) -> Any:
        raise NotImplementedError

    @property
    def supports_synthetic_fulfillment(self) -> bool:
        """True when this chain can complete randomness requests on its own (mock coordinators)."""
        return False

    def synthesize_fulfillment(
        self, coordinator_type: str, coordinator: str, request_id: int, consumer: str
    ) -> TxHandle:
        """Completes a pending randomness request through a mock coordinator."""
        raise NotImplementedError(
            f"{self.__class__.__name__} cannot synthesize randomness fulfillments"
        )
