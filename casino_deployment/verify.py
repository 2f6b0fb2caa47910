import json
import time
import typing
from enum import Enum
from pathlib import Path
from typing import Dict

import requests
from eth_abi import encode
from eth_utils import to_bytes

from casino_deployment.exceptions import VerificationFailed
from casino_deployment.manifest import Manifest
from casino_deployment.utils import _load_json

ALREADY_VERIFIED = "already-verified"

PENDING_MARKERS = ("pending in queue", "in progress")
SUCCESS_MARKERS = ("pass - verified", "already verified")


class VerificationStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


def _classify(result: str) -> VerificationStatus:
    text = (result or "").lower()
    if any(marker in text for marker in SUCCESS_MARKERS):
        return VerificationStatus.SUCCESS
    if any(marker in text for marker in PENDING_MARKERS):
        return VerificationStatus.PENDING
    return VerificationStatus.FAILED


class ExplorerVerifier:
    """
    Submits contract sources to an Etherscan-compatible explorer API and
    polls the verification job it creates.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        chain_id: typing.Optional[int] = None,
        poll_interval: float = 5,
        max_attempts: int = 20,
        sleep: typing.Callable[[float], None] = time.sleep,
    ):
        if not api_key:
            raise ValueError("An explorer API key is required for verification.")
        self.api_url = api_url
        self.api_key = api_key
        self.chain_id = chain_id
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.sleep = sleep

    def _params(self, **params) -> dict:
        params["apikey"] = self.api_key
        if self.chain_id is not None:
            params["chainid"] = self.chain_id
        return params

    def submit_source(
        self,
        address: str,
        source: str,
        contract_name: str,
        compiler_version: str,
        constructor_args_encoded: str = "",
        code_format: str = "solidity-standard-json-input",
    ) -> str:
        """Submits source code for ``address`` and returns the verification job id."""
        data = self._params(
            module="contract",
            action="verifysourcecode",
            contractaddress=address,
            sourceCode=source,
            codeformat=code_format,
            contractname=contract_name,
            compilerversion=compiler_version,
            # sic, the explorer API spells it this way
            constructorArguements=constructor_args_encoded.removeprefix("0x"),
        )
        response = requests.post(self.api_url, data=data)
        response.raise_for_status()
        payload = response.json()

        if payload.get("status") == "1":
            print(f"(i) Verification of {contract_name} submitted as job {payload['result']}")
            return payload["result"]
        if _classify(payload.get("result")) == VerificationStatus.SUCCESS:
            print(f"(i) {contract_name} at {address} is already verified.")
            return ALREADY_VERIFIED
        raise VerificationFailed(contract_name, f"submission rejected: {payload.get('result')}")

    def poll_status(self, job_id: str) -> VerificationStatus:
        if job_id == ALREADY_VERIFIED:
            return VerificationStatus.SUCCESS
        params = self._params(module="contract", action="checkverifystatus", guid=job_id)
        response = requests.get(self.api_url, params=params)
        response.raise_for_status()
        return _classify(response.json().get("result"))

    def wait(self, job_id: str) -> VerificationStatus:
        """Polls a verification job until it leaves the pending state."""
        for attempt in range(1, self.max_attempts + 1):
            status = self.poll_status(job_id)
            if status != VerificationStatus.PENDING:
                return status
            if attempt < self.max_attempts:
                self.sleep(self.poll_interval)
        return VerificationStatus.PENDING


def _encode_arg(abi_type: str, value: typing.Any) -> typing.Any:
    if abi_type.startswith("bytes") and isinstance(value, str):
        return to_bytes(hexstr=value)
    if abi_type.endswith("[]") and isinstance(value, list):
        return [_encode_arg(abi_type[:-2], v) for v in value]
    return value


def encode_constructor_args(types: typing.Sequence[str], values: typing.Sequence) -> str:
    """ABI-encodes recorded constructor arguments as the explorer expects them."""
    if len(types) != len(values):
        raise ValueError(f"expected {len(types)} constructor arguments, got {len(values)}")
    if not types:
        return ""
    return encode(list(types), [_encode_arg(t, v) for t, v in zip(types, values)]).hex()


def verify_manifest(
    manifest: Manifest, verifier: ExplorerVerifier, sources_dir: Path
) -> Dict[str, VerificationStatus]:
    """
    Verifies every deployed contract of a manifest. A contract without a
    source file counts as failed.

    ``sources_dir`` holds one ``<ContractType>.json`` per contract type with the
    standard JSON ``input``, the ``compilerVersion``, the fully qualified
    ``contractName`` and the ``constructorTypes``.
    """
    results = dict()
    for name, record in manifest.records.items():
        if not record.is_deployed:
            continue
        source_file = Path(sources_dir) / f"{record.contract_type}.json"
        if not source_file.exists():
            print(f"WARNING: No verification source for {record.contract_type}; skipping {name}.")
            results[name] = VerificationStatus.FAILED
            continue
        source = _load_json(source_file)

        encoded_args = encode_constructor_args(
            source.get("constructorTypes", []), list((record.constructor_args or {}).values())
        )
        job_id = verifier.submit_source(
            address=record.address,
            source=json.dumps(source["input"]),
            contract_name=source["contractName"],
            compiler_version=source["compilerVersion"],
            constructor_args_encoded=encoded_args,
        )
        results[name] = verifier.wait(job_id)
        print(f"(i) {name}: {results[name].value}")
    return results
