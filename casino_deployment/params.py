import heapq
import re
import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from eth_utils import encode_hex, keccak
from web3 import Web3

from casino_deployment.constants import ARTIFACTS_DIR
from casino_deployment.exceptions import ConfigError, DependencyCycle
from casino_deployment.manifest import Manifest
from casino_deployment.utils import _load_yaml

CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
CONTRACT_TYPE_KEY = "contract_type"
CONTRACT_DEPENDS_ON_KEY = "depends_on"

DEFAULT_ADMIN_ROLE = "DEFAULT_ADMIN_ROLE"

AMOUNT_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s+(wei|gwei|ether)\s*$")


class VariableContext:
    def __init__(
        self,
        unit_name: str,
        constants: typing.Dict[str, Any] = None,
    ):
        self.unit_name = unit_name
        self.constants = constants or dict()


class ResolutionContext(NamedTuple):
    """What references are resolved against: confirmed addresses and the signer."""

    manifest: Manifest
    deployer_address: str


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, context: ResolutionContext) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        return isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self, context: ResolutionContext) -> Any:
        return context.deployer_address

    def __repr__(self) -> str:
        return "$deployer"


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            raw_value = context.constants[constant_name]
        except KeyError:
            raise ConfigError(
                context.unit_name, f"constant '{constant_name}' not found in deployment file"
            )
        self.constant_value = _process_raw_value(raw_value, context)
        self.constant_name = constant_name

    @classmethod
    def is_constant(cls, value: str, context: VariableContext) -> bool:
        """Returns True if the variable names a deployment constant."""
        return value in context.constants

    def resolve(self, context: ResolutionContext) -> Any:
        return _resolve_param(self.constant_value, context)

    def __repr__(self) -> str:
        return f"${self.constant_name}"


class Role(Variable):
    """An AccessControl role identifier, i.e. keccak256 of the role name."""

    ROLE_PREFIX = "role:"

    def __init__(self, variable: str):
        self.role_name = variable[len(self.ROLE_PREFIX) :]

    @classmethod
    def is_role(cls, value: str) -> bool:
        return value.startswith(cls.ROLE_PREFIX)

    def resolve(self, context: ResolutionContext) -> Any:
        if self.role_name == DEFAULT_ADMIN_ROLE:
            return "0x" + "00" * 32
        return encode_hex(keccak(text=self.role_name))

    def __repr__(self) -> str:
        return f"${self.ROLE_PREFIX}{self.role_name}"


class ContractName(Variable):
    """The confirmed address of another unit."""

    def __init__(self, contract_name: str, context: VariableContext):
        self.contract_name = contract_name
        self.requested_by = context.unit_name

    def resolve(self, context: ResolutionContext) -> Any:
        return context.manifest.address_of(self.contract_name, requested_by=self.requested_by)

    def __repr__(self) -> str:
        return f"${self.contract_name}"


def _resolve_param(value: Any, context: ResolutionContext) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v, context) for v in value]

    if isinstance(value, Variable):
        return value.resolve(context)

    return value  # literally a value


def _resolve_params(parameters: OrderedDict, context: ResolutionContext) -> OrderedDict:
    resolved_parameters = OrderedDict()
    for name, value in parameters.items():
        resolved_parameters[name] = _resolve_param(value, context)

    return resolved_parameters


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable[len(Variable.VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount()
    elif Role.is_role(variable):
        return Role(variable)
    elif Constant.is_constant(variable, context):
        return Constant(variable, context)
    else:
        return ContractName(variable, context)


def _parse_amount(value: str) -> Optional[int]:
    """Parses '<n> ether|gwei|wei' into wei."""
    match = AMOUNT_PATTERN.match(value)
    if not match:
        return None
    amount, unit = match.groups()
    return Web3.to_wei(Decimal(amount), unit)


def _process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        return _variable_from_value(value, variable_context)

    if isinstance(value, str):
        amount = _parse_amount(value)
        if amount is not None:
            return amount

    return value


def _process_raw_values(values: typing.Mapping, variable_context: VariableContext) -> OrderedDict:
    processed_parameters = OrderedDict()
    for name, value in values.items():
        processed_parameters[name] = _process_raw_value(value, variable_context)

    return processed_parameters


def _referenced_units(value: Any) -> List[str]:
    if isinstance(value, list):
        return [name for v in value for name in _referenced_units(v)]
    if isinstance(value, ContractName):
        return [value.contract_name]
    if isinstance(value, Constant):
        return _referenced_units(value.constant_value)
    return []


# Units


class DeploymentUnit(NamedTuple):
    """A named contract to deploy plus its constructor configuration."""

    name: str
    contract_type: str
    constructor_args: typing.OrderedDict[str, Any]
    depends_on: Tuple[str, ...] = ()

    def resolve(self, context: ResolutionContext) -> OrderedDict:
        """
        Resolves every constructor argument. References to units without a
        confirmed address raise UnresolvedDependency.
        """
        return _resolve_params(self.constructor_args, context)


def make_unit(
    name: str,
    constructor_args: Optional[typing.Mapping] = None,
    depends_on: typing.Iterable[str] = (),
    contract_type: Optional[str] = None,
    constants: Optional[Dict[str, Any]] = None,
) -> DeploymentUnit:
    """Builds a unit from raw values, turning '$...' strings into variables."""
    context = VariableContext(unit_name=name, constants=constants)
    processed = _process_raw_values(constructor_args or OrderedDict(), context)

    dependencies = list()
    for dependency in [*depends_on, *_referenced_units(list(processed.values()))]:
        if dependency != name and dependency not in dependencies:
            dependencies.append(dependency)

    return DeploymentUnit(
        name=name,
        contract_type=contract_type or name,
        constructor_args=processed,
        depends_on=tuple(dependencies),
    )


def topological_order(units: typing.Sequence[DeploymentUnit]) -> List[DeploymentUnit]:
    """
    Orders units so that every unit comes after the units it depends on.
    Ties are broken by declaration order. Dependencies outside ``units``
    are not ordering constraints; they must already be deployed.
    """
    position = dict()
    for index, unit in enumerate(units):
        if unit.name in position:
            raise ConfigError(unit.name, "duplicate unit name")
        position[unit.name] = index

    in_degree = {unit.name: 0 for unit in units}
    dependents = {unit.name: list() for unit in units}
    for unit in units:
        for dependency in unit.depends_on:
            if dependency in position:
                in_degree[unit.name] += 1
                dependents[dependency].append(unit.name)

    ready = [position[name] for name, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    ordered = list()
    while ready:
        unit = units[heapq.heappop(ready)]
        ordered.append(unit)
        for dependent in dependents[unit.name]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, position[dependent])

    if len(ordered) != len(units):
        remaining = sorted((n for n, d in in_degree.items() if d > 0), key=position.get)
        raise DependencyCycle(remaining[0], f"dependency cycle among {', '.join(remaining)}")

    return ordered


# Deployment files


def _get_units(config: typing.Dict, constants: typing.Dict[str, Any]) -> List[DeploymentUnit]:
    units = list()
    for contract_info in config["contracts"]:
        if isinstance(contract_info, str):
            units.append(make_unit(contract_info))
            continue

        if not isinstance(contract_info, dict) or len(contract_info) != 1:
            raise ConfigError("contracts", "Malformed contracts YAML.")

        contract_name = list(contract_info.keys())[0]  # only one entry
        contract_data = contract_info[contract_name] or dict()
        if not isinstance(contract_data, dict):
            raise ConfigError(contract_name, "Malformed contract entry.")

        constructor_params = contract_data.get(CONTRACT_CONSTRUCTOR_PARAMETER_KEY) or OrderedDict()
        if not isinstance(constructor_params, dict):
            raise ConfigError(contract_name, "constructor parameters must be a mapping")

        units.append(
            make_unit(
                name=contract_name,
                constructor_args=constructor_params,
                depends_on=[
                    dependency
                    for dependency in contract_data.get(CONTRACT_DEPENDS_ON_KEY) or ()
                    if dependency not in constants
                ],
                contract_type=contract_data.get(CONTRACT_TYPE_KEY),
                constants=constants,
            )
        )
    return units


class DeploymentConfig:
    """A parsed deployment file: units to deploy plus the raw post-deployment phases."""

    def __init__(self, config: typing.Dict, path: Optional[Path] = None):
        self.path = path
        self.config = config
        self._validate()

        deployment = config["deployment"]
        self.name = deployment.get("name", deployment["network"])
        self.network = deployment["network"]
        self.chain_id = deployment.get("chain_id")
        self.constants = config.get("constants") or dict()
        self.units = _get_units(config, self.constants)
        self._validate_dependencies()
        topological_order(self.units)  # fail early on cycles

        self.wiring = config.get("wiring") or list()
        self.funding = config.get("funding") or list()
        self.randomness = config.get("randomness")

    @classmethod
    def from_yaml(cls, filepath: Path) -> "DeploymentConfig":
        config = _load_yaml(filepath)
        return cls(config=config, path=Path(filepath))

    def _validate(self) -> None:
        config = self.config
        if not isinstance(config, dict):
            raise ConfigError(str(self.path), "deployment file must be a mapping")

        deployment = config.get("deployment")
        if not deployment:
            raise ConfigError(str(self.path), "deployment is not set in params file.")
        if not deployment.get("network"):
            raise ConfigError(str(self.path), "network is not set in params file.")

        if not config.get("contracts"):
            raise ConfigError(str(self.path), "params file missing 'contracts' field.")

        for section in ("wiring", "funding"):
            steps = config.get(section) or list()
            if not isinstance(steps, list):
                raise ConfigError(section, f"'{section}' must be a list of steps")

    def _validate_dependencies(self) -> None:
        declared = {unit.name for unit in self.units}
        for unit in self.units:
            for dependency in unit.depends_on:
                if dependency not in declared:
                    raise ConfigError(
                        unit.name, f"dependency '{dependency}' is not declared in deployment file"
                    )

    @property
    def manifest_filepath(self) -> Path:
        """Returns the filepath of the manifest file."""
        artifact_config = self.config.get("artifacts", {})
        artifact_dir = Path(artifact_config.get("dir", ARTIFACTS_DIR))
        filename = artifact_config.get("filename", f"{self.name}.json")
        return artifact_dir / filename

    def variable_context(self, name: str) -> VariableContext:
        return VariableContext(unit_name=name, constants=self.constants)

    def process(self, name: str, value: Any) -> Any:
        """Processes a raw value from any section of the file."""
        return _process_raw_value(value, self.variable_context(name))
