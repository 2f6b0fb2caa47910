class DeploymentError(Exception):
    """Base class for every failure surfaced by the deployment workflow."""

    def __init__(self, name: str, cause: str):
        self.name = name
        self.cause = cause
        super().__init__(f"{name}: {cause}")


class ConfigError(DeploymentError):
    """Raised when a deployment file is malformed."""


class UnresolvedDependency(DeploymentError):
    """Raised when a unit references an address that was never confirmed on-chain."""


class DependencyCycle(DeploymentError):
    """Raised when the declared units cannot be put in a topological order."""


class TransactionReverted(DeploymentError):
    """Raised when a deployment or wiring transaction was rejected or reverted."""


class FinalityTimeout(DeploymentError):
    """Raised when the outcome of a submitted transaction is still unknown."""

    def __init__(self, name: str, cause: str, tx_hash: str = None):
        self.tx_hash = tx_hash
        super().__init__(name, cause)


class WiringVerificationFailed(DeploymentError):
    """Raised when a confirmed wiring transaction did not produce the expected state."""


class FulfillmentTimeout(DeploymentError):
    """Raised when a randomness request was not fulfilled within the polling budget."""

    def __init__(self, name: str, cause: str, request=None):
        self.request = request
        super().__init__(name, cause)


class InvalidRandomness(DeploymentError):
    """Raised when a fulfilled randomness result is out of range."""


class ManifestCorrupt(DeploymentError):
    """Raised when a persisted manifest cannot be read back."""


class VerificationFailed(DeploymentError):
    """Raised when a block explorer rejects submitted source code."""
