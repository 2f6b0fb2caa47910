from pathlib import Path

import casino_deployment

#
# Filesystem
#

PACKAGE_DIR = Path(casino_deployment.__file__).parent
PROJECT_ROOT = PACKAGE_DIR.parent
CONSTRUCTOR_PARAMS_DIR = PROJECT_ROOT / "deployments" / "constructor_params"
ARTIFACTS_DIR = PROJECT_ROOT / "deployments" / "artifacts"

#
# Networks
#

LOCAL_NETWORKS = ["local", "localhost", "hardhat", "anvil"]

#
# Manifest
#

MANIFEST_VERSION = 1

STANDARD_MANIFEST_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}

ZERO_ADDRESS = "0x" + "0" * 40

#
# Transactions
#

DEFAULT_FINALITY_TIMEOUT = 120  # seconds

#
# Randomness
#

DEFAULT_POLL_INTERVAL = 3  # seconds
DEFAULT_POLL_ATTEMPTS = 10
DEFAULT_SYNTHESIZE_AFTER = 1  # unsuccessful polls before a synthetic fulfillment

# six-sided dice
DIE_MIN = 1
DIE_MAX = 6
DICE_PER_ROLL = 2

# mock coordinators number subscriptions and requests from one
MOCK_FIRST_ID = 1

REQUEST_EVENT_ID_FIELDS = ("requestId", "request_id")
SUBSCRIPTION_EVENT_ID_FIELDS = ("subId", "subscriptionId")
SUBSCRIPTION_CREATED_EVENT = "SubscriptionCreated"

#
# Verification
#

EXPLORER_API_URL_ENVVAR = "EXPLORER_API_URL"
EXPLORER_API_KEY_ENVVAR = "ETHERSCAN_API_KEY"
DEFAULT_EXPLORER_API_URL = "https://api.etherscan.io/v2/api"
