import re
from pathlib import Path

#
# Filesystem
#

DEFAULT_LEDGER_DIR = Path("ledgers")
LEDGER_FILE_SUFFIX = ".json"
PLAN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

#
# Plan documents
#

DEPLOYER_VARIABLE = "deployer"
ENCODE_KEY = "$encode"
DEFAULT_INITIALIZER = "initialize"

#
# Chain
#

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
EMPTY_BYTES32 = b"\x00" * 32

# EIP1967 slots - https://eips.ethereum.org/EIPS/eip-1967
EIP1967_IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103

# UUPS proxies (OpenZeppelin UUPSUpgradeable)
UUPS_UPGRADE_ABI = {
    "type": "function",
    "name": "upgradeToAndCall",
    "stateMutability": "payable",
    "inputs": [
        {"name": "newImplementation", "type": "address"},
        {"name": "data", "type": "bytes"},
    ],
    "outputs": [],
}

# Transparent proxies are upgraded through their ProxyAdmin (OpenZeppelin 5.x)
PROXY_ADMIN_UPGRADE_ABI = {
    "type": "function",
    "name": "upgradeAndCall",
    "stateMutability": "payable",
    "inputs": [
        {"name": "proxy", "type": "address"},
        {"name": "implementation", "type": "address"},
        {"name": "data", "type": "bytes"},
    ],
    "outputs": [],
}

#
# Submission defaults
#

DEFAULT_CONFIRMATIONS = 2
DEFAULT_POLL_INTERVAL = 2.0  # seconds
DEFAULT_MAX_POLL_INTERVAL = 30.0  # seconds
DEFAULT_CONFIRMATION_TIMEOUT = 600.0  # seconds
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BACKOFF = 1.0  # seconds
DEFAULT_STUCK_AFTER = 10  # polls without inclusion
DEFAULT_FEE_BUMP = 1.2
MIN_FEE_BUMP = 1.1  # nodes reject replacements below +10%
DEFAULT_MAX_FEE_BUMPS = 3
DEFAULT_GAS_MULTIPLIER = 1.2

#
# Environment
#

PRIVATE_KEY_ENVVAR = "DEPLOYER_PRIVATE_KEY"
RPC_URL_ENVVAR = "RPC_URL"
