"""Constants, ABIs and EIP-712 definitions for the gasless relay contract."""

from enum import Enum

BPS_DENOMINATOR = 10_000
UINT256_MAX = 2**256 - 1

DEFAULT_EIP712_NAME = "SlipstreamGaslessProxy"
DEFAULT_EIP712_VERSION = "1"


class SignatureSchemeName(str, Enum):
    """Signature schemes understood by deployed relay contract versions."""

    TYPED_DATA = "typed_data"
    PACKED_HASH = "packed_hash"
    AUTO = "auto"


EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

GASLESS_TRANSFER_TYPES = {
    "Transfer": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "token", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "relayerFee", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ]
}

PACKED_MESSAGE_TYPES = (
    "address",
    "address",
    "address",
    "address",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
)

# Known revert fragments (lower-cased) and the error kind they map to, checked in order.
REVERT_REASON_PATTERNS = (
    ("insufficient allowance", "insufficient_allowance"),
    ("exceeds allowance", "insufficient_allowance"),
    ("insufficient balance", "insufficient_balance"),
    ("exceeds balance", "insufficient_balance"),
    ("invalid signature", "signature_mismatch"),
    ("ecdsainvalidsignature", "signature_mismatch"),
    ("invalid nonce", "stale_nonce"),
    ("transaction expired", "deadline_expired"),
    ("deadline", "deadline_expired"),
    ("expired", "deadline_expired"),
)

_TRANSACTION_REQUEST_COMPONENTS = [
    {"internalType": "address", "name": "fromAddress", "type": "address"},
    {"internalType": "address", "name": "toAddress", "type": "address"},
    {"internalType": "address", "name": "tokenContract", "type": "address"},
    {"internalType": "uint256", "name": "transferAmount", "type": "uint256"},
    {"internalType": "uint256", "name": "relayerServiceFee", "type": "uint256"},
    {"internalType": "uint256", "name": "transactionNonce", "type": "uint256"},
    {"internalType": "uint256", "name": "expirationDeadline", "type": "uint256"},
]

_PERMIT_COMPONENTS = [
    {"internalType": "uint256", "name": "approvalValue", "type": "uint256"},
    {"internalType": "uint256", "name": "permitDeadline", "type": "uint256"},
    {"internalType": "uint8", "name": "signatureV", "type": "uint8"},
    {"internalType": "bytes32", "name": "signatureR", "type": "bytes32"},
    {"internalType": "bytes32", "name": "signatureS", "type": "bytes32"},
]

_REQUEST_INPUT = {
    "components": _TRANSACTION_REQUEST_COMPONENTS,
    "internalType": "struct GaslessTransactionRequest",
    "name": "transactionRequest",
    "type": "tuple",
}

_PERMIT_INPUT = {
    "components": _PERMIT_COMPONENTS,
    "internalType": "struct ERC2612PermitSignature",
    "name": "permitSignatureData",
    "type": "tuple",
}

GASLESS_PROXY_ABI = [
    {
        "inputs": [{"internalType": "address", "name": "userAddress", "type": "address"}],
        "name": "getCurrentUserNonce",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "tokenAddress", "type": "address"}],
        "name": "checkERC2612PermitSupport",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "CONTRACT_DOMAIN_SEPARATOR",
        "outputs": [{"internalType": "bytes32", "name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            _REQUEST_INPUT,
            {"internalType": "bytes", "name": "userSignature", "type": "bytes"},
        ],
        "name": "processStandardGaslessTransfer",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            _REQUEST_INPUT,
            {"internalType": "bytes", "name": "userSignature", "type": "bytes"},
            _PERMIT_INPUT,
        ],
        "name": "processPermitBasedGaslessTransfer",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {**_REQUEST_INPUT, "name": "transactionRequests", "type": "tuple[]"},
            {"internalType": "bytes[]", "name": "userSignatures", "type": "bytes[]"},
        ],
        "name": "processBatchStandardTransfers",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {**_REQUEST_INPUT, "name": "transactionRequests", "type": "tuple[]"},
            {"internalType": "bytes[]", "name": "userSignatures", "type": "bytes[]"},
            {**_PERMIT_INPUT, "name": "permitSignatureDataList", "type": "tuple[]"},
        ],
        "name": "processBatchPermitBasedTransfers",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

ERC20_ABI = [
    {
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "owner", "type": "address"},
            {"internalType": "address", "name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "symbol",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Pyth price feed ids used by the reference deployment.
USDC_USD_PRICE_FEED_ID = "0xeaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a"
PYUSD_USD_PRICE_FEED_ID = "0x8f218655050a1476b780185e89f19d2b1e1f49e9bd629efad6ac547a946bf6ab"
