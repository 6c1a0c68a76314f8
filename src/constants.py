"""Cronos network constants for the x402 payment flow.

Reference: https://docs.cronos.org/cronos-x402-facilitator/introduction
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict

SCHEMA_VERSION = "1.0.0"
AUTHORIZATION_TYPE = "eip3009"

USDC_DECIMALS = 6
USDC_UNIT = 10**USDC_DECIMALS

# Networks
CRONOS_MAINNET: Dict[str, Any] = {
    "chain_id": 25,
    "name": "Cronos Mainnet",
    "rpc_url": "https://evm.cronos.org",
    "explorer_url": "https://explorer.cronos.org",
}

CRONOS_TESTNET: Dict[str, Any] = {
    "chain_id": 338,
    "name": "Cronos Testnet",
    "rpc_url": "https://evm-t3.cronos.org",
    "explorer_url": "https://explorer.cronos.org/testnet",
}

# USDC.e token contracts per network
TOKENS: Dict[int, Dict[str, str]] = {
    338: {"USDC_E": "0xc01efAaF7C5C61bEbFAeb358E1161b537b8bC0e0"},  # devUSDC.e
    25: {"USDC_E": "0xc21223249CA28397B4B6541dfFaEcC539BfF0c59"},  # bridged USDC.e
}

FACILITATOR_BASE_URL = "https://facilitator.cronoslabs.org/v2/x402"
FACILITATOR_VERIFY_PATH = "/verify"
FACILITATOR_SETTLE_PATH = "/settle"

# EIP-3009 transferWithAuthorization typed data
EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_WITH_AUTHORIZATION_FIELDS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]

# Default prices in USDC.e smallest units
PRICING: Dict[str, Dict[str, Any]] = {
    "premium_data": {"amount": 100_000, "description": "Premium data access"},
    "ai_inference": {"amount": 500_000, "description": "AI inference request"},
    "stream_creation": {"amount": 1_000_000, "description": "SLA-backed stream creation"},
}

# SLA presets. Uptime and error rate are in basis points (9950 == 99.50%).
SLA_PRESETS: Dict[str, Dict[str, Any]] = {
    "strict": {
        "max_latency_ms": 200,
        "min_uptime_percent": 9950,
        "max_error_rate": 50,
        "max_jitter_ms": 50,
        "auto_stop_on_severe_breach": True,
    },
    "moderate": {
        "max_latency_ms": 500,
        "min_uptime_percent": 9900,
        "max_error_rate": 100,
        "max_jitter_ms": 100,
        "auto_stop_on_severe_breach": True,
    },
    "lenient": {
        "max_latency_ms": 1000,
        "min_uptime_percent": 9500,
        "max_error_rate": 500,
        "max_jitter_ms": 200,
        "auto_stop_on_severe_breach": False,
    },
}

# Graduated refund tiers (breach count thresholds within the rolling window)
MODERATE_BREACH_COUNT = 3
SEVERE_BREACH_COUNT = 5
DEFAULT_MINOR_REFUND_PERCENT = 10
DEFAULT_MODERATE_REFUND_PERCENT = 25
DEFAULT_SEVERE_REFUND_PERCENT = 50
CRITICAL_REFUND_PERCENT = 100
DEFAULT_CRITICAL_SEVERE_COUNT = 3
ROLLING_WINDOW_SECONDS = 24 * 60 * 60

# Catastrophic single breaches
CATASTROPHIC_UPTIME_FLOOR = 9900  # 99.00% in basis points
CATASTROPHIC_LATENCY_MULTIPLIER = 2.5

# HTTP headers
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_TX_HASH_HEADER = "X-Payment-Tx-Hash"
MONITOR_SIGNATURE_HEADER = "X-Monitor-Signature"
CORRELATION_ID_HEADER = "X-Correlation-Id"


def get_network_config(chain_id: int) -> Dict[str, Any]:
    """Get network and token configuration by chain ID.

    Raises:
        ValueError: If the chain is not a supported Cronos network.
    """
    if chain_id == CRONOS_MAINNET["chain_id"]:
        return {"network": CRONOS_MAINNET, "tokens": TOKENS[25]}
    if chain_id == CRONOS_TESTNET["chain_id"]:
        return {"network": CRONOS_TESTNET, "tokens": TOKENS[338]}
    raise ValueError(f"Unsupported chain ID: {chain_id}")


def get_explorer_tx_url(tx_hash: str, chain_id: int = 338) -> str:
    network = get_network_config(chain_id)["network"]
    return f"{network['explorer_url']}/tx/{tx_hash}"


def get_explorer_address_url(address: str, chain_id: int = 338) -> str:
    network = get_network_config(chain_id)["network"]
    return f"{network['explorer_url']}/address/{address}"


def format_usdc(amount: int | str) -> str:
    """Format a smallest-unit USDC amount for display, e.g. ``0.100000 USDC.e``."""
    value = int(amount)
    whole, fraction = divmod(value, USDC_UNIT)
    return f"{whole}.{fraction:0{USDC_DECIMALS}d} USDC.e"


def parse_usdc(text: str) -> int:
    """Parse a display amount (``"0.10"`` or ``"0.100000 USDC.e"``) into smallest units.

    Digits beyond six decimals are truncated.
    """
    cleaned = text.replace("USDC.e", "").strip()
    try:
        value = Decimal(cleaned)
    except InvalidOperation as e:
        raise ValueError(f"Invalid USDC amount: {text!r}") from e
    if value < 0:
        raise ValueError(f"Negative USDC amount: {text!r}")
    return int(value * USDC_UNIT)
