"""Centralized configuration management for ParallelPay.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for all services."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Network Configuration
    chain_id: int = Field(default=338, description="Cronos Testnet")
    token_address: str = Field(
        default="0xc01efAaF7C5C61bEbFAeb358E1161b537b8bC0e0",
        description="devUSDC.e on Cronos Testnet",
    )
    token_name: str = Field(default="USD Coin", description="EIP-712 domain name of the token")
    token_version: str = Field(default="2", description="EIP-712 domain version of the token")
    currency: str = Field(default="USDC.e")

    # Wallets
    seller_address: str = Field(default="", description="Recipient of paid requests")
    buyer_private_key: str = Field(default="", description="Buyer agent signing key")
    treasury_private_key: str = Field(default="", description="Escrow treasury key used for refunds")

    # Settlement authority (x402 facilitator)
    facilitator_url: str = Field(default="https://facilitator.cronoslabs.org/v2/x402")
    verify_timeout_seconds: float = Field(default=10.0, gt=0)
    settle_timeout_seconds: float = Field(default=30.0, gt=0)

    # Service URLs and Ports
    seller_host: str = Field(default="0.0.0.0")
    seller_port: int = Field(default=3001)
    seller_url: str = Field(default="http://localhost:3001")

    # Monitor -> seller ingestion security
    monitor_secret: str = Field(
        default="change_me_in_production",
        description="Shared secret for HMAC refund ingestion signatures",
    )

    # Database
    database_path: str = Field(default="./parallelpay.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Payment Configuration (smallest token units, USDC.e has 6 decimals)
    premium_data_price: int = Field(default=100_000, ge=0)
    ai_inference_price: int = Field(default=500_000, ge=0)
    stream_creation_price: int = Field(default=1_000_000, ge=0)
    authorization_validity_seconds: int = Field(default=3600, gt=0)

    # Receipt queries
    default_query_count: int = Field(default=20, gt=0)
    max_query_count: int = Field(default=100, gt=0)


# Global config instance
config = Config()


def validate_config_for_service(
    service: Literal["seller", "buyer", "monitor"], settings: Config = config
) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.
        settings: Configuration to check. Defaults to the global config.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if service == "seller":
        if not settings.seller_address:
            errors.append("SELLER_ADDRESS must be set")
        if not settings.facilitator_url:
            errors.append("FACILITATOR_URL must be set")

    if service == "buyer":
        if not settings.buyer_private_key:
            errors.append("BUYER_PRIVATE_KEY must be set")

    if service == "monitor":
        if not settings.monitor_secret:
            errors.append("MONITOR_SECRET must be set")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
