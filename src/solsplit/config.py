"""
Configuration management for solsplit.

Supports configuration via environment variables and .env files.
"""

from enum import Enum
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class NetworkType(str, Enum):
    """Solana clusters."""
    MAINNET = "mainnet-beta"
    DEVNET = "devnet"
    TESTNET = "testnet"
    LOCALNET = "localnet"


class SolsplitConfig(BaseSettings):
    """
    Configuration settings for solsplit.

    All settings can be configured via environment variables with the SOLSPLIT_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="SOLSPLIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Network settings
    network: NetworkType = Field(
        default=NetworkType.DEVNET,
        description="Solana cluster to connect to"
    )
    rpc_endpoint: Optional[str] = Field(
        default=None,
        description="Custom JSON-RPC endpoint (optional)"
    )

    # Payer wallet settings
    keypair_path: Optional[str] = Field(
        default=None,
        description="Path to a Solana CLI keypair file (JSON byte array)"
    )
    keypair_base58: Optional[str] = Field(
        default=None,
        description="Base58-encoded secret key (alternative to file path)"
    )

    # Chunking parameters, bounded by the maximum message size
    extend_chunk_size: int = Field(
        default=30,
        ge=1,
        description="Addresses registered per lookup table extension"
    )
    transfer_chunk_size: int = Field(
        default=55,
        ge=1,
        description="Transfers per transaction when compiled against the lookup table"
    )

    # Lookup table lifecycle
    cooldown_slots: int = Field(
        default=512,
        ge=0,
        description="Slots to wait after deactivation before a table can be closed"
    )
    monitor_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Polling interval of the cooldown monitor"
    )
    confirm_timeout_seconds: int = Field(
        default=90,
        ge=1,
        description="Maximum time to wait for a transaction confirmation"
    )

    # Fees
    fallback_fee_lamports: int = Field(
        default=5000,
        ge=0,
        description="Fee used when the network cannot estimate one"
    )

    # Database settings
    database_url: str = Field(
        default="sqlite+aiosqlite:///solsplit.db",
        description="SQLAlchemy database URL for the pending lookup table record"
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format"
    )

    @property
    def rpc_url(self) -> str:
        """Get the JSON-RPC URL based on network."""
        if self.rpc_endpoint:
            return self.rpc_endpoint

        network_urls = {
            NetworkType.MAINNET: "https://api.mainnet-beta.solana.com",
            NetworkType.DEVNET: "https://api.devnet.solana.com",
            NetworkType.TESTNET: "https://api.testnet.solana.com",
            NetworkType.LOCALNET: "http://127.0.0.1:8899",
        }
        return network_urls.get(self.network, "https://api.devnet.solana.com")


# Global config instance
_config: Optional[SolsplitConfig] = None


def get_config() -> SolsplitConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = SolsplitConfig()
    return _config


def set_config(config: SolsplitConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
