"""
Signing authority - signs and submits compiled messages.

The split flow never holds keys itself; it hands each compiled message to a
WalletSigner, which either returns a signature or reports that the user
declined to sign.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import structlog
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from solsplit.config import SolsplitConfig, get_config
from solsplit.node.interface import LedgerInterface

logger = structlog.get_logger(__name__)


@dataclass
class SignResult:
    """Outcome of a sign-and-submit request."""

    signature: Optional[str] = None
    declined: bool = False

    @classmethod
    def submitted(cls, signature: str) -> "SignResult":
        return cls(signature=signature)

    @classmethod
    def user_declined(cls) -> "SignResult":
        return cls(declined=True)


class WalletSigner(ABC):
    """
    External signing authority.

    Implementations sign the message with the payer's key and submit it.
    A user refusing to sign is reported as ``SignResult.user_declined()``;
    any other failure is raised.
    """

    @property
    @abstractmethod
    def pubkey(self) -> Pubkey:
        """The payer / authority public key."""
        pass

    @abstractmethod
    async def sign_and_submit(self, message: MessageV0) -> SignResult:
        """
        Sign a compiled message and submit it to the network.

        Args:
            message: Compiled v0 message with the payer as fee payer

        Returns:
            SignResult holding the transaction signature, or a decline
        """
        pass


class KeypairWallet(WalletSigner):
    """
    Signs with a local keypair and submits through the ledger.

    Supports loading keys from:
    - File path (Solana CLI JSON byte array)
    - Base58-encoded secret key (for environment variable configuration)

    An optional ``approve`` callback is asked before every signature;
    returning False declines the request.
    """

    def __init__(
        self,
        ledger: LedgerInterface,
        keypair: Optional[Keypair] = None,
        approve: Optional[Callable[[MessageV0], bool]] = None,
        config: Optional[SolsplitConfig] = None,
    ):
        self.ledger = ledger
        self.config = config or get_config()
        self.approve = approve
        self._keypair = keypair

    @classmethod
    def from_file(cls, ledger: LedgerInterface, key_path: str, **kwargs) -> "KeypairWallet":
        """Load a keypair from a Solana CLI keypair file."""
        path = Path(key_path)
        if not path.exists():
            raise FileNotFoundError(f"Keypair file not found: {key_path}")

        secret = json.loads(path.read_text())
        keypair = Keypair.from_bytes(bytes(secret))
        logger.info("keypair_loaded", path=key_path, pubkey=str(keypair.pubkey()))
        return cls(ledger, keypair, **kwargs)

    @classmethod
    def from_base58(cls, ledger: LedgerInterface, secret: str, **kwargs) -> "KeypairWallet":
        """Load a keypair from a base58-encoded secret key."""
        keypair = Keypair.from_base58_string(secret.strip())
        logger.info("keypair_loaded_from_base58", pubkey=str(keypair.pubkey()))
        return cls(ledger, keypair, **kwargs)

    @classmethod
    def from_config(cls, ledger: LedgerInterface, config: Optional[SolsplitConfig] = None, **kwargs) -> "KeypairWallet":
        """Load the keypair named by the configuration."""
        config = config or get_config()
        if config.keypair_path:
            return cls.from_file(ledger, config.keypair_path, config=config, **kwargs)
        if config.keypair_base58:
            return cls.from_base58(ledger, config.keypair_base58, config=config, **kwargs)
        raise ValueError("No keypair configured")

    @property
    def is_loaded(self) -> bool:
        return self._keypair is not None

    @property
    def pubkey(self) -> Pubkey:
        if not self._keypair:
            raise RuntimeError("No keypair loaded")
        return self._keypair.pubkey()

    async def sign_and_submit(self, message: MessageV0) -> SignResult:
        if not self._keypair:
            raise RuntimeError("No keypair loaded")

        if self.approve is not None and not self.approve(message):
            logger.info("signature_declined", pubkey=str(self.pubkey))
            return SignResult.user_declined()

        tx = VersionedTransaction(message, [self._keypair])
        signature = await self.ledger.send_transaction(tx)
        logger.debug("transaction_signed", signature=signature[:16] + "...")
        return SignResult.submitted(signature)


def generate_test_wallet(ledger: LedgerInterface) -> KeypairWallet:
    """
    Create a wallet with a new random keypair.

    WARNING: Do not use in production. The key is not persisted.
    """
    wallet = KeypairWallet(ledger, Keypair())
    logger.warning("test_keypair_generated", pubkey=str(wallet.pubkey))
    return wallet
