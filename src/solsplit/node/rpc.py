"""
Solana JSON-RPC adapter for ledger access.

Provides network access via solana-py's AsyncClient.
"""

import asyncio
from typing import Any, Awaitable, Optional

import httpx
import structlog
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed, Finalized
from solana.rpc.core import RPCException, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from solsplit.config import SolsplitConfig, get_config
from solsplit.node.alt_program import parse_lookup_table
from solsplit.node.interface import (
    BlockReference,
    ConfirmationDepth,
    LedgerInterface,
    LookupTableState,
    NodeConnectionError,
    TransactionSubmitError,
)

logger = structlog.get_logger(__name__)

_COMMITMENTS = {
    ConfirmationDepth.CONFIRMED: Confirmed,
    ConfirmationDepth.FINALIZED: Finalized,
}

# Errors the RPC client raises for transport and node-side failures
_RPC_ERRORS = (httpx.HTTPError, SolanaRpcException, RPCException)


class SolanaRpcAdapter(LedgerInterface):
    """
    JSON-RPC adapter.

    Implements the LedgerInterface using a Solana RPC endpoint. Queries run
    at ``confirmed`` commitment so that freshly extended tables are visible.
    """

    def __init__(self, config: Optional[SolsplitConfig] = None):
        """
        Initialize the RPC adapter.

        Args:
            config: solsplit configuration. Uses global config if not provided.
        """
        self.config = config or get_config()
        self.rpc_url = self.config.rpc_url
        self._client: Optional[AsyncClient] = None

    async def connect(self) -> None:
        """Create the RPC client and check the endpoint is reachable."""
        if self._client is not None:
            return

        self._client = AsyncClient(self.rpc_url, commitment=Confirmed, timeout=30)

        if not await self._client.is_connected():
            await self._client.close()
            self._client = None
            raise NodeConnectionError(f"RPC endpoint not reachable: {self.rpc_url}")

        logger.info("rpc_connected", rpc_url=self.rpc_url)

    async def disconnect(self) -> None:
        """Close the RPC client."""
        if self._client:
            await self._client.close()
            self._client = None
            logger.info("rpc_disconnected")

    async def _call(self, method: str, request: Awaitable[Any]) -> Any:
        """Await an RPC request, mapping client errors to NodeConnectionError."""
        try:
            return await request
        except _RPC_ERRORS as e:
            logger.error("rpc_request_failed", method=method, error=str(e))
            raise NodeConnectionError(f"RPC {method} failed: {e}")

    async def _get_client(self) -> AsyncClient:
        if not self._client:
            await self.connect()
        return self._client

    async def get_slot(self) -> int:
        client = await self._get_client()
        resp = await self._call("getSlot", client.get_slot(Confirmed))
        return int(resp.value)

    async def get_balance(self, pubkey: Pubkey) -> int:
        client = await self._get_client()
        resp = await self._call("getBalance", client.get_balance(pubkey, Confirmed))
        return int(resp.value)

    async def get_latest_blockhash(self) -> BlockReference:
        client = await self._get_client()
        resp = await self._call("getLatestBlockhash", client.get_latest_blockhash(Confirmed))
        return BlockReference(
            blockhash=resp.value.blockhash,
            last_valid_block_height=int(resp.value.last_valid_block_height),
        )

    async def get_fee_for_message(self, message: MessageV0) -> Optional[int]:
        client = await self._get_client()
        resp = await self._call("getFeeForMessage", client.get_fee_for_message(message, Confirmed))
        return None if resp.value is None else int(resp.value)

    async def send_transaction(self, tx: VersionedTransaction) -> str:
        """Submit a signed transaction."""
        client = await self._get_client()
        try:
            resp = await client.send_transaction(
                tx,
                opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
            )
        except _RPC_ERRORS as e:
            logger.error("tx_submit_failed", error=str(e))
            raise TransactionSubmitError(f"Transaction submission failed: {e}")

        signature = str(resp.value)
        logger.info("tx_submitted", signature=signature)
        return signature

    async def confirm_transaction(
        self,
        signature: str,
        reference: BlockReference,
        depth: ConfirmationDepth = ConfirmationDepth.CONFIRMED,
    ) -> bool:
        """Wait for confirmation until the blockhash expires or the timeout hits."""
        client = await self._get_client()
        commitment: Commitment = _COMMITMENTS[depth]

        try:
            resp = await asyncio.wait_for(
                client.confirm_transaction(
                    Signature.from_string(signature),
                    commitment,
                    last_valid_block_height=reference.last_valid_block_height,
                ),
                timeout=self.config.confirm_timeout_seconds,
            )
        except (UnconfirmedTxError, asyncio.TimeoutError):
            logger.warning("tx_confirmation_timeout", signature=signature, depth=depth.value)
            return False
        except _RPC_ERRORS as e:
            raise NodeConnectionError(f"Confirmation of {signature} failed: {e}")

        status = resp.value[0] if resp.value else None
        if status is None:
            return False

        if status.err is not None:
            raise TransactionSubmitError(f"Transaction {signature} failed: {status.err}")

        logger.info("tx_confirmed", signature=signature, depth=depth.value)
        return True

    async def get_lookup_table(self, address: Pubkey) -> Optional[LookupTableState]:
        client = await self._get_client()
        resp = await self._call("getAccountInfo", client.get_account_info(address, Confirmed))
        if resp.value is None:
            return None
        return parse_lookup_table(address, bytes(resp.value.data))
