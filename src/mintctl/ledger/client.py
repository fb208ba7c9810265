"""Ledger RPC client wrapper.

:class:`SolanaLedgerClient` wraps solana-py's ``AsyncClient`` and translates
its failures into the :mod:`mintctl.exceptions` ledger taxonomy:

* "already been processed" -> :class:`AlreadyProcessedError`
* blockhash expiry, node behind, transport errors, confirmation timeout
  -> :class:`LedgerTransientError`
* anything else the cluster rejects -> :class:`LedgerFatalError`

The :class:`Ledger` base class is the seam the submitter, reconciliation
loop and lifecycle operations depend on.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Sequence

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

from mintctl.exceptions import AlreadyProcessedError, LedgerFatalError, LedgerTransientError

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "blockhash not found",
    "node is behind",
    "node is unhealthy",
    "too many requests",
)

_LANDED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


class _Pending(Exception):
    """Signature not yet confirmed; polled again by :meth:`SolanaLedgerClient.confirm`."""


def classify_rpc_error(message: str) -> type[Exception]:
    """Return the ledger exception class for an RPC error *message*."""
    lowered = message.lower()
    if "already been processed" in lowered:
        return AlreadyProcessedError
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return LedgerTransientError
    return LedgerFatalError


class Ledger(abc.ABC):
    """Read and write access to the ledger used by mintctl."""

    @abc.abstractmethod
    async def get_account_data(self, address: Pubkey) -> bytes | None:
        """Return the account's data, or ``None`` if it does not exist."""

    @abc.abstractmethod
    async def get_balance(self, address: Pubkey) -> int:
        """Return the account's balance in lamports."""

    @abc.abstractmethod
    async def minimum_balance_for_rent_exemption(self, size: int) -> int: ...

    @abc.abstractmethod
    async def send(self, instructions: Sequence[Instruction], signers: Sequence[Keypair]) -> str:
        """Sign with *signers* (the first pays fees), submit, return the signature."""

    @abc.abstractmethod
    async def confirm(self, signature: str, timeout: float) -> None:
        """Wait until *signature* is confirmed.

        Raises:
            LedgerFatalError: If the transaction landed with an error.
            LedgerTransientError: If it is not confirmed within *timeout*.
        """

    @abc.abstractmethod
    async def signature_landed(self, signature: str) -> bool:
        """Return ``True`` if *signature* is confirmed without error."""

    async def close(self) -> None:
        """Release network resources."""


class SolanaLedgerClient(Ledger):
    """:class:`Ledger` backed by a Solana JSON-RPC endpoint.

    Usage::

        ledger = SolanaLedgerClient("https://api.devnet.solana.com")
        signature = await ledger.send([ix], [payer])
        await ledger.confirm(signature, timeout=60)
        await ledger.close()
    """

    def __init__(self, rpc_url: str, client: AsyncClient | None = None) -> None:
        self.rpc_url = rpc_url
        self._client = client or AsyncClient(rpc_url, commitment=Confirmed)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_account_data(self, address: Pubkey) -> bytes | None:
        resp = await self._call("getAccountInfo", self._client.get_account_info(address))
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def get_balance(self, address: Pubkey) -> int:
        resp = await self._call("getBalance", self._client.get_balance(address))
        return resp.value

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        resp = await self._call(
            "getMinimumBalanceForRentExemption",
            self._client.get_minimum_balance_for_rent_exemption(size),
        )
        return resp.value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send(self, instructions: Sequence[Instruction], signers: Sequence[Keypair]) -> str:
        blockhash = (
            await self._call("getLatestBlockhash", self._client.get_latest_blockhash())
        ).value.blockhash
        tx = Transaction.new_signed_with_payer(
            list(instructions), signers[0].pubkey(), list(signers), blockhash
        )
        resp = await self._call(
            "sendTransaction",
            self._client.send_raw_transaction(
                bytes(tx), opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            ),
        )
        signature = str(resp.value)
        logger.debug("Sent transaction %s", signature)
        return signature

    async def confirm(self, signature: str, timeout: float) -> None:
        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                stop=stop_after_delay(timeout),
                retry=retry_if_exception_type(_Pending),
                reraise=True,
            ):
                with attempt:
                    if not await self.signature_landed(signature):
                        raise _Pending(signature)
        except _Pending:
            raise LedgerTransientError(
                f"transaction {signature} not confirmed within {timeout:.0f}s"
            ) from None

    async def signature_landed(self, signature: str) -> bool:
        resp = await self._call(
            "getSignatureStatuses",
            self._client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            ),
        )
        status = resp.value[0]
        if status is None:
            return False
        if status.err is not None:
            raise LedgerFatalError(
                f"transaction {signature} failed: {status.err}", reason=str(status.err)
            )
        return status.confirmation_status in _LANDED

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    async def _call(self, method: str, awaitable):
        try:
            return await awaitable
        except RPCException as exc:
            message = str(exc)
            error_class = classify_rpc_error(message)
            if error_class is LedgerFatalError:
                raise LedgerFatalError(f"{method} rejected: {message}", reason=message) from exc
            raise error_class(f"{method}: {message}") from exc
        except (SolanaRpcException, httpx.HTTPError) as exc:
            raise LedgerTransientError(f"{method} failed: {exc}") from exc
