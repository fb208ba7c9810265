"""Transaction submission with bounded retries and already-applied detection.

A submission is one logical write (one instruction list).  Each attempt
fetches a fresh blockhash, so a retried attempt has a new signature; before
resending, every earlier signature of the same submission is checked and a
landed one counts as success.  This keeps retries of non-idempotent
instructions from applying twice.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from solders.instruction import Instruction
from solders.keypair import Keypair
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mintctl.exceptions import AlreadyProcessedError, LedgerTransientError
from mintctl.ledger.client import Ledger
from mintctl.models import UploadConfig

logger = logging.getLogger(__name__)


class TransactionSubmitter:
    """Signs, submits and confirms transactions against a :class:`Ledger`.

    Args:
        ledger: RPC wrapper.
        config: Supplies ``ledger_attempts``, ``ledger_backoff_seconds`` and
            ``confirm_timeout_seconds``.
    """

    def __init__(self, ledger: Ledger, config: UploadConfig) -> None:
        self._ledger = ledger
        self._config = config

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        label: str = "transaction",
    ) -> str | None:
        """Submit *instructions* until confirmed.

        Returns:
            The landed signature, or ``None`` when the cluster reported the
            transaction as already processed before any signature of ours
            was seen.

        Raises:
            LedgerFatalError: On a deterministic rejection (not retried).
            LedgerTransientError: When ``ledger_attempts`` are exhausted.
        """
        signatures: list[str] = []
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._config.ledger_attempts),
            wait=wait_exponential(multiplier=self._config.ledger_backoff_seconds, max=30),
            retry=retry_if_exception_type(LedgerTransientError),
            before_sleep=self._log_retry(label),
            reraise=True,
        ):
            with attempt:
                for earlier in signatures:
                    if await self._ledger.signature_landed(earlier):
                        logger.info("%s: earlier attempt %s landed, not resending", label, earlier)
                        return earlier

                try:
                    signature = await self._ledger.send(instructions, signers)
                except AlreadyProcessedError:
                    logger.info("%s: already processed", label)
                    return signatures[-1] if signatures else None

                signatures.append(signature)
                await self._ledger.confirm(signature, self._config.confirm_timeout_seconds)
                logger.info("%s confirmed: %s", label, signature)
                return signature
        return None

    @staticmethod
    def _log_retry(label: str):
        def _before_sleep(retry_state: Any) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "%s: attempt %d failed (%s), retrying", label, retry_state.attempt_number, exc
            )

        return _before_sleep
