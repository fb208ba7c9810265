"""Ledger access: RPC client, transaction submitter, program instructions.

Public API
----------
.. autoclass:: Ledger
.. autoclass:: SolanaLedgerClient
.. autoclass:: TransactionSubmitter
.. autoclass:: CandyMachineProgram
"""

from mintctl.ledger.client import Ledger, SolanaLedgerClient
from mintctl.ledger.program import CandyMachineProgram
from mintctl.ledger.submitter import TransactionSubmitter

__all__ = [
    "CandyMachineProgram",
    "Ledger",
    "SolanaLedgerClient",
    "TransactionSubmitter",
]
