# services/__init__.py
from .errors import (
     EngineError,
     ValidationError,
     NotFoundError,
     InvalidStateTransitionError,
     InsufficientFundsError,
     ConcurrentModificationError,
     PayoutFailedError,
     StorageUnavailableError,
)
from .escrow_ledger import (
     compute_entry_hash,
     get_previous_hash,
     verify_chain,
     GENESIS_HASH,
)
from .invoice_generator import InvoiceGenerator
from .milestone_state_machine import MilestoneStateMachine
from .contract_service import ContractService
from .payout_scheduler import PayoutScheduler

__all__ = [
     "EngineError",
     "ValidationError",
     "NotFoundError",
     "InvalidStateTransitionError",
     "InsufficientFundsError",
     "ConcurrentModificationError",
     "PayoutFailedError",
     "StorageUnavailableError",
     "compute_entry_hash",
     "get_previous_hash",
     "verify_chain",
     "GENESIS_HASH",
     "InvoiceGenerator",
     "MilestoneStateMachine",
     "ContractService",
     "PayoutScheduler",
]
