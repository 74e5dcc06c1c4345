# models/__init__.py
from .base import Base
from .contract import Contract, ContractStatus
from .milestone import Milestone, MilestoneStatus
from .escrow import EscrowAccount, EscrowEntry, EscrowEntryKind
from .payout import Payout, PayoutItem, PayoutStatus
from .invoice import Invoice, InvoiceKind
from .activity_event import ActivityEvent

__all__ = [
     "Base",
     "Contract",
     "ContractStatus",
     "Milestone",
     "MilestoneStatus",
     "EscrowAccount",
     "EscrowEntry",
     "EscrowEntryKind",
     "Payout",
     "PayoutItem",
     "PayoutStatus",
     "Invoice",
     "InvoiceKind",
     "ActivityEvent",
]
