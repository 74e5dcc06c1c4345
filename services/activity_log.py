# services/activity_log.py
"""
Activity Log - append-only, per-contract ordered event stream.

Every state change on a contract appends exactly one event. Sequence
numbers are contiguous per contract starting at 1; callers append inside
the contract's exclusive section (services.contract_lock), so the next
sequence number is always max(seq) + 1 without gaps.

Readers get a lazy generator over committed events in seq order, which is
always a consistent prefix of the stream.
"""
import logging
from typing import Any, Iterator, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import ActivityEvent
from services.errors import StorageUnavailableError

logger = logging.getLogger(__name__)

# Event kinds
CONTRACT_CREATED = "ContractCreated"
MILESTONES_EDITED = "MilestonesEdited"
CONTRACT_CANCELLED = "ContractCancelled"
CONTRACT_DISPUTED = "ContractDisputed"
CONTRACT_COMPLETED = "ContractCompleted"
MILESTONE_FUNDED = "MilestoneFunded"
DELIVERABLE_SUBMITTED = "DeliverableSubmitted"
CHANGES_REQUESTED = "ChangesRequested"
MILESTONE_APPROVED = "MilestoneApproved"
MILESTONE_RELEASED = "MilestoneReleased"
MILESTONE_CANCELLED = "MilestoneCancelled"
ESCROW_REFUNDED = "EscrowRefunded"
PAYOUT_QUEUED = "PayoutQueued"
PAYOUT_PROCESSING = "PayoutProcessing"
PAYOUT_SETTLED = "PayoutSettled"
PAYOUT_RETRY_SCHEDULED = "PayoutRetryScheduled"
PAYOUT_FAILED = "PayoutFailed"
PAYOUT_REQUEUED = "PayoutRequeued"
INVOICE_ISSUED = "InvoiceIssued"

READ_BATCH_SIZE = 100


def last_seq(db: Session, contract_id: int) -> int:
     """Highest sequence number recorded for a contract (0 when empty)."""
     value = (
          db.query(func.max(ActivityEvent.seq))
          .filter(ActivityEvent.contract_id == contract_id)
          .scalar()
     )
     return value or 0


def append(db: Session, contract_id: int, kind: str, payload: Optional[dict[str, Any]] = None) -> ActivityEvent:
     """
     Append an event for a contract and flush it.

     Storage failures are raised as StorageUnavailableError; nothing here
     retries or swallows them.
     """
     try:
          event = ActivityEvent(
               contract_id=contract_id,
               seq=last_seq(db, contract_id) + 1,
               kind=kind,
               payload=payload or {},
          )
          db.add(event)
          db.flush()
     except SQLAlchemyError as e:
          logger.error(f"ACTIVITY_APPEND_FAILED: contract {contract_id} kind={kind} - {e}")
          raise StorageUnavailableError(f"Activity log unavailable: {e}", contract_id=contract_id) from e

     logger.debug(f"ACTIVITY_APPENDED: contract {contract_id} seq={event.seq} kind={kind}")
     return event


def read_from(db: Session, contract_id: int, since_seq: int = 0) -> Iterator[ActivityEvent]:
     """
     Lazily yield events with seq > since_seq in ascending order.

     The upper bound is fixed when iteration starts, so the sequence is
     finite even while other writers keep appending.
     """
     try:
          upper = last_seq(db, contract_id)
     except SQLAlchemyError as e:
          raise StorageUnavailableError(f"Activity log unavailable: {e}", contract_id=contract_id) from e

     cursor = since_seq
     while cursor < upper:
          try:
               batch = (
                    db.query(ActivityEvent)
                    .filter(
                         ActivityEvent.contract_id == contract_id,
                         ActivityEvent.seq > cursor,
                         ActivityEvent.seq <= upper,
                    )
                    .order_by(ActivityEvent.seq)
                    .limit(READ_BATCH_SIZE)
                    .all()
               )
          except SQLAlchemyError as e:
               raise StorageUnavailableError(f"Activity log unavailable: {e}", contract_id=contract_id) from e
          if not batch:
               return
          for event in batch:
               yield event
          cursor = batch[-1].seq


def count_kind(db: Session, contract_id: int, kind: str) -> int:
     return (
          db.query(func.count(ActivityEvent.id))
          .filter(ActivityEvent.contract_id == contract_id, ActivityEvent.kind == kind)
          .scalar()
     )
