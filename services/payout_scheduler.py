# services/payout_scheduler.py
"""
Payout Scheduler - turns released escrow into transfers on the payment rail.

Lifecycle:
     QUEUED -> PROCESSING -> SETTLED
                  |
                  v
            RETRY_PENDING -> PROCESSING ... -> FAILED (after max_retries)

- enqueue() runs inside the approving contract's unit of work, so a release
  is never committed without its payout membership.
- process_payout() claims the payout (PROCESSING, fee fixed) and commits,
  calls the rail with no lock and no open write transaction, then records
  the outcome. PROCESSING is the guard against a second concurrent issue;
  the rail's idempotency key guards against a crash between the rail
  accepting and the outcome being recorded.
- Anything the rail adapter raises counts as a failed attempt. PROCESSING
  payouts past the timeout are re-issued with the same key, and those
  re-issues count toward max_retries too, so every payout ends SETTLED or
  FAILED.
- FAILED is terminal and operator-visible; requeue_failed_payout() is the
  manual way back.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from config import PayoutCadence, quantize_money
from models import EscrowEntry, EscrowEntryKind, Milestone, Payout, PayoutItem, PayoutStatus
from models.base import utcnow
from schemas.payout import PayoutResponse
from services import activity_log
from services.contract_lock import KeyedLockRegistry, hold_for_unit_of_work, locked_contract, locked_contracts
from services.errors import (
     ConcurrentModificationError,
     InvalidStateTransitionError,
     NotFoundError,
     PayoutFailedError,
     StorageUnavailableError,
     ValidationError,
)
from services.invoice_generator import InvoiceGenerator
from services.payment_rail import (
     HttpPaymentRail,
     PaymentRail,
     RailResult,
     TransferInstruction,
     payout_idempotency_key,
)

logger = logging.getLogger(__name__)

# Serialises changes to one freelancer's open payouts (taken after contract locks)
freelancer_locks = KeyedLockRegistry()


def payout_payload(payout: Payout, **extra) -> dict:
     """JSON snapshot of a payout's new state for the activity log."""
     payload = PayoutResponse.model_validate(payout).model_dump(mode="json")
     payload.update(extra)
     return payload


class PayoutScheduler:
     """Groups releases into payouts and drives them through the payment rail."""

     def __init__(
          self,
          db: Session,
          rail: Optional[PaymentRail] = None,
          fee_schedule: Optional[config.FeeSchedule] = None,
          policy: Optional[config.PayoutPolicy] = None,
     ):
          self.db = db
          self.rail = rail or HttpPaymentRail()
          self.fee_schedule = fee_schedule or config.FEE_SCHEDULE
          self.policy = policy or config.PAYOUT_POLICY

     # ------------------------------------------------------------------
     # Queries
     # ------------------------------------------------------------------

     @staticmethod
     def get_payout(db: Session, payout_id: int) -> Payout:
          payout = db.query(Payout).filter(Payout.id == payout_id).first()
          if payout is None:
               raise NotFoundError(f"Payout with ID {payout_id} not found", payout_id=payout_id)
          return payout

     @staticmethod
     def list_failed(db: Session) -> list[Payout]:
          """FAILED payouts awaiting operator action, oldest first."""
          return (
               db.query(Payout)
               .filter(Payout.status == PayoutStatus.FAILED)
               .order_by(Payout.id)
               .all()
          )

     @staticmethod
     def active_payout_for_milestone(db: Session, milestone_id: int) -> Optional[Payout]:
          """The non-FAILED payout carrying a milestone, if any."""
          return (
               db.query(Payout)
               .join(PayoutItem, PayoutItem.payout_id == Payout.id)
               .filter(PayoutItem.milestone_id == milestone_id, Payout.status != PayoutStatus.FAILED)
               .first()
          )

     @staticmethod
     def _contract_ids(db: Session, payout_id: int) -> list[int]:
          rows = (
               db.query(PayoutItem.contract_id)
               .filter(PayoutItem.payout_id == payout_id)
               .distinct()
               .all()
          )
          return sorted(row[0] for row in rows)

     def _lock_payout(self, payout_id: int) -> Payout:
          payout = (
               self.db.query(Payout)
               .filter(Payout.id == payout_id)
               .populate_existing()
               .with_for_update()
               .first()
          )
          if payout is None:
               raise NotFoundError(f"Payout with ID {payout_id} not found", payout_id=payout_id)
          return payout

     # ------------------------------------------------------------------
     # Enqueue
     # ------------------------------------------------------------------

     @staticmethod
     def enqueue(db: Session, release_entry: EscrowEntry, cadence: PayoutCadence) -> Payout:
          """
          Attach a release record to a QUEUED payout for its freelancer.

          IMMEDIATE: every release gets its own payout.
          PERIODIC: releases collect on the freelancer's open QUEUED payout
          until the periodic job processes it.

          Must run inside the contract's locked unit of work.

          Raises:
               ValidationError: entry is not a RELEASE record
               ConcurrentModificationError: milestone already in a live payout
          """
          if release_entry.kind != EscrowEntryKind.RELEASE:
               raise ValidationError(
                    f"Escrow entry {release_entry.id} is not a release record",
                    entry_id=release_entry.id,
               )
          existing = PayoutScheduler.active_payout_for_milestone(db, release_entry.milestone_id)
          if existing is not None:
               raise ConcurrentModificationError(
                    f"Milestone {release_entry.milestone_id} is already in payout {existing.id}",
                    milestone_id=release_entry.milestone_id,
                    payout_id=existing.id,
               )

          hold_for_unit_of_work(freelancer_locks.get(release_entry.freelancer_id))

          payout = None
          if cadence == PayoutCadence.PERIODIC:
               payout = (
                    db.query(Payout)
                    .filter(
                         Payout.freelancer_id == release_entry.freelancer_id,
                         Payout.status == PayoutStatus.QUEUED,
                    )
                    .order_by(Payout.id)
                    .populate_existing()
                    .with_for_update()
                    .first()
               )
          if payout is None:
               payout = Payout(
                    freelancer_id=release_entry.freelancer_id,
                    gross_amount=Decimal("0"),
                    status=PayoutStatus.QUEUED,
                    retry_count=0,
               )
               db.add(payout)
               db.flush()
               payout.idempotency_key = payout_idempotency_key(payout.id)

          payout.items.append(PayoutItem(
               milestone_id=release_entry.milestone_id,
               contract_id=release_entry.contract_id,
               release_entry_id=release_entry.id,
               amount=release_entry.amount,
          ))
          payout.gross_amount = quantize_money(payout.gross_amount + release_entry.amount)
          db.flush()

          activity_log.append(db, release_entry.contract_id, activity_log.PAYOUT_QUEUED, payout_payload(
               payout,
               milestone_id=release_entry.milestone_id,
               cadence=cadence.value,
          ))
          logger.info(
               f"📥 PAYOUT_QUEUED: milestone {release_entry.milestone_id} -> payout {payout.id} "
               f"(freelancer {payout.freelancer_id}, gross {payout.gross_amount}, {cadence.value})"
          )
          return payout

     # ------------------------------------------------------------------
     # Processing
     # ------------------------------------------------------------------

     def process_payout(self, payout_id: int) -> Payout:
          """
          Attempt one transfer for a payout.

          SETTLED payouts are returned untouched (no rail call). A
          RETRY_PENDING payout is attempted immediately when called
          directly; the periodic job only picks it up once due.

          Raises:
               ConcurrentModificationError: payout is already PROCESSING
               InvalidStateTransitionError: payout is FAILED
               PayoutFailedError: this attempt exhausted the retry bound
          """
          payout, instruction = self._claim(payout_id)
          if instruction is None:
               return payout
          result = self._issue(instruction)
          return self._record_outcome(payout_id, result)

     def _claim(self, payout_id: int) -> tuple[Payout, Optional[TransferInstruction]]:
          while True:
               contract_ids = self._contract_ids(self.db, payout_id)
               if not contract_ids:
                    self.get_payout(self.db, payout_id)
                    raise ValidationError(f"Payout {payout_id} has no items", payout_id=payout_id)

               with locked_contracts(self.db, contract_ids):
                    payout = self._lock_payout(payout_id)
                    hold_for_unit_of_work(freelancer_locks.get(payout.freelancer_id))
                    # Items are only added under the freelancer lock; re-lock if the set grew meanwhile
                    if not set(self._contract_ids(self.db, payout_id)) <= set(contract_ids):
                         continue
                    return self._claim_locked(payout, contract_ids)

     def _claim_locked(self, payout: Payout, contract_ids: list[int]) -> tuple[Payout, Optional[TransferInstruction]]:
          payout_id = payout.id
          if payout.status == PayoutStatus.SETTLED:
               logger.info(f"PAYOUT_ALREADY_SETTLED: payout {payout_id} - no-op")
               return payout, None
          if payout.status == PayoutStatus.PROCESSING:
               raise ConcurrentModificationError(
                    f"Payout {payout_id} is already being processed",
                    payout_id=payout_id,
               )
          if payout.status == PayoutStatus.FAILED:
               raise InvalidStateTransitionError(
                    f"Payout {payout_id} has failed permanently; requeue it instead",
                    payout_id=payout_id,
               )

          gross = quantize_money(payout.gross_amount)
          fee = self.fee_schedule.fee_for(gross)
          payout.fee_amount = fee
          payout.net_amount = gross - fee
          payout.status = PayoutStatus.PROCESSING
          payout.next_attempt_at = None
          payout.updated_at = utcnow()
          if not payout.idempotency_key:
               payout.idempotency_key = payout_idempotency_key(payout.id)
          self.db.flush()

          for contract_id in contract_ids:
               activity_log.append(self.db, contract_id, activity_log.PAYOUT_PROCESSING, payout_payload(
                    payout,
                    attempt=payout.retry_count + 1,
               ))

          logger.info(
               f"🚀 PAYOUT_CLAIMED: payout {payout_id} gross={gross} fee={fee} net={gross - fee} "
               f"attempt={payout.retry_count + 1}"
          )
          return payout, TransferInstruction(
               payout_id=payout.id,
               freelancer_id=payout.freelancer_id,
               net_amount=payout.net_amount,
               idempotency_key=payout.idempotency_key,
          )

     def _issue(self, instruction: TransferInstruction) -> RailResult:
          """
          Call the rail. Runs with no contract lock held.

          Whatever the adapter raises counts as one failed attempt, so the
          payout always leaves PROCESSING through the retry policy.
          """
          try:
               return self.rail.transfer(instruction)
          except PayoutFailedError as e:
               return RailResult(instruction.payout_id, False, error=e.message)
          except Exception as e:
               logger.exception(f"❌ RAIL_ERROR: payout {instruction.payout_id} - {type(e).__name__}: {e}")
               return RailResult(instruction.payout_id, False, error=f"{type(e).__name__}: {e}")

     def _record_outcome(self, payout_id: int, result: RailResult) -> Payout:
          contract_ids = self._contract_ids(self.db, payout_id)
          failed = False

          with locked_contracts(self.db, contract_ids) as contracts:
               payout = self._lock_payout(payout_id)
               if payout.status != PayoutStatus.PROCESSING:
                    raise ConcurrentModificationError(
                         f"Payout {payout_id} outcome already recorded ({payout.status.value})",
                         payout_id=payout_id,
                    )
               now = utcnow().replace(microsecond=0)

               if result.success:
                    payout.status = PayoutStatus.SETTLED
                    payout.rail_transaction_id = result.rail_transaction_id
                    payout.settled_at = now
                    payout.last_error = None
                    self.db.flush()
                    for contract_id in contract_ids:
                         activity_log.append(self.db, contract_id, activity_log.PAYOUT_SETTLED, payout_payload(payout))
                    self._issue_invoices(payout)
                    for contract in contracts:
                         InvoiceGenerator.generate_completion_if_ready(self.db, contract)
                    logger.info(
                         f"✅ PAYOUT_SETTLED: payout {payout_id} net={payout.net_amount} "
                         f"rail_tx={payout.rail_transaction_id}"
                    )
               else:
                    payout.retry_count += 1
                    payout.last_error = result.error
                    if payout.retry_count >= self.policy.max_retries:
                         payout.status = PayoutStatus.FAILED
                         payout.next_attempt_at = None
                         failed = True
                         kind = activity_log.PAYOUT_FAILED
                    else:
                         payout.status = PayoutStatus.RETRY_PENDING
                         payout.next_attempt_at = now + timedelta(
                              seconds=self.policy.backoff_seconds(payout.retry_count)
                         )
                         kind = activity_log.PAYOUT_RETRY_SCHEDULED
                    self.db.flush()
                    for contract_id in contract_ids:
                         activity_log.append(self.db, contract_id, kind, payout_payload(payout))

          if failed:
               logger.error(
                    f"❌ PAYOUT_FAILED: payout {payout_id} after {payout.retry_count} attempts - "
                    f"{payout.last_error}. Manual action required."
               )
               raise PayoutFailedError(
                    f"Payout {payout_id} failed after {payout.retry_count} attempts",
                    payout_id=payout_id,
                    last_error=payout.last_error,
               )
          if payout.status == PayoutStatus.RETRY_PENDING:
               logger.warning(
                    f"⚠️ PAYOUT_RETRY_SCHEDULED: payout {payout_id} attempt {payout.retry_count} failed "
                    f"({payout.last_error}); next at {payout.next_attempt_at.isoformat()}"
               )
          return payout

     def _issue_invoices(self, payout: Payout) -> list:
          fees = InvoiceGenerator.allocate_fee(payout)
          invoices = []
          for item in payout.items:
               milestone = self.db.get(Milestone, item.milestone_id, populate_existing=True)
               invoices.append(
                    InvoiceGenerator.generate_for_milestone(self.db, milestone, payout, fees[item.milestone_id])
               )
          return invoices

     # ------------------------------------------------------------------
     # Periodic job and operator actions
     # ------------------------------------------------------------------

     def _resume_stale(self, payout_id: int, now: datetime) -> Optional[Payout]:
          """
          Re-issue a payout stuck in PROCESSING (worker died mid-call).

          Uses the stored fee and idempotency key, so the rail sees the same
          transfer again rather than a new one. The lost attempt counts
          toward max_retries; at the bound the payout goes to FAILED instead
          of being re-issued again.
          """
          contract_ids = self._contract_ids(self.db, payout_id)
          cutoff = now - timedelta(seconds=self.policy.processing_timeout_seconds)
          exhausted = False
          with locked_contracts(self.db, contract_ids):
               payout = self._lock_payout(payout_id)
               if payout.status != PayoutStatus.PROCESSING or payout.updated_at > cutoff:
                    return None
               payout.retry_count += 1
               payout.updated_at = now
               if payout.retry_count >= self.policy.max_retries:
                    exhausted = True
                    payout.status = PayoutStatus.FAILED
                    payout.next_attempt_at = None
                    payout.last_error = "processing timed out; rail outcome unknown"
                    self.db.flush()
                    for contract_id in contract_ids:
                         activity_log.append(self.db, contract_id, activity_log.PAYOUT_FAILED, payout_payload(payout))
               else:
                    self.db.flush()
                    instruction = TransferInstruction(
                         payout_id=payout.id,
                         freelancer_id=payout.freelancer_id,
                         net_amount=payout.net_amount,
                         idempotency_key=payout.idempotency_key,
                    )

          if exhausted:
               logger.error(
                    f"❌ PAYOUT_FAILED: payout {payout_id} stuck in PROCESSING after {payout.retry_count} "
                    f"attempts. Check rail key {payout.idempotency_key} before requeueing."
               )
               raise PayoutFailedError(
                    f"Payout {payout_id} failed after {payout.retry_count} attempts",
                    payout_id=payout_id,
                    last_error=payout.last_error,
               )
          logger.warning(
               f"🔁 PAYOUT_RESUMED: payout {payout_id} was PROCESSING past timeout; "
               f"re-issuing (attempt {payout.retry_count + 1})"
          )
          result = self._issue(instruction)
          return self._record_outcome(payout_id, result)

     def sweep_unqueued_releases(self) -> int:
          """
          Enqueue release records that were never attached to any payout.

          Releases whose payout FAILED are left alone; those wait for an
          operator requeue.
          """
          try:
               entry_ids = [
                    row[0]
                    for row in self.db.query(EscrowEntry.id)
                    .filter(
                         EscrowEntry.kind == EscrowEntryKind.RELEASE,
                         EscrowEntry.milestone_id.not_in(select(PayoutItem.milestone_id)),
                    )
                    .order_by(EscrowEntry.id)
                    .all()
               ]
               self.db.commit()
          except SQLAlchemyError as e:
               self.db.rollback()
               raise StorageUnavailableError(f"Storage unavailable: {e}") from e

          swept = 0
          for entry_id in entry_ids:
               entry = self.db.get(EscrowEntry, entry_id)
               with locked_contract(self.db, entry.contract_id):
                    already = (
                         self.db.query(PayoutItem.id)
                         .filter(PayoutItem.milestone_id == entry.milestone_id)
                         .first()
                    )
                    if already is not None:
                         continue
                    self.enqueue(self.db, entry, self.policy.cadence)
               swept += 1
               logger.warning(f"🧹 RELEASE_SWEPT: milestone {entry.milestone_id} had no payout; queued")
          return swept

     def run_due_payouts(self, now: Optional[datetime] = None) -> dict:
          """
          Periodic task body: queue releases that never reached a payout,
          process QUEUED payouts and due RETRY_PENDING payouts, and re-issue
          PROCESSING payouts past the timeout.

          One payout's error never stops the rest of the pass. Returns
          counts per outcome.
          """
          now = now or utcnow()
          summary = {"swept": 0, "settled": 0, "retrying": 0, "failed": 0, "skipped": 0, "errors": 0}
          summary["swept"] = self.sweep_unqueued_releases()

          try:
               due_ids = [
                    row[0]
                    for row in self.db.query(Payout.id)
                    .filter(or_(
                         Payout.status == PayoutStatus.QUEUED,
                         and_(Payout.status == PayoutStatus.RETRY_PENDING, Payout.next_attempt_at <= now),
                    ))
                    .order_by(Payout.id)
                    .all()
               ]
               stale_ids = [
                    row[0]
                    for row in self.db.query(Payout.id)
                    .filter(
                         Payout.status == PayoutStatus.PROCESSING,
                         Payout.updated_at <= now - timedelta(seconds=self.policy.processing_timeout_seconds),
                    )
                    .order_by(Payout.id)
                    .all()
               ]
               self.db.commit()
          except SQLAlchemyError as e:
               self.db.rollback()
               raise StorageUnavailableError(f"Storage unavailable: {e}") from e

          for payout_id in due_ids + stale_ids:
               try:
                    if payout_id in stale_ids:
                         payout = self._resume_stale(payout_id, now)
                         if payout is None:
                              summary["skipped"] += 1
                              continue
                    else:
                         payout = self.process_payout(payout_id)
               except PayoutFailedError:
                    summary["failed"] += 1
                    continue
               except (ConcurrentModificationError, InvalidStateTransitionError) as e:
                    logger.warning(f"PAYOUT_SKIPPED: payout {payout_id} - {e.message}")
                    summary["skipped"] += 1
                    continue
               except Exception as e:
                    logger.exception(f"❌ PAYOUT_CYCLE_ERROR: payout {payout_id} - {type(e).__name__}: {e}")
                    self.db.rollback()
                    summary["errors"] += 1
                    continue

               if payout.status == PayoutStatus.SETTLED:
                    summary["settled"] += 1
               else:
                    summary["retrying"] += 1

          if any(summary.values()):
               logger.info(f"PAYOUT_CYCLE_COMPLETE: {summary}")
          return summary

     def requeue_failed_payout(self, payout_id: int) -> Payout:
          """
          Operator action: move the items of a FAILED payout into a new
          QUEUED payout. The failed payout itself stays FAILED.
          """
          contract_ids = self._contract_ids(self.db, payout_id)
          if not contract_ids:
               self.get_payout(self.db, payout_id)
               raise ValidationError(f"Payout {payout_id} has no items", payout_id=payout_id)

          with locked_contracts(self.db, contract_ids):
               failed = self._lock_payout(payout_id)
               if failed.status != PayoutStatus.FAILED:
                    raise InvalidStateTransitionError(
                         f"Only FAILED payouts can be requeued (payout {payout_id} is {failed.status.value})",
                         payout_id=payout_id,
                    )
               for item in failed.items:
                    active = self.active_payout_for_milestone(self.db, item.milestone_id)
                    if active is not None:
                         raise ConcurrentModificationError(
                              f"Milestone {item.milestone_id} is already in payout {active.id}",
                              milestone_id=item.milestone_id,
                              payout_id=active.id,
                         )

               hold_for_unit_of_work(freelancer_locks.get(failed.freelancer_id))
               payout = Payout(
                    freelancer_id=failed.freelancer_id,
                    gross_amount=Decimal("0"),
                    status=PayoutStatus.QUEUED,
                    retry_count=0,
               )
               self.db.add(payout)
               self.db.flush()
               payout.idempotency_key = payout_idempotency_key(payout.id)
               for item in failed.items:
                    payout.items.append(PayoutItem(
                         milestone_id=item.milestone_id,
                         contract_id=item.contract_id,
                         release_entry_id=item.release_entry_id,
                         amount=item.amount,
                    ))
                    payout.gross_amount = quantize_money(payout.gross_amount + item.amount)
               self.db.flush()

               for contract_id in contract_ids:
                    activity_log.append(self.db, contract_id, activity_log.PAYOUT_REQUEUED, payout_payload(
                         payout,
                         failed_payout_id=failed.id,
                    ))
          logger.info(f"🔁 PAYOUT_REQUEUED: failed payout {payout_id} -> new payout {payout.id}")
          return payout
