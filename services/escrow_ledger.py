# services/escrow_ledger.py
"""
Escrow Ledger - the only code allowed to move money inside custody.

Every movement does two things in the caller's transaction:
1. Adjusts the contract's EscrowAccount totals (locked / released / refunded)
2. Appends an immutable EscrowEntry whose SHA-256 hash covers
   contract_id + milestone_id + kind + amount + timestamp, chained to the
   previous entry of the same contract

Entries are append-only; the (milestone_id, kind) unique constraint gives
each milestone at most one LOCK, one RELEASE and one REFUND.

Verification: recompute hashes, walk the chain, and check account totals
against the entries.
"""
import hashlib
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy.orm import Session
from sqlalchemy import desc

from config import quantize_money
from models import Contract, EscrowAccount, EscrowEntry, EscrowEntryKind, Milestone
from models.base import utcnow
from schemas.milestone import CaptureConfirmation
from services.errors import (
     ConcurrentModificationError,
     InsufficientFundsError,
     InvalidStateTransitionError,
     NotFoundError,
     ValidationError,
)

logger = logging.getLogger(__name__)


# First entry of every contract chain
GENESIS_HASH = "0"


def _normalize_amount(amount: Decimal) -> str:
     """Normalize amount to canonical string for hashing (2 decimal places)."""
     return f"{quantize_money(amount):.2f}"


def _normalize_timestamp(ts: datetime) -> str:
     """Normalize timestamp to ISO format for deterministic hashing."""
     return ts.replace(microsecond=0).isoformat()


def compute_entry_hash(
     contract_id: int,
     milestone_id: int,
     kind: EscrowEntryKind,
     amount: Decimal,
     timestamp: datetime,
     previous_hash: str,
) -> str:
     """
     Compute SHA-256 hash for an escrow entry.

     Input string: contract_id|milestone_id|kind|amount|timestamp|previous_hash.
     Returns 64-char hex string.
     """
     payload = "|".join([
          str(contract_id),
          str(milestone_id),
          kind.value,
          _normalize_amount(amount),
          _normalize_timestamp(timestamp),
          previous_hash,
     ])
     return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def get_account(db: Session, contract_id: int, for_update: bool = False) -> EscrowAccount:
     db.flush()  # populate_existing would discard unflushed totals
     query = db.query(EscrowAccount).filter(EscrowAccount.contract_id == contract_id).populate_existing()
     if for_update:
          query = query.with_for_update()
     account = query.first()
     if account is None:
          raise NotFoundError(f"Escrow account for contract {contract_id} not found", contract_id=contract_id)
     return account


def open_account(db: Session, contract_id: int) -> EscrowAccount:
     """Create the empty escrow account for a new contract."""
     account = EscrowAccount(
          contract_id=contract_id,
          locked_total=Decimal("0"),
          released_total=Decimal("0"),
          refunded_total=Decimal("0"),
          funded_total=Decimal("0"),
     )
     db.add(account)
     db.flush()
     return account


def get_previous_hash(db: Session, contract_id: int) -> str:
     """transaction_hash of the contract's most recent entry, or GENESIS_HASH."""
     last = (
          db.query(EscrowEntry)
          .filter(EscrowEntry.contract_id == contract_id)
          .order_by(desc(EscrowEntry.id))
          .limit(1)
          .first()
     )
     if last is None:
          return GENESIS_HASH
     return last.transaction_hash


def get_entry(db: Session, milestone_id: int, kind: EscrowEntryKind) -> Optional[EscrowEntry]:
     return (
          db.query(EscrowEntry)
          .filter(EscrowEntry.milestone_id == milestone_id, EscrowEntry.kind == kind)
          .first()
     )


def _append_entry(
     db: Session,
     contract: Contract,
     milestone_id: int,
     kind: EscrowEntryKind,
     amount: Decimal,
     capture_ref: Optional[str] = None,
) -> EscrowEntry:
     timestamp = utcnow().replace(microsecond=0)
     previous_hash = get_previous_hash(db, contract.id)
     entry = EscrowEntry(
          contract_id=contract.id,
          milestone_id=milestone_id,
          kind=kind,
          amount=quantize_money(amount),
          freelancer_id=contract.freelancer_id,
          capture_ref=capture_ref,
          transaction_hash=compute_entry_hash(
               contract.id, milestone_id, kind, amount, timestamp, previous_hash
          ),
          previous_hash=previous_hash,
          created_at=timestamp,
     )
     db.add(entry)
     db.flush()
     return entry


def _load_contract(db: Session, contract_id: int) -> Contract:
     contract = db.query(Contract).filter(Contract.id == contract_id).first()
     if contract is None:
          raise NotFoundError(f"Contract with ID {contract_id} not found", contract_id=contract_id)
     return contract


def lock(
     db: Session,
     contract_id: int,
     milestone_id: int,
     amount: Decimal,
     capture: Optional[CaptureConfirmation],
) -> EscrowEntry:
     """
     Take a milestone's captured funds into custody.

     The ledger does not capture money itself; it only records custody once
     the processor confirmed a capture that matches contract, milestone and
     amount exactly.

     Raises:
          InsufficientFundsError: capture missing or not matching
          ConcurrentModificationError: milestone already locked once
     """
     amount = quantize_money(amount)
     if amount <= 0:
          raise ValidationError("Lock amount must be positive", amount=str(amount))
     if capture is None:
          raise InsufficientFundsError(
               f"No capture confirmation for milestone {milestone_id}",
               milestone_id=milestone_id,
          )
     if (
          capture.contract_id != contract_id
          or capture.milestone_id != milestone_id
          or quantize_money(capture.amount) != amount
     ):
          raise InsufficientFundsError(
               f"Capture {capture.capture_ref} does not cover {amount} for milestone {milestone_id}",
               milestone_id=milestone_id,
               captured=str(capture.amount),
               required=str(amount),
          )
     if get_entry(db, milestone_id, EscrowEntryKind.LOCK) is not None:
          raise ConcurrentModificationError(
               f"Milestone {milestone_id} is already funded",
               milestone_id=milestone_id,
          )

     contract = _load_contract(db, contract_id)
     account = get_account(db, contract_id, for_update=True)
     account.locked_total += amount
     account.funded_total += amount
     entry = _append_entry(db, contract, milestone_id, EscrowEntryKind.LOCK, amount, capture.capture_ref)

     logger.info(f"🔒 ESCROW_LOCKED: contract {contract_id} milestone {milestone_id} - {amount} (capture {capture.capture_ref})")
     return entry


def release(db: Session, contract_id: int, milestone_id: int, amount: Decimal) -> EscrowEntry:
     """
     Move a milestone's funds from locked to released custody.

     Returns the RELEASE entry, which is the release record handed to the
     payout scheduler.

     Raises:
          ConcurrentModificationError: milestone already released (no effect)
          InvalidStateTransitionError: funds were never locked or were refunded
     """
     amount = quantize_money(amount)
     if get_entry(db, milestone_id, EscrowEntryKind.RELEASE) is not None:
          raise ConcurrentModificationError(
               f"Funds for milestone {milestone_id} were already released",
               milestone_id=milestone_id,
          )
     lock_entry = get_entry(db, milestone_id, EscrowEntryKind.LOCK)
     if lock_entry is None or get_entry(db, milestone_id, EscrowEntryKind.REFUND) is not None:
          raise InvalidStateTransitionError(
               f"Milestone {milestone_id} has no locked funds to release",
               milestone_id=milestone_id,
          )
     if lock_entry.amount != amount:
          raise ValidationError(
               f"Release amount {amount} does not match locked amount {lock_entry.amount}",
               milestone_id=milestone_id,
          )

     contract = _load_contract(db, contract_id)
     account = get_account(db, contract_id, for_update=True)
     if account.locked_total < amount:
          raise InvalidStateTransitionError(
               f"Locked total {account.locked_total} is below release amount {amount}",
               contract_id=contract_id,
          )
     account.locked_total -= amount
     account.released_total += amount
     entry = _append_entry(db, contract, milestone_id, EscrowEntryKind.RELEASE, amount)

     logger.info(f"💸 ESCROW_RELEASED: contract {contract_id} milestone {milestone_id} - {amount}")
     return entry


def refund_all(db: Session, contract_id: int) -> list[EscrowEntry]:
     """
     Return every still-locked milestone amount to the client.

     Returns the REFUND entries written (empty when nothing was locked).
     """
     contract = _load_contract(db, contract_id)
     account = get_account(db, contract_id, for_update=True)

     locked_entries = (
          db.query(EscrowEntry)
          .filter(EscrowEntry.contract_id == contract_id, EscrowEntry.kind == EscrowEntryKind.LOCK)
          .order_by(EscrowEntry.id)
          .all()
     )
     settled = {
          milestone_id
          for (milestone_id,) in db.query(EscrowEntry.milestone_id).filter(
               EscrowEntry.contract_id == contract_id,
               EscrowEntry.kind.in_([EscrowEntryKind.RELEASE, EscrowEntryKind.REFUND]),
          )
     }

     refunds = []
     for lock_entry in locked_entries:
          if lock_entry.milestone_id in settled:
               continue
          account.locked_total -= lock_entry.amount
          account.refunded_total += lock_entry.amount
          refunds.append(
               _append_entry(db, contract, lock_entry.milestone_id, EscrowEntryKind.REFUND, lock_entry.amount)
          )

     if account.locked_total != 0:
          raise InvalidStateTransitionError(
               f"Locked total {account.locked_total} left after refund for contract {contract_id}",
               contract_id=contract_id,
          )

     total = sum((e.amount for e in refunds), Decimal("0"))
     logger.info(f"↩️ ESCROW_REFUNDED: contract {contract_id} - {len(refunds)} milestones, {total}")
     return refunds


def verify_chain(db: Session, contract_id: int) -> Tuple[bool, str, int]:
     """
     Verify a contract's entry chain and its account totals.

     Returns:
          (all_valid: bool, message: str, entries_checked: int)
     """
     account = get_account(db, contract_id)
     entries = (
          db.query(EscrowEntry)
          .filter(EscrowEntry.contract_id == contract_id)
          .order_by(EscrowEntry.id)
          .all()
     )

     prev_hash = GENESIS_HASH
     checked = 0
     totals = {kind: Decimal("0") for kind in EscrowEntryKind}

     for entry in entries:
          if entry.previous_hash != prev_hash:
               return False, f"Chain broken at entry id={entry.id}: previous_hash mismatch", checked
          computed = compute_entry_hash(
               entry.contract_id,
               entry.milestone_id,
               entry.kind,
               entry.amount,
               entry.created_at,
               entry.previous_hash,
          )
          if computed != entry.transaction_hash:
               return False, f"Hash mismatch at entry id={entry.id}", checked
          totals[entry.kind] += entry.amount
          prev_hash = entry.transaction_hash
          checked += 1

     locked = totals[EscrowEntryKind.LOCK] - totals[EscrowEntryKind.RELEASE] - totals[EscrowEntryKind.REFUND]
     if (
          account.funded_total != totals[EscrowEntryKind.LOCK]
          or account.released_total != totals[EscrowEntryKind.RELEASE]
          or account.refunded_total != totals[EscrowEntryKind.REFUND]
          or account.locked_total != locked
     ):
          return False, "Account totals do not match ledger entries", checked
     if not account.is_balanced:
          return False, "locked + released + refunded does not equal funded total", checked

     if not entries:
          return True, "Chain is empty (no entries)", 0
     return True, "Full chain verification passed", checked


def locked_milestone_total(db: Session, contract_id: int) -> Decimal:
     """Σ amount of the contract's milestones whose status holds locked funds."""
     milestones = db.query(Milestone).filter(Milestone.contract_id == contract_id).all()
     return sum((m.amount for m in milestones if m.holds_locked_funds), Decimal("0"))
