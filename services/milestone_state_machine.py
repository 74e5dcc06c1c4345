# services/milestone_state_machine.py
"""
Milestone State Machine - governs each milestone's lifecycle.

     UPCOMING -> FUNDED -> SUBMITTED -> APPROVED -> RELEASED
                             |    ^
                             v    |
                        REQUESTED_CHANGES
     UPCOMING | FUNDED -> CANCELLED

RELEASED and CANCELLED are terminal. SUBMITTED <-> REQUESTED_CHANGES is the
only cycle. APPROVED is never committed on its own: approval, escrow release
and payout enqueue form one unit of work, so a failed release leaves the
milestone SUBMITTED.

Every operation runs inside the contract's exclusive section and appends
one activity event per transition.
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from config import PAYOUT_POLICY, PayoutCadence, quantize_money
from models import Contract, Milestone, MilestoneStatus
from schemas.contract import MilestoneResponse
from schemas.milestone import CaptureConfirmation
from services import activity_log, escrow_ledger
from services.contract_lock import locked_contract
from services.errors import InvalidStateTransitionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[MilestoneStatus, frozenset] = {
     MilestoneStatus.UPCOMING: frozenset({MilestoneStatus.FUNDED, MilestoneStatus.CANCELLED}),
     MilestoneStatus.FUNDED: frozenset({MilestoneStatus.SUBMITTED, MilestoneStatus.CANCELLED}),
     MilestoneStatus.SUBMITTED: frozenset({MilestoneStatus.REQUESTED_CHANGES, MilestoneStatus.APPROVED}),
     MilestoneStatus.REQUESTED_CHANGES: frozenset({MilestoneStatus.SUBMITTED}),
     MilestoneStatus.APPROVED: frozenset({MilestoneStatus.RELEASED}),
     MilestoneStatus.RELEASED: frozenset(),
     MilestoneStatus.CANCELLED: frozenset(),
}


def can_transition(current: MilestoneStatus, target: MilestoneStatus) -> bool:
     return target in ALLOWED_TRANSITIONS[current]


def milestone_payload(milestone: Milestone, **extra) -> dict:
     """JSON snapshot of a milestone's new state for the activity log."""
     payload = MilestoneResponse.model_validate(milestone).model_dump(mode="json")
     payload.update(extra)
     return payload


class MilestoneStateMachine:
     """Transitions for a single milestone."""

     @staticmethod
     def _contract_id_for(db: Session, milestone_id: int) -> int:
          contract_id = (
               db.query(Milestone.contract_id)
               .filter(Milestone.id == milestone_id)
               .scalar()
          )
          if contract_id is None:
               raise NotFoundError(f"Milestone with ID {milestone_id} not found", milestone_id=milestone_id)
          return contract_id

     @staticmethod
     def _load(db: Session, milestone_id: int) -> Milestone:
          """Reload the milestone inside the exclusive section."""
          return (
               db.query(Milestone)
               .filter(Milestone.id == milestone_id)
               .populate_existing()
               .with_for_update()
               .one()
          )

     @staticmethod
     def _require_active(contract: Contract) -> None:
          if not contract.is_active:
               raise InvalidStateTransitionError(
                    f"Contract {contract.id} is {contract.status.value}; milestones cannot change",
                    contract_id=contract.id,
               )

     @staticmethod
     def _check(milestone: Milestone, target: MilestoneStatus) -> None:
          if not can_transition(milestone.status, target):
               raise InvalidStateTransitionError(
                    f"Milestone {milestone.id} cannot move from {milestone.status.value} to {target.value}",
                    milestone_id=milestone.id,
                    current=milestone.status.value,
                    target=target.value,
               )

     @staticmethod
     def _transition(milestone: Milestone, target: MilestoneStatus) -> MilestoneStatus:
          MilestoneStateMachine._check(milestone, target)
          current = milestone.status
          milestone.status = target
          logger.info(f"MILESTONE_TRANSITION: {milestone.id} {current.value} -> {target.value}")
          return current

     @staticmethod
     def fund(
          db: Session,
          milestone_id: int,
          amount: Decimal,
          capture: Optional[CaptureConfirmation],
     ) -> Milestone:
          """
          Fund an UPCOMING milestone with its exact amount.

          Raises:
               InvalidStateTransitionError: milestone not UPCOMING
               ValidationError: amount differs from the milestone amount
               InsufficientFundsError: capture missing or not matching
          """
          contract_id = MilestoneStateMachine._contract_id_for(db, milestone_id)
          with locked_contract(db, contract_id) as contract:
               MilestoneStateMachine._require_active(contract)
               milestone = MilestoneStateMachine._load(db, milestone_id)
               MilestoneStateMachine._check(milestone, MilestoneStatus.FUNDED)
               amount = quantize_money(amount)
               if amount != milestone.amount:
                    raise ValidationError(
                         f"Funding amount {amount} does not match milestone amount {milestone.amount}",
                         milestone_id=milestone_id,
                    )

               entry = escrow_ledger.lock(db, contract_id, milestone_id, amount, capture)
               MilestoneStateMachine._transition(milestone, MilestoneStatus.FUNDED)
               db.flush()
               activity_log.append(db, contract_id, activity_log.MILESTONE_FUNDED, milestone_payload(
                    milestone,
                    capture_ref=entry.capture_ref,
                    escrow_entry_id=entry.id,
               ))
          return milestone

     @staticmethod
     def check_can_submit(db: Session, milestone_id: int) -> Milestone:
          """Read-only pre-check that a deliverable would be accepted right now."""
          contract_id = MilestoneStateMachine._contract_id_for(db, milestone_id)
          MilestoneStateMachine._require_active(db.get(Contract, contract_id, populate_existing=True))
          milestone = db.get(Milestone, milestone_id, populate_existing=True)
          MilestoneStateMachine._check(milestone, MilestoneStatus.SUBMITTED)
          return milestone

     @staticmethod
     def submit_deliverable(db: Session, milestone_id: int, artifact_ref: str) -> Milestone:
          """Record a deliverable for a FUNDED or REQUESTED_CHANGES milestone."""
          if not artifact_ref or not artifact_ref.strip():
               raise ValidationError("artifact_ref is required", milestone_id=milestone_id)

          contract_id = MilestoneStateMachine._contract_id_for(db, milestone_id)
          with locked_contract(db, contract_id) as contract:
               MilestoneStateMachine._require_active(contract)
               milestone = MilestoneStateMachine._load(db, milestone_id)
               previous = MilestoneStateMachine._transition(milestone, MilestoneStatus.SUBMITTED)
               milestone.artifact_ref = artifact_ref.strip()
               milestone.change_note = None
               db.flush()
               activity_log.append(db, contract_id, activity_log.DELIVERABLE_SUBMITTED, milestone_payload(
                    milestone,
                    resubmission=previous == MilestoneStatus.REQUESTED_CHANGES,
               ))
          return milestone

     @staticmethod
     def request_changes(db: Session, milestone_id: int, note: str) -> Milestone:
          """Send a SUBMITTED milestone back to the freelancer with a note."""
          if not note or not note.strip():
               raise ValidationError("A note is required when requesting changes", milestone_id=milestone_id)

          contract_id = MilestoneStateMachine._contract_id_for(db, milestone_id)
          with locked_contract(db, contract_id) as contract:
               MilestoneStateMachine._require_active(contract)
               milestone = MilestoneStateMachine._load(db, milestone_id)
               MilestoneStateMachine._transition(milestone, MilestoneStatus.REQUESTED_CHANGES)
               milestone.change_note = note.strip()
               db.flush()
               activity_log.append(db, contract_id, activity_log.CHANGES_REQUESTED, milestone_payload(milestone))
          return milestone

     @staticmethod
     def approve(db: Session, milestone_id: int, cadence: Optional[PayoutCadence] = None) -> Milestone:
          """
          Approve a SUBMITTED milestone and release its funds.

          Approval, release and payout enqueue commit together; if any step
          fails the whole unit rolls back and the milestone stays SUBMITTED.

          Raises:
               InvalidStateTransitionError: milestone not SUBMITTED (incl. RELEASED)
               ConcurrentModificationError: funds already released
          """
          from services.contract_service import ContractService
          from services.payout_scheduler import PayoutScheduler

          contract_id = MilestoneStateMachine._contract_id_for(db, milestone_id)
          with locked_contract(db, contract_id) as contract:
               MilestoneStateMachine._require_active(contract)
               milestone = MilestoneStateMachine._load(db, milestone_id)

               MilestoneStateMachine._transition(milestone, MilestoneStatus.APPROVED)
               db.flush()
               activity_log.append(db, contract_id, activity_log.MILESTONE_APPROVED, milestone_payload(milestone))

               entry = escrow_ledger.release(db, contract_id, milestone.id, milestone.amount)
               MilestoneStateMachine._transition(milestone, MilestoneStatus.RELEASED)
               db.flush()
               activity_log.append(db, contract_id, activity_log.MILESTONE_RELEASED, milestone_payload(
                    milestone,
                    escrow_entry_id=entry.id,
                    transaction_hash=entry.transaction_hash,
               ))

               PayoutScheduler.enqueue(db, entry, cadence or PAYOUT_POLICY.cadence)
               ContractService.complete_if_finished(db, contract)
          return milestone

     @staticmethod
     def cancel(db: Session, contract: Contract, milestone: Milestone, reason: str) -> Milestone:
          """
          Cancel an UPCOMING or FUNDED milestone. Caller holds the contract lock
          and is responsible for refunding any locked funds.
          """
          MilestoneStateMachine._transition(milestone, MilestoneStatus.CANCELLED)
          db.flush()
          activity_log.append(db, contract.id, activity_log.MILESTONE_CANCELLED, milestone_payload(
               milestone,
               reason=reason,
          ))
          return milestone
