# services/contract_service.py
"""
Contract Service - business logic for the contract aggregate.

A contract is created from an accepted proposal with its milestones and an
empty escrow account. After creation every change goes through the
per-contract exclusive section in services.contract_lock.
"""
import logging
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import quantize_money
from models import ActivityEvent, Contract, ContractStatus, Milestone, MilestoneStatus
from models.base import utcnow
from schemas.contract import (
     ContractSnapshot,
     EscrowAccountResponse,
     MilestoneEdit,
     MilestoneResponse,
     MilestoneSpec,
     ProposalAccepted,
)
from services import activity_log, escrow_ledger
from services.contract_lock import locked_contract
from services.errors import InvalidStateTransitionError, NotFoundError, ValidationError
from services.milestone_state_machine import MilestoneStateMachine, milestone_payload

logger = logging.getLogger(__name__)

# Milestones in these states block cancellation
CANCEL_BLOCKING = frozenset({
     MilestoneStatus.SUBMITTED,
     MilestoneStatus.REQUESTED_CHANGES,
     MilestoneStatus.APPROVED,
     MilestoneStatus.RELEASED,
})


def contract_payload(contract: Contract, **extra) -> dict:
     payload = {
          "contract_id": contract.id,
          "proposal_id": contract.proposal_id,
          "client_id": contract.client_id,
          "freelancer_id": contract.freelancer_id,
          "total_amount": f"{quantize_money(contract.total_amount):.2f}",
          "status": contract.status.value,
     }
     payload.update(extra)
     return payload


class ContractService:
     """Service class for contract-related business logic."""

     @staticmethod
     def get_contract(db: Session, contract_id: int) -> Contract:
          contract = db.query(Contract).filter(Contract.id == contract_id).first()
          if contract is None:
               raise NotFoundError(f"Contract with ID {contract_id} not found", contract_id=contract_id)
          return contract

     @staticmethod
     def _milestones(db: Session, contract_id: int) -> List[Milestone]:
          """Current milestones in position order, refreshed from the database."""
          db.flush()
          return (
               db.query(Milestone)
               .filter(Milestone.contract_id == contract_id)
               .order_by(Milestone.position)
               .populate_existing()
               .all()
          )

     @staticmethod
     def _validate_amounts(specs, agreed_amount: Decimal) -> None:
          if not specs:
               raise ValidationError("A contract needs at least one milestone")
          for spec in specs:
               if spec.amount is None or quantize_money(spec.amount) <= 0:
                    raise ValidationError(
                         f"Milestone '{spec.title}' must have a positive amount",
                         title=spec.title,
                    )
          total = sum((quantize_money(spec.amount) for spec in specs), Decimal("0"))
          if total != quantize_money(agreed_amount):
               raise ValidationError(
                    f"Milestone amounts sum to {total}, agreed amount is {quantize_money(agreed_amount)}",
                    milestone_total=str(total),
                    agreed_amount=str(quantize_money(agreed_amount)),
               )

     @staticmethod
     def create_contract(
          db: Session,
          proposal: ProposalAccepted,
          milestone_specs: Optional[List[MilestoneSpec]] = None,
     ) -> Contract:
          """
          Create a contract from an accepted proposal.

          Args:
               db: SQLAlchemy database session
               proposal: The accepted-proposal event
               milestone_specs: Overrides proposal.milestone_specs when given

          Raises:
               ValidationError: bad amounts, same party on both sides, or the
                    proposal already has a contract
          """
          specs = milestone_specs if milestone_specs is not None else proposal.milestone_specs
          if proposal.client_id == proposal.freelancer_id:
               raise ValidationError("Client and freelancer must be different parties")
          ContractService._validate_amounts(specs, proposal.agreed_amount)

          existing = db.query(Contract.id).filter(Contract.proposal_id == proposal.proposal_id).scalar()
          if existing is not None:
               raise ValidationError(
                    f"Proposal {proposal.proposal_id} already has contract {existing}",
                    proposal_id=proposal.proposal_id,
                    contract_id=existing,
               )

          contract = Contract(
               proposal_id=proposal.proposal_id,
               client_id=proposal.client_id,
               freelancer_id=proposal.freelancer_id,
               total_amount=quantize_money(proposal.agreed_amount),
               status=ContractStatus.ACTIVE,
          )
          for position, spec in enumerate(specs, start=1):
               contract.milestones.append(Milestone(
                    position=position,
                    title=spec.title,
                    amount=quantize_money(spec.amount),
                    deadline=spec.deadline,
                    status=MilestoneStatus.UPCOMING,
               ))
          try:
               db.add(contract)
               db.flush()
          except IntegrityError as e:
               db.rollback()
               raise ValidationError(
                    f"Proposal {proposal.proposal_id} already has a contract",
                    proposal_id=proposal.proposal_id,
               ) from e

          with locked_contract(db, contract.id) as contract:
               escrow_ledger.open_account(db, contract.id)
               activity_log.append(db, contract.id, activity_log.CONTRACT_CREATED, contract_payload(
                    contract,
                    milestones=[milestone_payload(m) for m in contract.milestones],
               ))

          logger.info(
               f"📝 CONTRACT_CREATED: {contract.id} from proposal {contract.proposal_id} "
               f"({len(specs)} milestones, total {contract.total_amount})"
          )
          return contract

     @staticmethod
     def update_milestones(db: Session, contract_id: int, edits: List[MilestoneEdit]) -> Contract:
          """
          Edit title, amount or deadline of UPCOMING milestones.

          Only allowed while nothing on the contract is funded. Amounts must
          still sum to the contract total after all edits are applied.
          """
          if not edits:
               raise ValidationError("No milestone edits given", contract_id=contract_id)

          with locked_contract(db, contract_id) as contract:
               if not contract.is_active:
                    raise InvalidStateTransitionError(
                         f"Contract {contract_id} is {contract.status.value}; milestones cannot change",
                         contract_id=contract_id,
                    )
               milestones = {m.id: m for m in ContractService._milestones(db, contract_id)}
               if any(m.status != MilestoneStatus.UPCOMING for m in milestones.values()):
                    raise InvalidStateTransitionError(
                         f"Contract {contract_id} already has funded milestones; terms are fixed",
                         contract_id=contract_id,
                    )

               changed = []
               for edit in edits:
                    milestone = milestones.get(edit.milestone_id)
                    if milestone is None:
                         raise NotFoundError(
                              f"Milestone {edit.milestone_id} does not belong to contract {contract_id}",
                              contract_id=contract_id,
                              milestone_id=edit.milestone_id,
                         )
                    if edit.title is not None:
                         milestone.title = edit.title
                    if edit.amount is not None:
                         milestone.amount = quantize_money(edit.amount)
                    if edit.deadline is not None:
                         milestone.deadline = edit.deadline
                    changed.append(milestone.id)

               ContractService._validate_amounts(list(milestones.values()), contract.total_amount)
               db.flush()
               activity_log.append(db, contract_id, activity_log.MILESTONES_EDITED, contract_payload(
                    contract,
                    edited_milestone_ids=changed,
                    milestones=[milestone_payload(m) for m in milestones.values()],
               ))

          logger.info(f"✏️ MILESTONES_EDITED: contract {contract_id} milestones {changed}")
          return contract

     @staticmethod
     def cancel_contract(db: Session, contract_id: int, reason: str) -> Contract:
          """
          Cancel a contract and refund every locked milestone to the client.

          Refused once any milestone has been submitted or paid.
          """
          if not reason or not reason.strip():
               raise ValidationError("A cancellation reason is required", contract_id=contract_id)

          with locked_contract(db, contract_id) as contract:
               if not contract.is_active:
                    raise InvalidStateTransitionError(
                         f"Contract {contract_id} is {contract.status.value} and cannot be cancelled",
                         contract_id=contract_id,
                    )
               milestones = ContractService._milestones(db, contract_id)
               blocking = [m.id for m in milestones if m.status in CANCEL_BLOCKING]
               if blocking:
                    raise InvalidStateTransitionError(
                         f"Contract {contract_id} has work in review or paid out; cannot cancel",
                         contract_id=contract_id,
                         milestone_ids=blocking,
                    )

               for milestone in milestones:
                    MilestoneStateMachine.cancel(db, contract, milestone, reason)

               refunds = escrow_ledger.refund_all(db, contract_id)
               if refunds:
                    total = sum((e.amount for e in refunds), Decimal("0"))
                    activity_log.append(db, contract_id, activity_log.ESCROW_REFUNDED, {
                         "contract_id": contract_id,
                         "client_id": contract.client_id,
                         "milestone_ids": [e.milestone_id for e in refunds],
                         "escrow_entry_ids": [e.id for e in refunds],
                         "amount": f"{total:.2f}",
                    })

               contract.status = ContractStatus.CANCELLED
               contract.cancel_reason = reason.strip()
               db.flush()
               activity_log.append(db, contract_id, activity_log.CONTRACT_CANCELLED, contract_payload(
                    contract,
                    reason=contract.cancel_reason,
               ))

          logger.info(f"🚫 CONTRACT_CANCELLED: {contract_id} ({len(refunds)} refunds) - {reason}")
          return contract

     @staticmethod
     def dispute_contract(db: Session, contract_id: int, reason: str) -> Contract:
          """Freeze an ACTIVE contract; every further mutation is refused."""
          if not reason or not reason.strip():
               raise ValidationError("A dispute reason is required", contract_id=contract_id)

          with locked_contract(db, contract_id) as contract:
               if not contract.is_active:
                    raise InvalidStateTransitionError(
                         f"Contract {contract_id} is {contract.status.value} and cannot be disputed",
                         contract_id=contract_id,
                    )
               contract.status = ContractStatus.DISPUTED
               db.flush()
               activity_log.append(db, contract_id, activity_log.CONTRACT_DISPUTED, contract_payload(
                    contract,
                    reason=reason.strip(),
               ))

          logger.warning(f"⚠️ CONTRACT_DISPUTED: {contract_id} - {reason}")
          return contract

     @staticmethod
     def complete_if_finished(db: Session, contract: Contract) -> bool:
          """
          Mark the contract COMPLETED once every milestone is terminal and at
          least one was released. Caller holds the contract lock.
          """
          if not contract.is_active:
               return False
          milestones = ContractService._milestones(db, contract.id)
          if not all(m.is_terminal for m in milestones):
               return False
          if not any(m.status == MilestoneStatus.RELEASED for m in milestones):
               return False

          contract.status = ContractStatus.COMPLETED
          db.flush()
          activity_log.append(db, contract.id, activity_log.CONTRACT_COMPLETED, contract_payload(contract))
          logger.info(f"🎉 CONTRACT_COMPLETED: {contract.id}")
          return True

     @staticmethod
     def get_contract_snapshot(db: Session, contract_id: int) -> ContractSnapshot:
          """
          Point-in-time view of the contract, its milestones and escrow
          account, read inside the exclusive section so no transition is
          half-visible.
          """
          with locked_contract(db, contract_id) as contract:
               milestones = ContractService._milestones(db, contract_id)
               account = escrow_ledger.get_account(db, contract_id)
               snapshot = ContractSnapshot(
                    id=contract.id,
                    proposal_id=contract.proposal_id,
                    client_id=contract.client_id,
                    freelancer_id=contract.freelancer_id,
                    total_amount=contract.total_amount,
                    status=contract.status,
                    cancel_reason=contract.cancel_reason,
                    milestone_ids=[m.id for m in milestones],
                    milestones=[MilestoneResponse.model_validate(m) for m in milestones],
                    escrow=EscrowAccountResponse.model_validate(account),
                    taken_at=utcnow(),
               )
          return snapshot

     @staticmethod
     def list_activity(db: Session, contract_id: int, since_seq: int = 0) -> Iterator[ActivityEvent]:
          ContractService.get_contract(db, contract_id)
          if since_seq < 0:
               raise ValidationError("since_seq must not be negative", since_seq=since_seq)
          return activity_log.read_from(db, contract_id, since_seq)

     @staticmethod
     def verify_escrow(db: Session, contract_id: int) -> tuple:
          """Hash chain and totals check for the contract's escrow ledger."""
          ContractService.get_contract(db, contract_id)
          verified, message, checked = escrow_ledger.verify_chain(db, contract_id)
          if not verified:
               logger.error(f"❌ ESCROW_VERIFY_FAILED: contract {contract_id} - {message}")
          return verified, message, checked
