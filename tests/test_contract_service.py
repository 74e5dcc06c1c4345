"""Contract creation, editing, cancellation, disputes and snapshots."""
from datetime import date
from decimal import Decimal

import pytest

from models import ContractStatus, MilestoneStatus
from schemas.contract import MilestoneEdit, MilestoneSpec, ProposalAccepted
from services import activity_log, escrow_ledger
from services.contract_service import ContractService
from services.errors import InvalidStateTransitionError, NotFoundError, ValidationError


def _proposal(amounts, agreed=None, proposal_id="PRP-1", client_id=7, freelancer_id=19):
     specs = [MilestoneSpec(title=f"M{i}", amount=Decimal(a)) for i, a in enumerate(amounts, start=1)]
     return ProposalAccepted(
          proposal_id=proposal_id,
          client_id=client_id,
          freelancer_id=freelancer_id,
          agreed_amount=Decimal(agreed) if agreed is not None else sum((s.amount for s in specs), Decimal("0")),
          milestone_specs=specs,
     )


class TestCreateContract:

     def test_creates_contract_milestones_and_account(self, db):
          contract = ContractService.create_contract(db, _proposal(["500.00", "1000.00"]))

          assert contract.status == ContractStatus.ACTIVE
          assert contract.total_amount == Decimal("1500.00")
          assert [m.position for m in contract.milestones] == [1, 2]
          assert all(m.status == MilestoneStatus.UPCOMING for m in contract.milestones)
          account = escrow_ledger.get_account(db, contract.id)
          assert account.locked_total == Decimal("0")
          events = list(activity_log.read_from(db, contract.id))
          assert [e.kind for e in events] == [activity_log.CONTRACT_CREATED]
          assert events[0].seq == 1

     def test_milestone_sum_must_match_agreed_amount(self, db):
          with pytest.raises(ValidationError):
               ContractService.create_contract(db, _proposal(["500.00", "400.00"], agreed="1000.00"))

     def test_non_positive_milestone_is_rejected(self, db):
          with pytest.raises(ValidationError):
               ContractService.create_contract(db, _proposal(["500.00", "0.00"], agreed="500.00"))

     def test_needs_at_least_one_milestone(self, db):
          with pytest.raises(ValidationError):
               ContractService.create_contract(db, _proposal([], agreed="100.00"))

     def test_parties_must_differ(self, db):
          with pytest.raises(ValidationError):
               ContractService.create_contract(db, _proposal(["100.00"], client_id=5, freelancer_id=5))

     def test_one_contract_per_proposal(self, db):
          ContractService.create_contract(db, _proposal(["100.00"], proposal_id="PRP-42"))

          with pytest.raises(ValidationError):
               ContractService.create_contract(db, _proposal(["100.00"], proposal_id="PRP-42"))

     def test_explicit_specs_override_proposal(self, db):
          specs = [MilestoneSpec(title="Only", amount=Decimal("1500.00"), deadline=date(2026, 12, 1))]

          contract = ContractService.create_contract(db, _proposal(["500.00", "1000.00"]), specs)

          assert len(contract.milestones) == 1
          assert contract.milestones[0].deadline == date(2026, 12, 1)


class TestUpdateMilestones:

     def test_rebalances_amounts_before_funding(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))
          first, second = contract.milestones

          ContractService.update_milestones(db, contract.id, [
               MilestoneEdit(milestone_id=first.id, amount=Decimal("250.00"), title="Design"),
               MilestoneEdit(milestone_id=second.id, amount=Decimal("250.00")),
          ])

          snapshot = ContractService.get_contract_snapshot(db, contract.id)
          assert [m.amount for m in snapshot.milestones] == [Decimal("250.00"), Decimal("250.00")]
          assert snapshot.milestones[0].title == "Design"
          assert activity_log.count_kind(db, contract.id, activity_log.MILESTONES_EDITED) == 1

     def test_total_must_still_match(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))

          with pytest.raises(ValidationError):
               ContractService.update_milestones(db, contract.id, [
                    MilestoneEdit(milestone_id=contract.milestones[0].id, amount=Decimal("100.00")),
               ])

          snapshot = ContractService.get_contract_snapshot(db, contract.id)
          assert [m.amount for m in snapshot.milestones] == [Decimal("200.00"), Decimal("300.00")]

     def test_refused_once_funded(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))
          helpers.fund(contract.milestones[0].id)

          with pytest.raises(InvalidStateTransitionError):
               ContractService.update_milestones(db, contract.id, [
                    MilestoneEdit(milestone_id=contract.milestones[1].id, title="Renamed"),
               ])

     def test_foreign_milestone_is_not_found(self, db, helpers):
          contract = helpers.create_contract()
          other = helpers.create_contract()

          with pytest.raises(NotFoundError):
               ContractService.update_milestones(db, contract.id, [
                    MilestoneEdit(milestone_id=other.milestones[0].id, title="Nope"),
               ])


class TestCancelContract:

     def test_cancel_refunds_funded_milestone(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))
          helpers.fund(contract.milestones[0].id)

          ContractService.cancel_contract(db, contract.id, "Client changed plans")

          snapshot = ContractService.get_contract_snapshot(db, contract.id)
          assert snapshot.status == ContractStatus.CANCELLED
          assert snapshot.cancel_reason == "Client changed plans"
          assert snapshot.escrow.refunded_total == Decimal("200.00")
          assert snapshot.escrow.locked_total == Decimal("0.00")
          assert all(m.status == MilestoneStatus.CANCELLED for m in snapshot.milestones)

          kinds = [e.kind for e in activity_log.read_from(db, contract.id)]
          assert kinds.count(activity_log.MILESTONE_CANCELLED) == 2
          assert kinds.count(activity_log.ESCROW_REFUNDED) == 1
          assert kinds[-1] == activity_log.CONTRACT_CANCELLED

     def test_cancel_without_funds_skips_refund_event(self, db, helpers):
          contract = helpers.create_contract()

          ContractService.cancel_contract(db, contract.id, "No longer needed")

          assert activity_log.count_kind(db, contract.id, activity_log.ESCROW_REFUNDED) == 0

     def test_cancel_blocked_by_submitted_work(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))
          helpers.fund(contract.milestones[0].id)
          helpers.submit(contract.milestones[0].id)

          with pytest.raises(InvalidStateTransitionError):
               ContractService.cancel_contract(db, contract.id, "Too late")

          snapshot = ContractService.get_contract_snapshot(db, contract.id)
          assert snapshot.status == ContractStatus.ACTIVE
          assert snapshot.escrow.locked_total == Decimal("200.00")

     def test_cancel_blocked_by_released_work(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))
          helpers.release(contract.milestones[0].id)

          with pytest.raises(InvalidStateTransitionError):
               ContractService.cancel_contract(db, contract.id, "Too late")

     def test_cancel_twice_is_rejected(self, db, helpers):
          contract = helpers.create_contract()
          ContractService.cancel_contract(db, contract.id, "First")

          with pytest.raises(InvalidStateTransitionError):
               ContractService.cancel_contract(db, contract.id, "Second")


class TestDisputeAndSnapshot:

     def test_dispute_freezes_contract(self, db, helpers):
          contract = helpers.create_contract()

          ContractService.dispute_contract(db, contract.id, "Quality issues")

          assert ContractService.get_contract(db, contract.id).status == ContractStatus.DISPUTED
          with pytest.raises(InvalidStateTransitionError):
               ContractService.cancel_contract(db, contract.id, "Give up")

     def test_snapshot_amounts_add_up(self, db, helpers):
          contract = helpers.create_contract(amounts=("100.00", "200.00", "300.00"))
          helpers.fund(contract.milestones[0].id)

          snapshot = ContractService.get_contract_snapshot(db, contract.id)

          assert sum(m.amount for m in snapshot.milestones) == snapshot.total_amount
          assert snapshot.milestone_ids == [m.id for m in contract.milestones]
          assert snapshot.escrow.locked_total == Decimal("100.00")

     def test_snapshot_of_missing_contract(self, db):
          with pytest.raises(NotFoundError):
               ContractService.get_contract_snapshot(db, 12345)

     def test_activity_since_seq_must_not_be_negative(self, db, helpers):
          contract = helpers.create_contract()

          with pytest.raises(ValidationError):
               ContractService.list_activity(db, contract.id, -1)
