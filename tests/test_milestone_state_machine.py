"""Milestone lifecycle transitions."""
from decimal import Decimal

import pytest

from models import ContractStatus, MilestoneStatus
from services import activity_log, escrow_ledger
from services.contract_service import ContractService
from services.errors import (
     InsufficientFundsError,
     InvalidStateTransitionError,
     NotFoundError,
     ValidationError,
)
from services.milestone_state_machine import ALLOWED_TRANSITIONS, MilestoneStateMachine, can_transition


class TestTransitionTable:

     def test_terminal_states_have_no_exits(self):
          assert ALLOWED_TRANSITIONS[MilestoneStatus.RELEASED] == frozenset()
          assert ALLOWED_TRANSITIONS[MilestoneStatus.CANCELLED] == frozenset()

     def test_only_cycle_is_review_loop(self):
          assert can_transition(MilestoneStatus.SUBMITTED, MilestoneStatus.REQUESTED_CHANGES)
          assert can_transition(MilestoneStatus.REQUESTED_CHANGES, MilestoneStatus.SUBMITTED)
          assert not can_transition(MilestoneStatus.FUNDED, MilestoneStatus.UPCOMING)
          assert not can_transition(MilestoneStatus.APPROVED, MilestoneStatus.SUBMITTED)
          assert not can_transition(MilestoneStatus.RELEASED, MilestoneStatus.APPROVED)

     def test_every_status_is_covered(self):
          assert set(ALLOWED_TRANSITIONS) == set(MilestoneStatus)


class TestFund:

     def test_fund_locks_exact_amount(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))

          milestone = helpers.fund(contract.milestones[0].id)

          assert milestone.status == MilestoneStatus.FUNDED
          assert escrow_ledger.get_account(db, contract.id).locked_total == Decimal("200.00")
          assert activity_log.count_kind(db, contract.id, activity_log.MILESTONE_FUNDED) == 1

     def test_fund_with_wrong_amount_is_rejected(self, db, helpers):
          contract = helpers.create_contract()
          milestone = contract.milestones[0]

          with pytest.raises(ValidationError):
               MilestoneStateMachine.fund(db, milestone.id, Decimal("450.00"), helpers.capture(milestone, "450.00"))

          assert helpers.milestone(milestone.id).status == MilestoneStatus.UPCOMING
          assert escrow_ledger.get_account(db, contract.id).locked_total == Decimal("0")

     def test_fund_without_capture_is_rejected(self, db, helpers):
          contract = helpers.create_contract()
          milestone = contract.milestones[0]

          with pytest.raises(InsufficientFundsError):
               MilestoneStateMachine.fund(db, milestone.id, milestone.amount, None)

          assert helpers.milestone(milestone.id).status == MilestoneStatus.UPCOMING
          assert activity_log.count_kind(db, contract.id, activity_log.MILESTONE_FUNDED) == 0

     def test_fund_twice_is_rejected(self, db, helpers):
          contract = helpers.create_contract()
          milestone_id = contract.milestones[0].id
          helpers.fund(milestone_id)

          with pytest.raises(InvalidStateTransitionError):
               helpers.fund(milestone_id)

          assert escrow_ledger.get_account(db, contract.id).locked_total == Decimal("500.00")

     def test_unknown_milestone(self, db):
          with pytest.raises(NotFoundError):
               MilestoneStateMachine.submit_deliverable(db, 9999, "ref")


class TestReviewLoop:

     def test_submit_request_changes_resubmit(self, db, helpers):
          contract = helpers.create_contract()
          milestone_id = contract.milestones[0].id
          helpers.fund(milestone_id)

          helpers.submit(milestone_id, "v1")
          milestone = MilestoneStateMachine.request_changes(db, milestone_id, "Please fix the header")
          assert milestone.status == MilestoneStatus.REQUESTED_CHANGES
          assert milestone.change_note == "Please fix the header"

          milestone = helpers.submit(milestone_id, "v2")
          assert milestone.status == MilestoneStatus.SUBMITTED
          assert milestone.artifact_ref == "v2"
          assert milestone.change_note is None

          events = list(activity_log.read_from(db, contract.id))
          submitted = [e for e in events if e.kind == activity_log.DELIVERABLE_SUBMITTED]
          assert [e.payload["resubmission"] for e in submitted] == [False, True]

     def test_submit_before_funding_is_rejected(self, db, helpers):
          contract = helpers.create_contract()

          with pytest.raises(InvalidStateTransitionError):
               helpers.submit(contract.milestones[0].id)

     def test_submit_requires_artifact(self, db, helpers):
          contract = helpers.create_contract()
          helpers.fund(contract.milestones[0].id)

          with pytest.raises(ValidationError):
               helpers.submit(contract.milestones[0].id, "   ")

     def test_request_changes_requires_note(self, db, helpers):
          contract = helpers.create_contract()
          milestone_id = contract.milestones[0].id
          helpers.fund(milestone_id)
          helpers.submit(milestone_id)

          with pytest.raises(ValidationError):
               MilestoneStateMachine.request_changes(db, milestone_id, "")


class TestApprove:

     def test_approve_releases_and_queues_payout(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))
          milestone_id = contract.milestones[0].id

          milestone = helpers.release(milestone_id)

          assert milestone.status == MilestoneStatus.RELEASED
          account = escrow_ledger.get_account(db, contract.id)
          assert account.released_total == Decimal("200.00")
          assert account.locked_total == Decimal("0.00")
          kinds = [e.kind for e in activity_log.read_from(db, contract.id)]
          assert kinds[-3:] == [
               activity_log.MILESTONE_APPROVED,
               activity_log.MILESTONE_RELEASED,
               activity_log.PAYOUT_QUEUED,
          ]

     def test_approve_from_funded_is_rejected(self, db, helpers):
          contract = helpers.create_contract()
          milestone_id = contract.milestones[0].id
          helpers.fund(milestone_id)

          with pytest.raises(InvalidStateTransitionError):
               helpers.approve(milestone_id)

          assert helpers.milestone(milestone_id).status == MilestoneStatus.FUNDED

     def test_approve_released_milestone_leaves_escrow_unchanged(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))
          milestone_id = contract.milestones[0].id
          helpers.release(milestone_id)
          before = escrow_ledger.get_account(db, contract.id)
          released, locked = before.released_total, before.locked_total
          events = activity_log.last_seq(db, contract.id)

          with pytest.raises(InvalidStateTransitionError):
               helpers.approve(milestone_id)

          after = escrow_ledger.get_account(db, contract.id)
          assert after.released_total == released
          assert after.locked_total == locked
          assert activity_log.last_seq(db, contract.id) == events

     def test_last_release_completes_contract(self, db, helpers):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))
          for milestone in contract.milestones:
               helpers.release(milestone.id)

          assert ContractService.get_contract(db, contract.id).status == ContractStatus.COMPLETED
          assert activity_log.count_kind(db, contract.id, activity_log.CONTRACT_COMPLETED) == 1

     def test_disputed_contract_refuses_transitions(self, db, helpers):
          contract = helpers.create_contract()
          milestone_id = contract.milestones[0].id
          ContractService.dispute_contract(db, contract.id, "Scope disagreement")

          with pytest.raises(InvalidStateTransitionError):
               helpers.fund(milestone_id)
