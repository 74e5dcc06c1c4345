"""Write-once invoices and compensating corrections."""
from decimal import Decimal

import pytest

from config import FeeSchedule
from models import InvoiceKind, Payout, PayoutStatus
from services import activity_log
from services.errors import NotFoundError, ValidationError
from services.invoice_generator import InvoiceGenerator, completion_trigger, milestone_trigger
from services.payout_scheduler import PayoutScheduler


def _settle_all(db, scheduler):
     for payout in db.query(Payout).filter(Payout.status == PayoutStatus.QUEUED).all():
          scheduler.process_payout(payout.id)


class TestMilestoneInvoices:

     def test_settlement_issues_milestone_invoice(self, db, helpers, scheduler):
          contract = helpers.create_contract(amounts=("500.00", "250.00"))
          milestone_id = contract.milestones[0].id
          helpers.release(milestone_id)
          _settle_all(db, scheduler)

          invoice = InvoiceGenerator.get_by_trigger(db, milestone_trigger(milestone_id))
          assert invoice.kind == InvoiceKind.MILESTONE
          assert invoice.gross_amount == Decimal("500.00")
          assert invoice.fee_amount == Decimal("10.00")
          assert invoice.net_amount == Decimal("490.00")
          assert invoice.breakdown["net"] == "490.00"
          assert len(invoice.invoice_hash) == 64
          assert InvoiceGenerator.get_by_trigger(db, completion_trigger(contract.id)) is None

     def test_regenerating_is_rejected(self, db, helpers, scheduler):
          contract = helpers.create_contract()
          milestone_id = contract.milestones[0].id
          helpers.release(milestone_id)
          _settle_all(db, scheduler)
          payout = PayoutScheduler.active_payout_for_milestone(db, milestone_id)

          with pytest.raises(ValidationError, match="invoice already exists"):
               InvoiceGenerator.generate_for_milestone(db, helpers.milestone(milestone_id), payout, Decimal("10.00"))

     def test_unreleased_milestone_cannot_be_invoiced(self, db, helpers, scheduler):
          contract = helpers.create_contract(amounts=("100.00", "200.00"))
          helpers.release(contract.milestones[0].id)
          _settle_all(db, scheduler)
          payout = db.query(Payout).first()

          with pytest.raises(ValidationError):
               InvoiceGenerator.generate_for_milestone(db, helpers.milestone(contract.milestones[1].id), payout, Decimal("0"))

     def test_invoice_is_deterministic_for_final_state(self, db, helpers, scheduler):
          contract = helpers.create_contract()
          milestone_id = contract.milestones[0].id
          helpers.release(milestone_id)
          _settle_all(db, scheduler)
          invoice = InvoiceGenerator.get_by_trigger(db, milestone_trigger(milestone_id))
          payout = PayoutScheduler.active_payout_for_milestone(db, milestone_id)

          assert invoice.created_at == payout.settled_at
          assert invoice.breakdown["settled_at"] == payout.settled_at.isoformat()


class TestFeeAllocation:

     def test_shares_add_up_to_payout_fee(self, db, helpers, rail, policy):
          scheduler = PayoutScheduler(db, rail=rail, fee_schedule=FeeSchedule(percent=Decimal("3")), policy=policy)
          contract = helpers.create_contract(amounts=("33.33", "33.33", "33.34"))
          for milestone in contract.milestones:
               helpers.release(milestone.id)
          _settle_all(db, scheduler)

          payout = db.query(Payout).one()
          invoices = [
               InvoiceGenerator.get_by_trigger(db, milestone_trigger(m.id))
               for m in contract.milestones
          ]
          assert sum(inv.fee_amount for inv in invoices) == payout.fee_amount
          assert sum(inv.net_amount for inv in invoices) == payout.net_amount


class TestCompletionInvoice:

     def test_completed_contract_gets_summary_invoice(self, db, helpers, scheduler):
          contract = helpers.create_contract(amounts=("200.00", "300.00"))
          for milestone in contract.milestones:
               helpers.release(milestone.id)
          _settle_all(db, scheduler)

          completion = InvoiceGenerator.get_by_trigger(db, completion_trigger(contract.id))
          assert completion.kind == InvoiceKind.CONTRACT_COMPLETION
          assert completion.gross_amount == Decimal("500.00")
          assert completion.fee_amount == Decimal("10.00")
          assert [line["milestone_id"] for line in completion.breakdown["milestones"]] == contract.milestone_ids

          with pytest.raises(ValidationError, match="invoice already exists"):
               InvoiceGenerator.generate_for_contract(db, contract)

     def test_active_contract_has_no_completion_invoice(self, db, helpers):
          contract = helpers.create_contract()

          with pytest.raises(ValidationError):
               InvoiceGenerator.generate_for_contract(db, contract)


class TestCompensatingInvoice:

     def test_correction_is_a_new_invoice(self, db, helpers, scheduler):
          contract = helpers.create_contract(amounts=("500.00", "100.00"))
          milestone_id = contract.milestones[0].id
          helpers.release(milestone_id)
          _settle_all(db, scheduler)
          original = InvoiceGenerator.get_by_trigger(db, milestone_trigger(milestone_id))
          original_hash = original.invoice_hash

          first = InvoiceGenerator.issue_compensating_invoice(db, original.id, Decimal("5.00"), "Fee refund")
          second = InvoiceGenerator.issue_compensating_invoice(db, original.id, Decimal("-1.00"), "Rounding")

          assert first.kind == InvoiceKind.COMPENSATING
          assert first.corrects_invoice_id == original.id
          assert first.trigger_ref == f"invoice:{original.id}:correction:1"
          assert second.trigger_ref == f"invoice:{original.id}:correction:2"
          assert first.breakdown["corrected_net"] == "495.00"
          assert InvoiceGenerator.get_invoice(db, original.id).invoice_hash == original_hash
          assert [inv.id for inv in InvoiceGenerator.list_for_contract(db, contract.id)] == [
               original.id, first.id, second.id,
          ]
          assert activity_log.count_kind(db, contract.id, activity_log.INVOICE_ISSUED) == 3

     def test_zero_adjustment_is_rejected(self, db, helpers, scheduler):
          contract = helpers.create_contract(amounts=("500.00", "100.00"))
          helpers.release(contract.milestones[0].id)
          _settle_all(db, scheduler)
          original = InvoiceGenerator.get_by_trigger(db, milestone_trigger(contract.milestones[0].id))

          with pytest.raises(ValidationError):
               InvoiceGenerator.issue_compensating_invoice(db, original.id, Decimal("0"), "Nothing")

     def test_missing_invoice(self, db):
          with pytest.raises(NotFoundError):
               InvoiceGenerator.get_invoice(db, 999)
