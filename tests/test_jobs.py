"""Payout job wiring and the fee/retry value objects it runs with."""
from contextlib import contextmanager
from decimal import Decimal

import pytest

import scheduler as payout_job
from config import FeeSchedule, PayoutPolicy
from conftest import FakeRail
from models import PayoutStatus
from services.payout_scheduler import PayoutScheduler


@pytest.fixture
def job_sessions(monkeypatch, session_factory):
     """Point the job's session context at the test database."""

     @contextmanager
     def session_context():
          session = session_factory()
          try:
               yield session
               session.commit()
          except Exception:
               session.rollback()
               raise
          finally:
               session.close()

     monkeypatch.setattr(payout_job, "get_session_context", session_context)


class TestFeeSchedule:

     def test_percent_rounds_half_up_to_cents(self):
          assert FeeSchedule(percent=Decimal("2.5")).fee_for(Decimal("10.10")) == Decimal("0.25")

     def test_minimum_applies_to_small_payouts(self):
          schedule = FeeSchedule(percent=Decimal("1"), minimum=Decimal("2.00"))
          assert schedule.fee_for(Decimal("50.00")) == Decimal("2.00")

     def test_fee_is_capped_at_gross(self):
          assert FeeSchedule(flat=Decimal("5.00")).fee_for(Decimal("3.00")) == Decimal("3.00")


class TestPayoutPolicy:

     def test_backoff_doubles_and_caps(self):
          policy = PayoutPolicy(backoff_base_seconds=60, backoff_max_seconds=200)
          assert [policy.backoff_seconds(n) for n in (1, 2, 3, 4)] == [60, 120, 200, 200]


class TestPayoutJob:

     def test_cycle_settles_due_payouts(self, db, helpers, job_sessions):
          contract = helpers.create_contract()
          helpers.release(contract.milestones[0].id)
          db.commit()
          payout_id = PayoutScheduler.active_payout_for_milestone(db, contract.milestones[0].id).id
          rail = FakeRail()

          summary = payout_job.run_payout_cycle(rail=rail)

          assert summary["settled"] == 1
          assert rail.transfer_count == 1
          db.expire_all()
          assert PayoutScheduler.get_payout(db, payout_id).status == PayoutStatus.SETTLED

     def test_process_now_records_failed_attempt(self, db, helpers, job_sessions):
          contract = helpers.create_contract()
          helpers.release(contract.milestones[0].id)
          db.commit()
          payout_id = PayoutScheduler.active_payout_for_milestone(db, contract.milestones[0].id).id

          payout_job.process_payout_now(payout_id, rail=FakeRail(outcomes=[False]))

          db.expire_all()
          assert PayoutScheduler.get_payout(db, payout_id).status == PayoutStatus.RETRY_PENDING

     def test_job_is_registered_once(self):
          job = payout_job.PayoutJobScheduler(interval_seconds=30, rail=FakeRail())
          job.setup_jobs()
          job.setup_jobs()

          jobs = job.scheduler.get_jobs()
          assert [j.id for j in jobs] == [payout_job.PAYOUT_JOB_ID]
          assert jobs[0].trigger.interval.total_seconds() == 30
