# scheduler.py
"""
Background payout job.

Runs PayoutScheduler.run_due_payouts on a fixed interval with APScheduler.
Each run gets its own database session; the rail is called outside any
contract lock, so a slow rail only delays this job.
"""
import logging
from typing import Optional

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

import config
from database import get_session_context
from services.errors import EngineError
from services.payment_rail import HttpPaymentRail, PaymentRail
from services.payout_scheduler import PayoutScheduler

logger = logging.getLogger(__name__)

PAYOUT_JOB_ID = "run_due_payouts"


def run_payout_cycle(rail: Optional[PaymentRail] = None) -> Optional[dict]:
     """One periodic pass over due payouts."""
     try:
          with get_session_context() as db:
               return PayoutScheduler(db, rail=rail or HttpPaymentRail()).run_due_payouts()
     except EngineError as e:
          logger.error(f"❌ PAYOUT_CYCLE_FAILED: {e.code} - {e.message}")
          return None
     except Exception as e:
          logger.exception(f"❌ PAYOUT_CYCLE_FAILED: {type(e).__name__} - {e}")
          return None


class PayoutJobScheduler:
     """Owns the APScheduler instance for the payout cycle."""

     def __init__(self, interval_seconds: Optional[int] = None, rail: Optional[PaymentRail] = None):
          self.interval_seconds = interval_seconds or config.PAYOUT_INTERVAL_SECONDS
          self.rail = rail
          self.scheduler = BackgroundScheduler(
               jobstores={"default": MemoryJobStore()},
               job_defaults={
                    "coalesce": True,
                    "max_instances": 1,
                    "misfire_grace_time": 120,
               },
               timezone="UTC",
          )

     def setup_jobs(self) -> None:
          if self.scheduler.get_job(PAYOUT_JOB_ID):
               self.scheduler.remove_job(PAYOUT_JOB_ID)
          self.scheduler.add_job(
               run_payout_cycle,
               trigger=IntervalTrigger(seconds=self.interval_seconds),
               kwargs={"rail": self.rail},
               id=PAYOUT_JOB_ID,
               name="Run Due Payouts",
               max_instances=1,
               coalesce=True,
          )

     def start(self) -> None:
          self.setup_jobs()
          self.scheduler.start()
          logger.info(f"⏰ PAYOUT_JOB_STARTED: every {self.interval_seconds}s")

     def shutdown(self) -> None:
          if self.scheduler.running:
               self.scheduler.shutdown(wait=False)
               logger.info("PAYOUT_JOB_STOPPED")


def process_payout_now(payout_id: int, rail: Optional[PaymentRail] = None) -> None:
     """Process one payout in its own session (used after IMMEDIATE approvals)."""
     try:
          with get_session_context() as db:
               PayoutScheduler(db, rail=rail or HttpPaymentRail()).process_payout(payout_id)
     except EngineError as e:
          logger.warning(f"⚠️ IMMEDIATE_PAYOUT_NOT_SETTLED: payout {payout_id} - {e.code}: {e.message}")
     except Exception as e:
          logger.exception(f"❌ IMMEDIATE_PAYOUT_ERROR: payout {payout_id} - {type(e).__name__}: {e}")
