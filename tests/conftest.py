"""
Shared fixtures for the escrow engine test suite.

Every test gets its own SQLite database file under tmp_path, a session
factory bound to it, and a fake payment rail that records transfers by
idempotency key the way a real rail would.
"""
import os
import threading
import uuid
from decimal import Decimal

import pytest

# Configure the app before any project module reads the environment
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PAYOUT_JOB_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.setdefault("PAYOUT_CADENCE", "periodic")

from sqlalchemy.orm import sessionmaker

from config import FeeSchedule, PayoutCadence, PayoutPolicy
from database import build_engine, init_db
from models import Contract, Milestone
from schemas.contract import MilestoneSpec, ProposalAccepted
from schemas.milestone import CaptureConfirmation
from services.contract_service import ContractService
from services.errors import PayoutFailedError
from services.milestone_state_machine import MilestoneStateMachine
from services.payment_rail import RailResult, TransferInstruction
from services.payout_scheduler import PayoutScheduler

CLIENT_ID = 7
FREELANCER_ID = 19


class FakeRail:
     """
     In-memory payment rail.

     outcomes: list of booleans consumed per new transfer (default success).
     A repeated idempotency key returns the original result without moving
     money again.
     """

     def __init__(self, outcomes=None, delay: float = 0.0):
          self.outcomes = list(outcomes or [])
          self.delay = delay
          self.calls: list[TransferInstruction] = []
          self.settled: dict[str, str] = {}
          self._lock = threading.Lock()

     def transfer(self, instruction: TransferInstruction) -> RailResult:
          if self.delay:
               threading.Event().wait(self.delay)
          with self._lock:
               self.calls.append(instruction)
               key = instruction.idempotency_key
               if key in self.settled:
                    return RailResult(instruction.payout_id, True, rail_transaction_id=self.settled[key])
               ok = self.outcomes.pop(0) if self.outcomes else True
               if not ok:
                    return RailResult(instruction.payout_id, False, error="rail unavailable")
               tx_id = f"tx-{len(self.settled) + 1}"
               self.settled[key] = tx_id
          return RailResult(instruction.payout_id, True, rail_transaction_id=tx_id)

     @property
     def transfer_count(self) -> int:
          return len(self.settled)


class RaisingRail:
     """Rail adapter that reports rejections by raising."""

     def transfer(self, instruction: TransferInstruction) -> RailResult:
          raise PayoutFailedError("account closed", payout_id=instruction.payout_id)


class BrokenRail(FakeRail):
     """Rail whose adapter blows up (not an engine error) for some freelancers."""

     def __init__(self, broken_freelancers=()):
          super().__init__()
          self.broken_freelancers = set(broken_freelancers)
          self.errors = 0

     def transfer(self, instruction: TransferInstruction) -> RailResult:
          if instruction.freelancer_id in self.broken_freelancers:
               with self._lock:
                    self.calls.append(instruction)
                    self.errors += 1
               raise ValueError("unexpected rail payload")
          return super().transfer(instruction)


class EngineHelpers:
     """Short-hands for driving contracts through their lifecycle."""

     def __init__(self, db):
          self.db = db

     def create_contract(
          self,
          amounts=("500.00",),
          client_id: int = CLIENT_ID,
          freelancer_id: int = FREELANCER_ID,
          proposal_id: str = None,
     ) -> Contract:
          specs = [
               MilestoneSpec(title=f"Milestone {i}", amount=Decimal(a))
               for i, a in enumerate(amounts, start=1)
          ]
          proposal = ProposalAccepted(
               proposal_id=proposal_id or f"PRP-{uuid.uuid4().hex[:8]}",
               client_id=client_id,
               freelancer_id=freelancer_id,
               agreed_amount=sum((s.amount for s in specs), Decimal("0")),
               milestone_specs=specs,
          )
          return ContractService.create_contract(self.db, proposal)

     def milestone(self, milestone_id: int) -> Milestone:
          return self.db.get(Milestone, milestone_id, populate_existing=True)

     @staticmethod
     def capture(milestone: Milestone, amount=None, ref: str = None) -> CaptureConfirmation:
          return CaptureConfirmation(
               contract_id=milestone.contract_id,
               milestone_id=milestone.id,
               amount=milestone.amount if amount is None else Decimal(amount),
               capture_ref=ref or f"CAP-{milestone.id}",
          )

     def fund(self, milestone_id: int) -> Milestone:
          milestone = self.milestone(milestone_id)
          return MilestoneStateMachine.fund(self.db, milestone_id, milestone.amount, self.capture(milestone))

     def submit(self, milestone_id: int, artifact_ref: str = "https://files.example/deliverable.zip") -> Milestone:
          return MilestoneStateMachine.submit_deliverable(self.db, milestone_id, artifact_ref)

     def approve(self, milestone_id: int, cadence: PayoutCadence = PayoutCadence.PERIODIC) -> Milestone:
          return MilestoneStateMachine.approve(self.db, milestone_id, cadence)

     def release(self, milestone_id: int, cadence: PayoutCadence = PayoutCadence.PERIODIC) -> Milestone:
          self.fund(milestone_id)
          self.submit(milestone_id)
          return self.approve(milestone_id, cadence)


@pytest.fixture
def engine(tmp_path):
     eng = build_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
     init_db(eng)
     yield eng
     eng.dispose()


@pytest.fixture
def session_factory(engine):
     return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
     session = session_factory()
     yield session
     session.close()


@pytest.fixture
def helpers(db):
     return EngineHelpers(db)


@pytest.fixture
def rail():
     return FakeRail()


@pytest.fixture
def policy():
     return PayoutPolicy(
          cadence=PayoutCadence.PERIODIC,
          max_retries=3,
          backoff_base_seconds=60,
          backoff_max_seconds=3600,
          processing_timeout_seconds=900,
     )


@pytest.fixture
def fee_schedule():
     return FeeSchedule(percent=Decimal("2"))


@pytest.fixture
def scheduler(db, rail, fee_schedule, policy):
     return PayoutScheduler(db, rail=rail, fee_schedule=fee_schedule, policy=policy)
