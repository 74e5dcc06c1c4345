# services/contract_lock.py
"""
Per-contract exclusive section.

All mutating operations on one contract run inside `locked_contract`, which
combines an in-process re-entrant lock keyed by contract id with a
SELECT ... FOR UPDATE on the contract row. Both are held until the unit of
work commits or rolls back. Different contracts never share a lock.
"""
import logging
import threading
from contextlib import contextmanager, ExitStack
from typing import Generator, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Contract
from services.errors import NotFoundError, StorageUnavailableError

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
     """Lazily created re-entrant lock per key."""

     def __init__(self):
          self._guard = threading.Lock()
          self._locks: dict = {}

     def get(self, key) -> threading.RLock:
          with self._guard:
               lock = self._locks.get(key)
               if lock is None:
                    lock = threading.RLock()
                    self._locks[key] = lock
               return lock


contract_locks = KeyedLockRegistry()

# Nesting depth per contract id for the current thread
_local = threading.local()


def _depths() -> dict:
     if not hasattr(_local, "depths"):
          _local.depths = {}
     return _local.depths


def _deferred() -> list:
     if not hasattr(_local, "deferred"):
          _local.deferred = []
     return _local.deferred


def hold_for_unit_of_work(lock: threading.RLock) -> None:
     """
     Acquire a secondary lock and keep it until the enclosing contract unit
     of work has committed or rolled back.

     Secondary locks are always taken after the contract lock.
     """
     if not any(_depths().values()):
          raise RuntimeError("hold_for_unit_of_work requires an active locked_contract section")
     lock.acquire()
     _deferred().append(lock)


def _release_deferred() -> None:
     deferred = _deferred()
     while deferred:
          deferred.pop().release()


def load_contract_for_update(db: Session, contract_id: int) -> Contract:
     """Load the contract row with a row lock, refreshing any cached state."""
     contract = (
          db.query(Contract)
          .filter(Contract.id == contract_id)
          .populate_existing()
          .with_for_update()
          .first()
     )
     if contract is None:
          raise NotFoundError(f"Contract with ID {contract_id} not found", contract_id=contract_id)
     return contract


@contextmanager
def locked_contract(db: Session, contract_id: int, commit: bool = True) -> Generator[Contract, None, None]:
     """
     Run a unit of work against one contract under its exclusive section.

     Usage:
          with locked_contract(db, contract_id) as contract:
               ...  # mutate, flush

     Commits on success (unless commit=False), rolls back and re-raises on
     any error. Nested use on the same thread re-enters the lock and leaves
     commit/rollback to the outermost block.
     """
     depths = _depths()
     with contract_locks.get(contract_id):
          outermost = depths.get(contract_id, 0) == 0
          depths[contract_id] = depths.get(contract_id, 0) + 1
          try:
               contract = load_contract_for_update(db, contract_id)
               yield contract
               if outermost and commit:
                    db.commit()
          except SQLAlchemyError as e:
               if outermost:
                    db.rollback()
               logger.error(f"CONTRACT_UOW_STORAGE_ERROR: contract {contract_id} - {e}")
               raise StorageUnavailableError(f"Storage unavailable: {e}", contract_id=contract_id) from e
          except Exception:
               if outermost:
                    db.rollback()
               raise
          finally:
               depths[contract_id] -= 1
               if not any(depths.values()):
                    _release_deferred()


@contextmanager
def locked_contracts(db: Session, contract_ids: Iterable[int]) -> Generator[list, None, None]:
     """
     Lock several contracts (ascending id order) as one unit of work.

     Used when a single payout touches releases from more than one contract.
     """
     ordered = sorted(set(contract_ids))
     try:
          with ExitStack() as stack:
               contracts = [
                    stack.enter_context(locked_contract(db, contract_id, commit=False))
                    for contract_id in ordered
               ]
               yield contracts
               db.commit()
     except SQLAlchemyError as e:
          db.rollback()
          raise StorageUnavailableError(f"Storage unavailable: {e}") from e
     except Exception:
          db.rollback()
          raise
