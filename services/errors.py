# services/errors.py
"""
Error taxonomy for the escrow engine.

Every rejected operation raises one of these before anything is committed,
so the caller always sees either the full change or none of it. The API
layer maps each class to an HTTP status (see main.py).
"""


class EngineError(Exception):
     """Base class for all engine errors."""
     code = "EngineError"

     def __init__(self, message: str, **details):
          super().__init__(message)
          self.message = message
          self.details = details


class ValidationError(EngineError):
     """Malformed input, amount mismatch, duplicate invoice."""
     code = "ValidationError"


class NotFoundError(EngineError):
     """Referenced contract, milestone, payout or invoice does not exist."""
     code = "NotFoundError"


class InvalidStateTransitionError(EngineError):
     """Illegal milestone, contract or payout transition."""
     code = "InvalidStateTransitionError"


class InsufficientFundsError(EngineError):
     """Lock requested without a matching capture confirmation."""
     code = "InsufficientFundsError"


class ConcurrentModificationError(EngineError):
     """Double release, duplicate payout membership, payout already in flight."""
     code = "ConcurrentModificationError"


class PayoutFailedError(EngineError):
     """Payment rail rejected a payout attempt."""
     code = "PayoutFailedError"


class StorageUnavailableError(EngineError):
     """Database or log storage could not be reached. Never retried in the core."""
     code = "StorageUnavailableError"
