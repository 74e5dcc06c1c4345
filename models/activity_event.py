# models/activity_event.py
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, UniqueConstraint, func
from .base import Base, utcnow


class ActivityEvent(Base):
     """
     Append-only audit event. seq is contiguous per contract, starting at 1.
     """
     __tablename__ = "activity_events"
     __table_args__ = (
          UniqueConstraint("contract_id", "seq", name="uq_activity_events_contract_seq"),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     contract_id = Column(
          Integer,
          ForeignKey("contracts.id", ondelete="CASCADE"),
          nullable=False,
          index=True
     )
     seq = Column(Integer, nullable=False)
     kind = Column(String(64), nullable=False, index=True)
     payload = Column(JSON, nullable=False)
     created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

     def __repr__(self):
          return f"<ActivityEvent(contract_id={self.contract_id}, seq={self.seq}, kind='{self.kind}')>"
