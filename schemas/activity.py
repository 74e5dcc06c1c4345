# schemas/activity.py
from datetime import datetime
from typing import Any, List
from pydantic import BaseModel, ConfigDict


class ActivityEventResponse(BaseModel):
     contract_id: int
     seq: int
     kind: str
     payload: dict[str, Any]
     created_at: datetime

     model_config = ConfigDict(from_attributes=True)


class ActivityListResponse(BaseModel):
     contract_id: int
     since_seq: int
     events: List[ActivityEventResponse]
