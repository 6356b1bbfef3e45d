"""Pydantic request/response models for all API endpoints."""

from pydantic import BaseModel
from datetime import datetime
from typing import Any, Dict, List, Optional


# Event models

class EventCreateRequest(BaseModel):
    type: str
    user_name: str
    timestamp: Optional[datetime] = None
    amount: Optional[int] = None
    subtype: Optional[str] = None
    sleep_start_time: Optional[datetime] = None
    sleep_end_time: Optional[datetime] = None
    confirmed: bool = False


class EventUpdateRequest(BaseModel):
    user_name: Optional[str] = None
    timestamp: Optional[datetime] = None
    amount: Optional[int] = None
    subtype: Optional[str] = None
    sleep_start_time: Optional[datetime] = None
    sleep_end_time: Optional[datetime] = None


class EventResponse(BaseModel):
    id: int
    type: str
    user_name: str
    timestamp: datetime
    amount: Optional[int] = None
    subtype: Optional[str] = None
    sleep_start_time: Optional[datetime] = None
    sleep_end_time: Optional[datetime] = None


class DeleteResponse(BaseModel):
    deleted: bool
    event_id: int


# Sleep lifecycle models

class SleepStartRequest(BaseModel):
    user_name: str
    timestamp: Optional[datetime] = None


class SleepEndRequest(BaseModel):
    user_name: str
    timestamp: Optional[datetime] = None
    confirmed: bool = False


class ActiveSleepResponse(BaseModel):
    user_name: str
    sleeping: bool
    session: Optional[EventResponse] = None
    elapsed_minutes: Optional[int] = None


# Correction models

class CorrectionRequest(BaseModel):
    kind: str  # one of services.corrections.CORRECTION_KINDS
    apply: bool = False


class CorrectionResponse(BaseModel):
    kind: str
    applied: bool
    corrected: List[Dict[str, Any]]
    anomalies: List[Dict[str, Any]]
    remaining: Dict[str, int]
    iterations: int
    converged: bool

