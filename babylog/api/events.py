"""
Events API: caregiving log CRUD and the sleep session lifecycle.

Routes (/events):
  POST   /                 - Record milk/diaper/bath (auto-closes open sleeps) or sleep
  GET    /                 - List events, newest first, optional type/user/date filters
  GET    /{event_id}       - Single event
  PUT    /{event_id}       - Update an event; sleep updates recompute end from amount
  DELETE /{event_id}       - Delete an event

Routes (/sleep):
  POST /start              - Caregiver put the baby down
  POST /end                - Explicit wake-up; 422 with requires_confirmation for unusual durations
  GET  /active/{user_name} - Open session for a caregiver, if any
"""

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from .models import (
    ActiveSleepResponse,
    DeleteResponse,
    EventCreateRequest,
    EventResponse,
    EventUpdateRequest,
    SleepEndRequest,
    SleepStartRequest,
)
from ..db.models import event_to_row
from ..services.tracker import BabyTracker, get_tracker
from ..utils.intervals import minutes_between

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])
sleep_router = APIRouter(prefix="/sleep", tags=["sleep"])


# Used by: every route returning an event
def to_response(event) -> EventResponse:
    return EventResponse(**event_to_row(event))


@router.post("", response_model=EventResponse, status_code=201)
async def create_event(request: EventCreateRequest, tracker: BabyTracker = Depends(get_tracker)):
    fields = request.model_dump(exclude={"type"})
    event = await tracker.record_event(request.type, fields)
    return to_response(event)


@router.get("", response_model=List[EventResponse])
async def list_events(
    type: Optional[str] = Query(None),
    user_name: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=5000),
    tracker: BabyTracker = Depends(get_tracker),
):
    event_filter = tracker.make_filter(
        event_type=type,
        user_name=user_name,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )
    events = await tracker.list_events(event_filter)
    return [to_response(e) for e in events]


@router.get("/{event_id}", response_model=EventResponse)
async def get_event(event_id: int, tracker: BabyTracker = Depends(get_tracker)):
    return to_response(await tracker.get_event(event_id))


@router.put("/{event_id}", response_model=EventResponse)
async def update_event(
    event_id: int,
    request: EventUpdateRequest,
    tracker: BabyTracker = Depends(get_tracker),
):
    event = await tracker.update_event(event_id, request.model_dump(exclude_unset=True))
    return to_response(event)


@router.delete("/{event_id}", response_model=DeleteResponse)
async def delete_event(event_id: int, tracker: BabyTracker = Depends(get_tracker)):
    deleted = await tracker.delete_event(event_id)
    return DeleteResponse(deleted=deleted, event_id=event_id)


@sleep_router.post("/start", response_model=EventResponse, status_code=201)
async def start_sleep(request: SleepStartRequest, tracker: BabyTracker = Depends(get_tracker)):
    session = await tracker.start_sleep(request.user_name, request.timestamp)
    return to_response(session)


@sleep_router.post("/end", response_model=EventResponse)
async def end_sleep(request: SleepEndRequest, tracker: BabyTracker = Depends(get_tracker)):
    """Resend with confirmed=true after the caregiver accepts an unusual duration."""
    session = await tracker.end_sleep(request.user_name, request.timestamp, confirmed=request.confirmed)
    return to_response(session)


@sleep_router.get("/active/{user_name}", response_model=ActiveSleepResponse)
async def get_active_sleep(user_name: str, tracker: BabyTracker = Depends(get_tracker)):
    session = await tracker.get_active_sleep(user_name)
    if session is None:
        return ActiveSleepResponse(user_name=user_name, sleeping=False)
    return ActiveSleepResponse(
        user_name=user_name,
        sleeping=True,
        session=to_response(session),
        elapsed_minutes=int(minutes_between(session.sleep_start_time, tracker.now())),
    )
