"""
Analytics API: derived metrics and pattern insights.

Routes (/analytics):
  GET /           - Feeding cadence, sleep quality, diaper health, smart alerts, weekly trends
  GET /insights   - Feeding-time and wake-window recommendations with confidence
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..services.tracker import BabyTracker, get_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("")
async def get_analytics(
    as_of: Optional[datetime] = Query(None, description="ISO-8601 with offset; defaults to now"),
    timezone: Optional[str] = Query(None, description="IANA zone; defaults to the household zone"),
    tracker: BabyTracker = Depends(get_tracker),
):
    snapshot = await tracker.compute_analytics(as_of, timezone)
    return snapshot.to_dict()


@router.get("/insights")
async def get_insights(
    timezone: Optional[str] = Query(None),
    tracker: BabyTracker = Depends(get_tracker),
):
    insights = await tracker.compute_pattern_insights(timezone)
    return {"insights": [i.to_dict() for i in insights]}
