"""
Corrections API: scan for and repair inconsistent sleep history.

Routes (/corrections):
  GET  /scan   - Issue counts per class (read-only)
  POST /       - Run one pass or all; dry run unless apply=true
"""

import logging

from fastapi import APIRouter, Depends

from .models import CorrectionRequest, CorrectionResponse
from ..services.tracker import BabyTracker, get_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/corrections", tags=["corrections"])


@router.get("/scan")
async def scan(tracker: BabyTracker = Depends(get_tracker)):
    return await tracker.scan_issues()


@router.post("", response_model=CorrectionResponse)
async def run_correction(request: CorrectionRequest, tracker: BabyTracker = Depends(get_tracker)):
    report = await tracker.run_correction_pass(request.kind, apply=request.apply)
    if report.applied:
        logger.info(f"Correction {report.kind} applied via API: {len(report.corrected)} change(s)")
    return CorrectionResponse(**report.to_dict())
