"""
mentorhub.api.routes.analytics — Analytics event intake
========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from mentorhub.api.deps import get_engine
from mentorhub.database.models import AnalyticsEventType, MentorProfile
from mentorhub.services.ranking_service import record_event

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.post("/profile-view/{mentor_id}", status_code=202)
def profile_view(mentor_id: int, engine: Engine = Depends(get_engine)):
    """Record an anonymous profile view; applied by the next score update."""
    with Session(engine) as session:
        if session.get(MentorProfile, mentor_id) is None:
            raise HTTPException(404, "Mentor not found")
    event_id = record_event(engine, mentor_id, AnalyticsEventType.PROFILE_VIEW)
    return {"event_id": event_id}
