from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth_provider import AuthProvider
from ..deps import get_provider
from ..models import ActivityBatch

router = APIRouter(tags=["activity"])


@router.post("/activity")
async def activity(body: ActivityBatch, provider: AuthProvider = Depends(get_provider)):
    accepted = 0
    for event_type in body.events:
        if await provider.record_activity(event_type):
            accepted += 1
    return {"accepted": accepted, "tracking": provider.tracker is not None}
