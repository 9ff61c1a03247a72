"""
Audit trail endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query

from .dependencies import MicrofinanceSystem, get_system
from ..audit import AuditAction, AuditCategory


router = APIRouter()


@router.get("")
async def list_audit_events(
    action: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    target_resource: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Query the audit trail, oldest first"""
    try:
        action_filter = AuditAction(action) if action else None
        category_filter = AuditCategory(category) if category else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if target_resource:
        events = system.audit_trail.get_events_for_resource(target_resource)
        if action_filter:
            events = [e for e in events if e.action == action_filter]
        if category_filter:
            events = [e for e in events if e.category == category_filter]
        if user_id:
            events = [e for e in events if e.user_id == user_id]
        events = events[-limit:]
    else:
        events = system.audit_trail.get_events(
            action=action_filter,
            category=category_filter,
            user_id=user_id,
            limit=limit
        )

    return {
        "events": [event.to_dict() for event in events],
        "count": len(events)
    }


@router.get("/verify")
async def verify_audit_trail(system: MicrofinanceSystem = Depends(get_system)):
    """Check the hash chain of the audit trail"""
    return system.audit_trail.verify_integrity()
