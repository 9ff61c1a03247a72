"""
Notification endpoints
"""

from typing import List
from fastapi import APIRouter, HTTPException, Depends

from .dependencies import MicrofinanceSystem, get_system
from .schemas import NotificationResponse


router = APIRouter()


@router.get("/{user_id}", response_model=List[NotificationResponse])
async def list_notifications(
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Notifications of a user, newest first"""
    notifications = system.notifications.get_notifications(
        user_id, unread_only=unread_only, limit=limit
    )
    return [NotificationResponse.from_notification(n) for n in notifications]


@router.get("/{user_id}/unread-count")
async def unread_count(
    user_id: str,
    system: MicrofinanceSystem = Depends(get_system)
):
    return {"user_id": user_id, "unread": system.notifications.get_unread_count(user_id)}


@router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    system: MicrofinanceSystem = Depends(get_system)
):
    if not system.notifications.mark_as_read(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"id": notification_id, "read": True}
