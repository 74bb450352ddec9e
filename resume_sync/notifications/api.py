"""Thin wrapper over the notifications endpoints."""

from __future__ import annotations

from typing import Any

from ..client.client import ApiResponse, RequestClient
from .models import NotificationPage

NOTIFICATIONS_ENDPOINT = "/notifications"
NOTIFICATIONS_STREAM_ENDPOINT = "/notifications/stream"


class NotificationsAPI:
    def __init__(self, client: RequestClient):
        self.client = client

    async def list(self, skip: int = 0, limit: int = 50, force: bool = False) -> NotificationPage:
        response = await self.client.get(
            NOTIFICATIONS_ENDPOINT,
            params={"limit": limit, "skip": skip, "sort": "createdAt", "order": "desc"},
            skip_cache=force,
        )
        return parse_page(response.payload)

    async def mark_read(self, notification_id: str) -> ApiResponse:
        return await self.client.patch(f"{NOTIFICATIONS_ENDPOINT}/{notification_id}/read")

    async def mark_all_read(self) -> ApiResponse:
        return await self.client.patch(f"{NOTIFICATIONS_ENDPOINT}/read-all")

    async def dismiss(self, notification_id: str) -> ApiResponse:
        return await self.client.delete(f"{NOTIFICATIONS_ENDPOINT}/{notification_id}")

    async def clear_all(self) -> ApiResponse:
        return await self.client.delete(NOTIFICATIONS_ENDPOINT)


def parse_page(payload: Any) -> NotificationPage:
    """Accept ``{notifications, count|total}`` or a bare list."""
    if isinstance(payload, list):
        return NotificationPage(notifications=payload)
    if not isinstance(payload, dict):
        return NotificationPage()
    return NotificationPage.model_validate(payload)
