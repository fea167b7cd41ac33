# storefront/services/notifications.py
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.user_notification import UserNotification

logger = logging.getLogger(__name__)


async def create_user_notification(
    db: AsyncSession,
    *,
    user_id: str | None,
    type: str,
    title_key: str,
    content_key: str,
    data: dict[str, Any] | None = None,
) -> bool:
    """
    Fire-and-forget inbox notification.

    Never raises: order state is already committed when this runs, and a
    failed notification must not unwind it.
    """
    if not user_id:
        return False

    try:
        db.add(
            UserNotification(
                user_id=user_id,
                type=type,
                title_key=title_key,
                content_key=content_key,
                data=json.dumps(data, default=str) if data else None,
                is_read=False,
            )
        )
        await db.commit()
        return True
    except Exception:
        await db.rollback()
        logger.exception(
            "notification dispatch failed",
            extra={"user_id": user_id, "type": type},
        )
        return False
