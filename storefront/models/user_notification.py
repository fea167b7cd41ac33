# storefront/models/user_notification.py
from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, func

from storefront.core.db import Base


class UserNotification(Base):
    __tablename__ = "user_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("login_users.user_id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String(64), nullable=False)  # e.g. order_delivered, order_refunded
    title_key = Column(String(128), nullable=False)
    content_key = Column(String(128), nullable=False)
    data = Column(Text, nullable=True)  # JSON payload for the i18n template

    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
