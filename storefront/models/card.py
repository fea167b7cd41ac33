# storefront/models/card.py
from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)

from storefront.core.db import Base


class Card(Base):
    __tablename__ = "cards"

    id = Column(Integer, primary_key=True, autoincrement=True)

    product_id = Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)

    # Duplicate keys per product are allowed (shared secrets, re-stocked refunds)
    card_key = Column(Text, nullable=False)

    # Terminal: once True the card is consumed for good
    is_used = Column(Boolean, nullable=False, default=False)

    # Reservation = reserved_order_id set and reserved_at within TTL
    reserved_order_id = Column(String(64), nullable=True)
    reserved_at = Column(DateTime, nullable=True)

    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


Index("cards_product_used_reserved_idx", Card.product_id, Card.is_used, Card.reserved_at)
Index("cards_reserved_order_idx", Card.reserved_order_id)
