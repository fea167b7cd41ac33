from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storefront.core.db import Base


class Order(Base):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # charged amount, after the points discount
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # pending | paid | delivered | cancelled | refunded | failed
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    trade_no: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Delivered content; card_ids is a comma separated list of card ids
    card_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    card_ids: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    points_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def card_id_list(self) -> list[int]:
        if not self.card_ids:
            return []
        return [int(x) for x in self.card_ids.split(",") if x.strip()]


Index("orders_status_created_idx", Order.status, Order.created_at)
Index("orders_product_status_idx", Order.product_id, Order.status)
Index("orders_user_idx", Order.user_id)
