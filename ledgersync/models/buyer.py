"""
Buyer model.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgersync.models.base import BaseModel

if TYPE_CHECKING:
    from ledgersync.models.sale import Sale


class Buyer(BaseModel):
    """
    A customer invoiced through the ledger.

    owner_id, once set, is the only shopper allowed to claim sales made to
    this buyer.
    """

    __tablename__ = "buyers"

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_contact_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
    )
    owner_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    owner_changed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    owner_changed_by: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    sales: Mapped[list["Sale"]] = relationship(
        "Sale",
        back_populates="buyer",
        lazy="raise",
    )

    def __repr__(self) -> str:
        return f"<Buyer(id={self.id}, name='{self.name}', owner={self.owner_id})>"
