"""
Module: lettrage_kernel.models.contact
Responsibility: Minimal persistence for the customers that own invoices.
    The CRM subsystem owns contacts; this table only answers "does the
    contact exist" and supplies the display name for balance reports.
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from datetime import datetime

from sqlalchemy import String, func
from sqlalchemy.orm import Mapped, mapped_column

from lettrage_kernel.db.base import Base


class Contact(Base):
    """Customer whose invoices are settled by the engine."""

    __tablename__ = "contacts"

    display_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Contact {self.id}: {self.display_name}>"
