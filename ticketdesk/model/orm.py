from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class SaleRow(Base):
    __tablename__ = "ticket_sales"
    id = Column(String, primary_key=True)
    reference = Column(String, nullable=False, unique=True)
    ticket_id = Column(String, nullable=False, unique=True)

    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=False)
    phone = Column(String, nullable=False, default="")

    ticket_type = Column(String, nullable=False)
    ticket_type_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)

    payment_method = Column(String, nullable=False)
    # pending | pending_transfer | pending_approval | completed | failed
    # | rejected | refunded
    payment_status = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="NGN")
    paid_at = Column(Float, nullable=True)
    transfer_marked_at = Column(Float, nullable=True)
    transfer_clicked_at = Column(Float, nullable=True)
    transfer_click_count = Column(Integer, nullable=False, default=0)
    user_ip_address = Column(String, nullable=True)
    last_reminder_sent = Column(Float, nullable=True)
    approved_by = Column(String, nullable=True)
    rejected_at = Column(Float, nullable=True)
    rejected_by = Column(String, nullable=True)
    rejection_reason = Column(String, nullable=True)
    failed_at = Column(Float, nullable=True)
    failure_reason = Column(String, nullable=True)
    refunded_at = Column(Float, nullable=True)

    # pending_payment | confirmed | cancelled | rejected
    status = Column(String, nullable=False)
    qr_code = Column(String, nullable=True)
    is_used = Column(Boolean, nullable=False, default=False)
    used_at = Column(Float, nullable=True)
    verified_by = Column(String, nullable=True)
    email_sent = Column(Boolean, nullable=False, default=False)
    email_sent_at = Column(Float, nullable=True)
    admin_notes = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    tickets = relationship(
        "TicketRow",
        back_populates="sale",
        order_by="TicketRow.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        # same-ticket-type transfer guard
        Index(
            "ix_sales_ip_type_clicked",
            "user_ip_address", "ticket_type", "transfer_clicked_at",
        ),
        Index("ix_sales_status_marked", "payment_status", "transfer_marked_at"),
        Index("ix_sales_created_at", "created_at"),
    )


class TicketRow(Base):
    __tablename__ = "tickets"
    ticket_id = Column(String, primary_key=True)
    sale_id = Column(
        String, ForeignKey("ticket_sales.id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    standard_ticket_id = Column(String, nullable=False)
    generated_at = Column(Float, nullable=False)
    qr_code = Column(String, nullable=True)
    is_used = Column(Boolean, nullable=False, default=False)
    used_at = Column(Float, nullable=True)
    verified_by = Column(String, nullable=True)

    sale = relationship("SaleRow", back_populates="tickets")
