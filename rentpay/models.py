from sqlalchemy import (
    Column, String, Integer, DateTime, Date, ForeignKey, Index
)
from sqlalchemy.orm import relationship

from rentpay.database import Base
from rentpay.helpers import now_utc


class AttemptStatus:
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    OUTSTANDING = (PENDING, ACTIVE)
    NON_PAYABLE = (EXPIRED, REJECTED, CANCELLED)

    @classmethod
    def is_terminal(cls, status):
        # Bold may report tokens we don't model (APPROVED, ...); anything
        # that is not outstanding is final.
        return status not in cls.OUTSTANDING


class AccountState:
    AVAILABLE = "available"
    RESERVED = "reserved"
    RENTED = "rented"


class PaymentAttempt(Base):
    __tablename__ = "intentos_pago"

    id = Column(Integer, primary_key=True)
    external_link_id = Column(String, nullable=False, index=True)   # Bold payment_link
    account_id = Column(Integer, ForeignKey("cuenta.id"), nullable=True)
    status = Column(String, nullable=False, default=AttemptStatus.PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    configured_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_intentos_pago_status_created", "status", "created_at"),
    )


class Account(Base):
    __tablename__ = "cuenta"

    id = Column(Integer, primary_key=True)
    email = Column(String)
    platform = Column(String)
    state = Column(String, nullable=False, default=AccountState.AVAILABLE)  # available | reserved | rented | ...
    last_updated = Column(DateTime(timezone=True), nullable=True)


class Payment(Base):
    __tablename__ = "pago"

    id = Column(Integer, primary_key=True)
    state = Column(String, nullable=False)                 # paid | cancelled | pending
    invoice_reference = Column(String, index=True)         # Bold payment_link
    method = Column(String)
    amount = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=now_utc)
    last_updated = Column(DateTime(timezone=True), nullable=True)


class Rental(Base):
    __tablename__ = "renta"

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("cuenta.id"), nullable=False)
    customer_id = Column(String, nullable=False)
    state = Column(String, nullable=False)                 # rented
    starts_on = Column(Date)
    ends_on = Column(Date)
    coupon_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc)


class PaymentRental(Base):
    __tablename__ = "pago_renta"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("pago.id"), nullable=False)
    rental_id = Column(Integer, ForeignKey("renta.id"), nullable=False)


class PendingRenewal(Base):
    """Checkout staged until the customer comes back from Bold."""

    __tablename__ = "renovaciones_pendientes"

    id = Column(Integer, primary_key=True)
    reference = Column(String, unique=True, nullable=False)
    customer_id = Column(String, nullable=False)
    total_amount = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=now_utc)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    payment_id = Column(Integer, ForeignKey("pago.id"), nullable=True)

    items = relationship(
        "PendingRenewalItem",
        back_populates="renewal",
        order_by="PendingRenewalItem.id",
    )


class PendingRenewalItem(Base):
    __tablename__ = "renovaciones_pendientes_item"

    id = Column(Integer, primary_key=True)
    renewal_id = Column(
        Integer, ForeignKey("renovaciones_pendientes.id"), nullable=False
    )
    account_id = Column(Integer, ForeignKey("cuenta.id"), nullable=False)
    starts_on = Column(Date)
    ends_on = Column(Date)
    coupon_id = Column(Integer, nullable=True)

    renewal = relationship("PendingRenewal", back_populates="items")
