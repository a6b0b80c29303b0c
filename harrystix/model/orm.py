from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Numeric,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class PreOrderRow(Base):
    __tablename__ = "pre_orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    # decimal string, fixed at creation
    total_price = Column(String, nullable=False)

    # pending | approved | processing | paid | failed | cancelled
    status = Column(String, nullable=False, default="pending")

    payment_method_id = Column(String, nullable=True)
    gateway_customer_id = Column(String, nullable=True)
    gateway_payment_intent_id = Column(String, nullable=True)

    approved_at = Column(Float, nullable=True)
    paid_at = Column(Float, nullable=True)
    failed_at = Column(Float, nullable=True)
    cancelled_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_pre_orders_user_created", "user_id", "created_at"),
        Index("idx_pre_orders_status", "status"),
    )


class EventRow(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    venue = Column(String, nullable=False, default="")
    date = Column(Float, nullable=True)
    public_price = Column(Numeric(10, 2), nullable=False)
    member_price = Column(Numeric(10, 2), nullable=False)
    pre_order_open = Column(Boolean, nullable=False, default=True)


class UserProfileRow(Base):
    __tablename__ = "user_profiles"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False)
    name = Column(String, nullable=False)
    is_member = Column(Boolean, nullable=False, default=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    gateway_customer_id = Column(String, nullable=True)


class TicketRow(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    # one ticket per paid pre-order
    pre_order_id = Column(String, nullable=False, unique=True)
    quantity = Column(Integer, nullable=False)
    total_price = Column(String, nullable=False)
    confirmation_code = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="confirmed")
    created_at = Column(Float, nullable=False)
