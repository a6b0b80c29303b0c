from __future__ import annotations
from dataclasses import dataclass, asdict
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any

from ..helpers import to_iso


class PreOrderStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


# do not count against the one-per-week limit
INACTIVE_STATUSES = (PreOrderStatus.CANCELLED, PreOrderStatus.FAILED)
CANCELLABLE_STATUSES = (PreOrderStatus.PENDING, PreOrderStatus.APPROVED)

# status -> the milestone column it owns
MILESTONES = {
    PreOrderStatus.APPROVED: "approved_at",
    PreOrderStatus.PAID: "paid_at",
    PreOrderStatus.FAILED: "failed_at",
    PreOrderStatus.CANCELLED: "cancelled_at",
}


@dataclass
class PreOrder:
    id: str
    user_id: str
    event_id: str
    quantity: int
    total_price: str
    status: PreOrderStatus
    created_at: float
    updated_at: float
    payment_method_id: Optional[str] = None
    gateway_customer_id: Optional[str] = None
    gateway_payment_intent_id: Optional[str] = None
    approved_at: Optional[float] = None
    paid_at: Optional[float] = None
    failed_at: Optional[float] = None
    cancelled_at: Optional[float] = None

    @classmethod
    def from_row(cls, row) -> "PreOrder":
        d = dict(row)
        d["status"] = PreOrderStatus(d["status"])
        return cls(**{k: d.get(k) for k in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        for k in ("created_at", "updated_at", "approved_at", "paid_at",
                  "failed_at", "cancelled_at"):
            d[k] = to_iso(d[k])
        return d


@dataclass
class Event:
    id: str
    title: str
    member_price: Decimal
    public_price: Decimal
    venue: str = ""
    date: Optional[float] = None
    # false once the event has left its members-only sale window
    pre_order_open: bool = True

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "venue": self.venue,
            "date": to_iso(self.date),
            "member_price": str(self.member_price),
            "public_price": str(self.public_price),
            "pre_order_open": self.pre_order_open,
        }


@dataclass
class UserProfile:
    id: str
    email: str
    name: str
    is_member: bool = False
    is_admin: bool = False
    gateway_customer_id: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        return {"name": self.name, "email": self.email}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Ticket:
    id: str
    event_id: str
    user_id: str
    pre_order_id: str
    quantity: int
    total_price: str
    confirmation_code: str
    created_at: float
    status: str = "confirmed"
