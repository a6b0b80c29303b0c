# model/store/_memory.py
from __future__ import annotations
from dataclasses import replace
from typing import Optional, Dict, Any, List, Iterable

from ..types import (
    PreOrder, PreOrderStatus, Event, UserProfile, Ticket, INACTIVE_STATUSES,
)


class PreOrderStore:
    """Process-local store. Same contract as the SQL store, no durability.

    Every check-and-set below runs without an await in between, so on a
    single event loop each guarded update is atomic.
    """

    def __init__(self) -> None:
        self.pre_orders: Dict[str, PreOrder] = {}
        self.events: Dict[str, Event] = {}
        self.users: Dict[str, UserProfile] = {}
        self.tickets: Dict[str, Ticket] = {}

    # ---- pre-orders
    async def create_pre_order(self, pre_order: PreOrder) -> PreOrder:
        if pre_order.id in self.pre_orders:
            raise ValueError(f"duplicate pre-order id {pre_order.id}")
        self.pre_orders[pre_order.id] = replace(pre_order)
        return replace(pre_order)

    async def get_pre_order(self, pre_order_id: str) -> Optional[PreOrder]:
        p = self.pre_orders.get(pre_order_id)
        return replace(p) if p else None

    async def list_pre_orders(
        self, *, user_id: Optional[str] = None,
        status: Optional[PreOrderStatus] = None,
    ) -> List[PreOrder]:
        items = [
            p for p in self.pre_orders.values()
            if (user_id is None or p.user_id == user_id)
            and (status is None or p.status == status)
        ]
        items.sort(key=lambda p: (p.created_at, p.id))
        return [replace(p) for p in items]

    async def find_active_in_range(
        self, user_id: str, start_ts: float, end_ts: float
    ) -> Optional[PreOrder]:
        for p in await self.list_pre_orders(user_id=user_id):
            if p.status in INACTIVE_STATUSES:
                continue
            if start_ts <= p.created_at < end_ts:
                return p
        return None

    async def update_guarded(
        self, pre_order_id: str, from_statuses: Iterable[PreOrderStatus],
        values: Dict[str, Any], user_id: Optional[str] = None,
    ) -> Optional[PreOrder]:
        current = self.pre_orders.get(pre_order_id)
        if current is None or current.status not in tuple(from_statuses):
            return None
        if user_id is not None and current.user_id != user_id:
            return None
        updated = replace(current, **values)
        self.pre_orders[pre_order_id] = updated
        return replace(updated)

    # ---- events / users (read side, plus seeding)
    async def add_event(self, event: Event) -> Event:
        self.events[event.id] = replace(event)
        return replace(event)

    async def get_event(self, event_id: str) -> Optional[Event]:
        e = self.events.get(event_id)
        return replace(e) if e else None

    async def set_member_price(self, event_id: str, member_price) -> None:
        event = self.events[event_id]
        self.events[event_id] = replace(event, member_price=member_price)

    async def add_user_profile(self, user: UserProfile) -> UserProfile:
        self.users[user.id] = replace(user)
        return replace(user)

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        u = self.users.get(user_id)
        return replace(u) if u else None

    async def set_gateway_customer(
        self, user_id: str, customer_id: str
    ) -> None:
        user = self.users[user_id]
        self.users[user_id] = replace(user, gateway_customer_id=customer_id)

    # ---- tickets
    async def create_ticket(self, ticket: Ticket) -> Ticket:
        existing = await self.get_ticket_for_pre_order(ticket.pre_order_id)
        if existing is not None:
            return existing
        self.tickets[ticket.id] = replace(ticket)
        return replace(ticket)

    async def get_ticket_for_pre_order(
        self, pre_order_id: str
    ) -> Optional[Ticket]:
        for t in self.tickets.values():
            if t.pre_order_id == pre_order_id:
                return replace(t)
        return None
