from __future__ import annotations
from typing import Optional, Dict, Any, List, Iterable
from typing import Callable, AsyncContextManager
from sqlalchemy import text, bindparam, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..orm import Base, EventRow, UserProfileRow, TicketRow
from ..types import (
    PreOrder, PreOrderStatus, Event, UserProfile, Ticket, INACTIVE_STATUSES,
)

Gated = Callable[[], AsyncContextManager[None]]

# columns a guarded update may touch
_UPDATABLE = frozenset({
    "status", "payment_method_id", "gateway_customer_id",
    "gateway_payment_intent_id", "approved_at", "paid_at", "failed_at",
    "cancelled_at", "updated_at",
})

SQL_INSERT_PRE_ORDER = """
  INSERT INTO pre_orders(
    id, user_id, event_id, quantity, total_price, status,
    payment_method_id, gateway_customer_id, gateway_payment_intent_id,
    approved_at, paid_at, failed_at, cancelled_at, created_at, updated_at
  ) VALUES (
    :id, :user_id, :event_id, :quantity, :total_price, :status,
    :payment_method_id, :gateway_customer_id, :gateway_payment_intent_id,
    :approved_at, :paid_at, :failed_at, :cancelled_at, :created_at,
    :updated_at
  )
"""


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)


def _params(p: PreOrder) -> Dict[str, Any]:
    d = {k: getattr(p, k) for k in PreOrder.__dataclass_fields__}
    d["status"] = p.status.value
    return d


def _event(row: EventRow) -> Event:
    return Event(
        id=row.id, title=row.title, venue=row.venue, date=row.date,
        member_price=row.member_price, public_price=row.public_price,
        pre_order_open=bool(row.pre_order_open),
    )


def _user(row: UserProfileRow) -> UserProfile:
    return UserProfile(
        id=row.id, email=row.email, name=row.name,
        is_member=bool(row.is_member), is_admin=bool(row.is_admin),
        gateway_customer_id=row.gateway_customer_id,
    )


def _ticket(row: TicketRow) -> Ticket:
    return Ticket(
        id=row.id, event_id=row.event_id, user_id=row.user_id,
        pre_order_id=row.pre_order_id, quantity=row.quantity,
        total_price=row.total_price,
        confirmation_code=row.confirmation_code,
        created_at=row.created_at, status=row.status,
    )


class PreOrderStore:
    """Relational store. Each call runs in its own short transaction."""

    def __init__(
        self, *, sessions: async_sessionmaker[AsyncSession], gated: Gated
    ) -> None:
        self.sessions = sessions
        self.gated = gated

    # ---- pre-orders
    async def create_pre_order(self, pre_order: PreOrder) -> PreOrder:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(
                        text(SQL_INSERT_PRE_ORDER), _params(pre_order)
                    )
        return pre_order

    async def get_pre_order(self, pre_order_id: str) -> Optional[PreOrder]:
        async with self.gated():
            async with self.sessions() as db:
                row = (await db.execute(
                    text("SELECT * FROM pre_orders WHERE id=:id"),
                    {"id": pre_order_id},
                )).mappings().first()
        return PreOrder.from_row(row) if row else None

    async def list_pre_orders(
        self, *, user_id: Optional[str] = None,
        status: Optional[PreOrderStatus] = None,
    ) -> List[PreOrder]:
        where, params = [], {}
        if user_id is not None:
            where.append("user_id=:user_id")
            params["user_id"] = user_id
        if status is not None:
            where.append("status=:status")
            params["status"] = PreOrderStatus(status).value
        sql = "SELECT * FROM pre_orders"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at, id"
        async with self.gated():
            async with self.sessions() as db:
                rows = (await db.execute(text(sql), params)).mappings().all()
        return [PreOrder.from_row(r) for r in rows]

    async def find_active_in_range(
        self, user_id: str, start_ts: float, end_ts: float
    ) -> Optional[PreOrder]:
        stmt = text("""
            SELECT * FROM pre_orders
            WHERE user_id=:user_id
              AND created_at >= :start AND created_at < :end
              AND status NOT IN :inactive
            ORDER BY created_at, id
            LIMIT 1
        """).bindparams(bindparam("inactive", expanding=True))
        async with self.gated():
            async with self.sessions() as db:
                row = (await db.execute(stmt, {
                    "user_id": user_id,
                    "start": start_ts,
                    "end": end_ts,
                    "inactive": [s.value for s in INACTIVE_STATUSES],
                })).mappings().first()
        return PreOrder.from_row(row) if row else None

    async def update_guarded(
        self, pre_order_id: str, from_statuses: Iterable[PreOrderStatus],
        values: Dict[str, Any], user_id: Optional[str] = None,
    ) -> Optional[PreOrder]:
        unknown = set(values) - _UPDATABLE
        if unknown:
            raise ValueError(f"not updatable: {sorted(unknown)}")
        params = {
            k: (v.value if isinstance(v, PreOrderStatus) else v)
            for k, v in values.items()
        }
        assignments = ", ".join(f"{k}=:{k}" for k in params)
        sql = (
            f"UPDATE pre_orders SET {assignments} "
            "WHERE id=:_id AND status IN :_from"
        )
        if user_id is not None:
            sql += " AND user_id=:_user_id"
            params["_user_id"] = user_id
        sql += " RETURNING *"
        params["_id"] = pre_order_id
        params["_from"] = [PreOrderStatus(s).value for s in from_statuses]
        stmt = text(sql).bindparams(bindparam("_from", expanding=True))
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    row = (await db.execute(stmt, params)).mappings().first()
        return PreOrder.from_row(row) if row else None

    # ---- events / users
    async def add_event(self, event: Event) -> Event:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.merge(EventRow(
                        id=event.id, title=event.title, venue=event.venue,
                        date=event.date, member_price=event.member_price,
                        public_price=event.public_price,
                        pre_order_open=event.pre_order_open,
                    ))
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        async with self.gated():
            async with self.sessions() as db:
                row = await db.get(EventRow, event_id)
        return _event(row) if row else None

    async def set_member_price(self, event_id: str, member_price) -> None:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(
                        update(EventRow)
                        .where(EventRow.id == event_id)
                        .values(member_price=member_price)
                    )

    async def add_user_profile(self, user: UserProfile) -> UserProfile:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.merge(UserProfileRow(
                        id=user.id, email=user.email, name=user.name,
                        is_member=user.is_member, is_admin=user.is_admin,
                        gateway_customer_id=user.gateway_customer_id,
                    ))
        return user

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        async with self.gated():
            async with self.sessions() as db:
                row = await db.get(UserProfileRow, user_id)
        return _user(row) if row else None

    async def set_gateway_customer(
        self, user_id: str, customer_id: str
    ) -> None:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(
                        update(UserProfileRow)
                        .where(UserProfileRow.id == user_id)
                        .values(gateway_customer_id=customer_id)
                    )

    # ---- tickets
    async def create_ticket(self, ticket: Ticket) -> Ticket:
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        db.add(TicketRow(
                            id=ticket.id,
                            event_id=ticket.event_id,
                            user_id=ticket.user_id,
                            pre_order_id=ticket.pre_order_id,
                            quantity=ticket.quantity,
                            total_price=ticket.total_price,
                            confirmation_code=ticket.confirmation_code,
                            status=ticket.status,
                            created_at=ticket.created_at,
                        ))
        except IntegrityError:
            # replayed confirmation racing the first write
            existing = await self.get_ticket_for_pre_order(
                ticket.pre_order_id
            )
            if existing is None:
                raise
            return existing
        return ticket

    async def get_ticket_for_pre_order(
        self, pre_order_id: str
    ) -> Optional[Ticket]:
        async with self.gated():
            async with self.sessions() as db:
                row = (await db.execute(
                    select(TicketRow)
                    .where(TicketRow.pre_order_id == pre_order_id)
                )).scalars().first()
        return _ticket(row) if row else None
