from abc import ABC, abstractmethod
from typing import Optional

import structlog

from .model.types import PreOrder, Ticket, UserProfile

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def pre_order_paid(self, user: UserProfile, pre_order: PreOrder,
                             ticket: Ticket) -> None: ...

    @abstractmethod
    async def pre_order_failed(self, user: UserProfile,
                               pre_order: PreOrder) -> None: ...


class LogNotifier(Notifier):
    """Stands in for the mail service: records what would be sent."""

    async def pre_order_paid(self, user, pre_order, ticket):
        logger.info(
            "email_ticket_confirmation",
            to=user.email,
            pre_order_id=pre_order.id,
            confirmation_code=ticket.confirmation_code,
        )

    async def pre_order_failed(self, user, pre_order):
        logger.info(
            "email_pre_order_failed", to=user.email, pre_order_id=pre_order.id
        )


async def send_quietly(coro, *, kind: str,
                       pre_order_id: Optional[str] = None) -> None:
    # a lost email never undoes a status change
    try:
        await coro
    except Exception:
        logger.exception(
            "notification_failed", kind=kind, pre_order_id=pre_order_id
        )
