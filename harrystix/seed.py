from decimal import Decimal
from datetime import timedelta

import structlog

from .helpers import local_now
from .model.types import Event, UserProfile

logger = structlog.get_logger(__name__)

DEMO_MEMBER_ID = "demo-member"
DEMO_GUEST_ID = "demo-guest"
DEMO_ADMIN_ID = "demo-admin"


async def bootstrap_demo_data(store) -> None:
    """Seed a few events and users. Only ever called with DEMO_MODE=1."""
    next_friday = local_now() + timedelta(days=(4 - local_now().weekday()) % 7)
    events = [
        Event(id="evt-cindies-fri", title="Cindies Friday",
              venue="Cindies", date=next_friday.timestamp(),
              public_price=Decimal("15.00"), member_price=Decimal("12.00")),
        Event(id="evt-revs-sat", title="Revs Saturday",
              venue="Revolution", date=next_friday.timestamp() + 86400,
              public_price=Decimal("10.00"), member_price=Decimal("7.50")),
    ]
    users = [
        UserProfile(id=DEMO_MEMBER_ID, email="member@harrystix.test",
                    name="Demo Member", is_member=True),
        UserProfile(id=DEMO_GUEST_ID, email="guest@harrystix.test",
                    name="Demo Guest"),
        UserProfile(id=DEMO_ADMIN_ID, email="admin@harrystix.test",
                    name="Demo Admin", is_member=True, is_admin=True),
    ]
    for e in events:
        await store.add_event(e)
    for u in users:
        await store.add_user_profile(u)
    logger.info("demo_data_seeded", events=len(events), users=len(users))
