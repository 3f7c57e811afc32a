"""
Seed development data: clients, a few shared templates with client
instances, and a handful of legacy rows left for the migration to pick up.

Dates are relative to today so every display status shows up.
Run: python -m scripts.seed_policies  (from backend/)
"""

import asyncio
from datetime import date
from decimal import Decimal

from dateutil.relativedelta import relativedelta

from app.core.constants import SYSTEM_ACTOR
from app.core.logging import get_logger, setup_logging
from app.db.session import async_session
from app.policies.instance_store import InstanceStore
from app.policies.status import utc_today
from app.policies.template_store import TemplateStore
from app.repositories.clients import create_client, get_client
from app.repositories.legacy_policies import find_by_client_number, insert_legacy
from app.repositories.policy_templates import get_by_number_key
from app.validation.duplicate_detector import policy_number_key

logger = get_logger("scripts.seed")

SEED_CLIENTS = [
    {"client_id": "client-001", "name": "Asha Verma", "email": "asha.verma@example.com"},
    {"client_id": "client-002", "name": "Northwind Traders", "email": "accounts@northwind.example"},
    {"client_id": "client-003", "name": "Ravi Menon", "email": None},
]

SEED_TEMPLATES = [
    {"policyNumber": "LIFE-2024-001", "policyType": "Life", "provider": "Acme Life", "description": "Term life cover"},
    {"policyNumber": "HLTH-2024-014", "policyType": "Health", "provider": "CarePlus Health", "description": "Family floater"},
    {"policyNumber": "AUTO-2024-233", "policyType": "Auto", "provider": "RoadSafe Insurance", "description": None},
]

# (client, template policy number, months since start, duration months)
SEED_INSTANCES = [
    ("client-001", "LIFE-2024-001", 2, 12),    # active
    ("client-002", "LIFE-2024-001", 11, 12),   # expiring soon
    ("client-001", "HLTH-2024-014", 13, 12),   # lapsed
    ("client-003", "AUTO-2024-233", 6, 24),
]

# (client, policy number, type, provider, months since start, duration months)
SEED_LEGACY = [
    ("client-002", "HOME-2023-777", "Home", "Shelter Mutual", 10, 12),
    ("client-003", "LIFE-2024-001", "Life", "Acme Life", 1, 12),
    ("client-legacy-only", "BUS-2022-410", "Business", "Atlas Commercial", 3, 36),
]


def _start(today: date, months_ago: int) -> date:
    return today - relativedelta(months=months_ago)


async def seed() -> None:
    today = utc_today()
    async with async_session() as session:
        for data in SEED_CLIENTS:
            if await get_client(session, data["client_id"]) is None:
                await create_client(session, **data)
                logger.info("Seeded client", client_id=data["client_id"])

        templates = TemplateStore(session, actor_id=SYSTEM_ACTOR, today=today)
        by_number = {}
        for payload in SEED_TEMPLATES:
            existing = await get_by_number_key(session, policy_number_key(payload["policyNumber"]))
            if existing is None:
                existing, _ = await templates.create(payload)
                logger.info("Seeded template", policy_number=existing.policy_number)
            by_number[existing.policy_number] = existing

        instances = InstanceStore(session, actor_id=SYSTEM_ACTOR, today=today)
        for client_id, number, months_ago, duration in SEED_INSTANCES:
            template = by_number[number]
            association = await instances.validate_association(client_id, template.id)
            if not association["valid"]:
                continue
            await instances.create(
                client_id,
                template.id,
                {
                    "premiumAmount": "1200.00",
                    "commissionAmount": "120.00",
                    "startDate": _start(today, months_ago).isoformat(),
                    "durationMonths": duration,
                },
            )
            logger.info("Seeded instance", client_id=client_id, policy_number=number)

        for client_id, number, policy_type, provider, months_ago, duration in SEED_LEGACY:
            if await find_by_client_number(session, client_id, number) is not None:
                continue
            start = _start(today, months_ago)
            await insert_legacy(
                session,
                client_id=client_id,
                policy_number=number,
                policy_type=policy_type,
                provider=provider,
                premium_amount=Decimal("850.00"),
                commission_amount=Decimal("42.50"),
                start_date=start,
                expiry_date=start + relativedelta(months=duration),
                duration_months=duration,
            )
            logger.info("Seeded legacy policy", client_id=client_id, policy_number=number)

        await session.commit()
    logger.info("Seed complete")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(seed())
