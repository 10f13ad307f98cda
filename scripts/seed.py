"""Seed a demo customer, API key and unpaid order."""
from __future__ import annotations

from uuid import uuid4

from dotenv import load_dotenv

load_dotenv()

from app import models
from app.config import get_settings
from app.db import create_all, get_sessionmaker, init_engine
from app.utils.apikey import gen_key

DEMO_ORDER_TOTAL = 150000


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    init_engine()
    create_all()
    session = get_sessionmaker()()

    try:
        user = session.query(models.User).filter_by(username="demo").one_or_none()
        if user is None:
            user = models.User(username="demo", email="demo@example.com")
            session.add(user)
            session.flush()

        raw_key, prefix, key_hash = gen_key()
        session.add(
            models.ApiKey(
                name=f"demo-{uuid4().hex[:8]}",
                prefix=prefix,
                key_hash=key_hash,
                user_id=user.id,
                is_active=True,
            )
        )
        order = models.Order(
            order_number=f"ORD-{uuid4().hex[:10].upper()}",
            user_id=user.id,
            total_amount=DEMO_ORDER_TOTAL,
        )
        session.add(order)
        session.commit()

        print("Seed data inserted.")
        print(f"    Authorization: Bearer {raw_key}")
        print(f"    order_id={order.id} order_number={order.order_number} total={order.total_amount}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
