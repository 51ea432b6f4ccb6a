#!/usr/bin/env python3
"""
Create the schema and seed ticket types.

    DATABASE_URL=sqlite:///./vbtix.db python init_inventory.py \
        --event evt-1 --type "Regular:150000:500" --type "VIP:450000:50:4"

Each --type is NAME:PRICE:QUANTITY[:MAX_PER_PURCHASE], price in minor units.
"""
import argparse
import asyncio
import os
import sys
from typing import List, Tuple

from vbtix.infra.sql import make_async_engine, open_gated_session
from vbtix.model import inventory
from vbtix.model.db import create_schema

TicketTypeArg = Tuple[str, int, int, int]


def parse_type(raw: str) -> TicketTypeArg:
    parts = raw.split(":")
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError(
            f"expected NAME:PRICE:QUANTITY[:MAX], got {raw!r}"
        )
    try:
        price, quantity = int(parts[1]), int(parts[2])
        max_per_purchase = int(parts[3]) if len(parts) == 4 else 10
    except ValueError:
        raise argparse.ArgumentTypeError(f"non-numeric field in {raw!r}")
    return parts[0], price, quantity, max_per_purchase


async def seed(database_url: str, event_id: str, currency: str,
               types: List[TicketTypeArg]) -> None:
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        print('✅ schema created')

        async with open_gated_session(SessionAsync, gated) as db:
            for name, price, quantity, max_per_purchase in types:
                tt = await inventory.create_ticket_type(
                    db, event_id=event_id, name=name, price=price,
                    quantity=quantity, max_per_purchase=max_per_purchase,
                    currency=currency,
                )
                print(f'✅ {tt.id}  {name:<16} {quantity:>7} x {price} '
                      f'{currency} (max {max_per_purchase})')
    finally:
        await engine.dispose()


def main() -> int:
    ap = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    ap.add_argument("--database-url", default=os.getenv("DATABASE_URL"))
    ap.add_argument("--event", required=True, help="event id")
    ap.add_argument("--currency", default="idr")
    ap.add_argument("--type", dest="types", action="append", default=[],
                    type=parse_type, metavar="NAME:PRICE:QTY[:MAX]")
    args = ap.parse_args()

    if not args.database_url:
        print("NEED DATABASE_URL! pass --database-url or set it in the env")
        return 1
    asyncio.run(seed(args.database_url, args.event, args.currency,
                     args.types))
    return 0


if __name__ == '__main__':
    sys.exit(main())
