from __future__ import annotations

import argparse

from cvflow.crud.conversation import cleanup_old_conversations
from cvflow.db.session import async_session_maker


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Delete completed or failed conversations older than N days"
    )
    p.add_argument("--days", type=int, default=30)
    return p.parse_args()


async def main() -> None:
    args = _parse_args()

    async with async_session_maker() as session:
        deleted = await cleanup_old_conversations(session, days=args.days)

    print(f"deleted={deleted}")


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
