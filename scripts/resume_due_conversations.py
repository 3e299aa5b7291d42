from __future__ import annotations

import argparse

from cvflow.crud.conversation import list_due_conversations
from cvflow.db.session import async_session_maker
from cvflow.services.flow_runner import FlowNotFoundError, FlowRunner


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Continue conversations whose wait has elapsed")
    p.add_argument("--limit", type=int, default=100)
    return p.parse_args()


async def main() -> None:
    args = _parse_args()

    async with async_session_maker() as session:
        due = await list_due_conversations(session, limit=args.limit)
        session_ids = [state.session_id for state in due]
        runner = FlowRunner(session=session)
        for session_id in session_ids:
            try:
                snapshot = await runner.resume(session_id)
            except FlowNotFoundError as e:
                print(f"{session_id}: flow {e} no longer exists")
                continue
            print(f"{session_id}: {snapshot.status} at {snapshot.current_node_id}")

    print(f"resumed={len(session_ids)}")


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
