from __future__ import annotations

import argparse

from cvflow.crud.flow import SYSTEM_FLOW_IDS, get_flow, load_system_template, update_flow
from cvflow.db.session import async_session_maker


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Store the bundled system flows in the database")
    p.add_argument(
        "--force",
        action="store_true",
        help="Overwrite system flows that already exist",
    )
    return p.parse_args()


async def main() -> None:
    args = _parse_args()

    async with async_session_maker() as session:
        for flow_id in sorted(SYSTEM_FLOW_IDS):
            if await get_flow(session, flow_id) is not None and not args.force:
                print(f"{flow_id}: exists, skipped")
                continue
            template = load_system_template(flow_id)
            if template is None:
                print(f"{flow_id}: template missing, skipped")
                continue
            flow = await update_flow(
                session,
                flow_id,
                name=template.name,
                description=template.description,
                data=template.to_dict(),
            )
            print(f"{flow.id}: stored ({len(template.nodes)} nodes)")


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
