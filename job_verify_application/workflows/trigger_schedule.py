from __future__ import annotations

import asyncio
import time

from temporalio.client import Client
from temporalio.service import RPCError, RPCStatusCode

from ..config import settings
from .create_schedule import load_schedule_configs


async def main() -> None:
    """Run every configured verification schedule once, starting a one-off workflow if it is missing."""

    client = await Client.connect(
        settings.temporal_address,
        namespace=settings.temporal_namespace,
    )
    for cfg in load_schedule_configs():
        handle = client.get_schedule_handle(cfg.id)
        try:
            await handle.trigger()
            print(f"Triggered {cfg.id} once.")
        except RPCError as e:
            if e.status != RPCStatusCode.NOT_FOUND:
                raise
            print(f"Schedule {cfg.id} not found; starting one-off {cfg.workflow} instead.")
            wf = await client.start_workflow(
                cfg.workflow,
                id=f"{cfg.workflow}-oneshot-{int(time.time())}",
                task_queue=cfg.task_queue or settings.task_queue,
            )
            print(f"Started one-off workflow id={wf.id} run={wf.run_id}")


if __name__ == "__main__":
    asyncio.run(main())
