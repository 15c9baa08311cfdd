from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import List

import yaml
from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleAlreadyRunningError,
    ScheduleIntervalSpec,
    ScheduleOverlapPolicy,
    SchedulePolicy,
    ScheduleSpec,
    ScheduleUpdate,
)
from temporalio.service import RPCError, RPCStatusCode

from ..config import resolve_config_path, settings

SCHEDULES_YAML = resolve_config_path("schedules.yaml")

_OVERLAP_POLICIES = {
    "skip": ScheduleOverlapPolicy.SKIP,
    "buffer_one": ScheduleOverlapPolicy.BUFFER_ONE,
    "buffer_all": ScheduleOverlapPolicy.BUFFER_ALL,
    "cancel_other": ScheduleOverlapPolicy.CANCEL_OTHER,
}


@dataclass
class ScheduleConfig:
    id: str
    workflow: str
    interval_seconds: int
    task_queue: str | None = None
    catchup_window_hours: int = 6
    overlap: str = "skip"


def load_schedule_configs(path: Path = SCHEDULES_YAML) -> List[ScheduleConfig]:
    data = yaml.safe_load(path.read_text()) if path.exists() else {}
    items = data.get("schedules", []) if isinstance(data, dict) else []
    configs: List[ScheduleConfig] = []
    for item in items:
        if not isinstance(item, dict) or "id" not in item or "workflow" not in item:
            continue
        configs.append(
            ScheduleConfig(
                id=str(item["id"]),
                workflow=str(item["workflow"]),
                interval_seconds=int(item.get("interval_seconds", 86_400)),
                task_queue=item.get("task_queue"),
                catchup_window_hours=int(item.get("catchup_window_hours", 6)),
                overlap=str(item.get("overlap", "skip")).lower(),
            )
        )
    return configs


def build_schedule(cfg: ScheduleConfig) -> Schedule:
    spec = ScheduleSpec(intervals=[ScheduleIntervalSpec(every=timedelta(seconds=cfg.interval_seconds))])
    action = ScheduleActionStartWorkflow(
        cfg.workflow,
        id=f"wf-{cfg.id}",
        task_queue=cfg.task_queue or settings.task_queue,
    )
    policy = SchedulePolicy(
        catchup_window=timedelta(hours=cfg.catchup_window_hours),
        overlap=_OVERLAP_POLICIES.get(cfg.overlap, ScheduleOverlapPolicy.SKIP),
    )
    return Schedule(action=action, spec=spec, policy=policy)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create or update the verification schedules")
    parser.add_argument(
        "--skip-trigger",
        action="store_true",
        help="Do not run a verification sweep immediately when a schedule is first created.",
    )
    return parser.parse_args()


async def upsert_schedules(client: Client, configs: List[ScheduleConfig], *, skip_trigger: bool = False) -> None:
    for cfg in configs:
        schedule = build_schedule(cfg)
        handle = client.get_schedule_handle(cfg.id)
        try:
            await handle.describe()
            await handle.update(lambda _: ScheduleUpdate(schedule=schedule))
            print(f"Updated schedule: {cfg.id}")
        except ScheduleAlreadyRunningError:
            print(f"Schedule already running: {cfg.id}")
        except RPCError as e:
            if e.status != RPCStatusCode.NOT_FOUND:
                raise
            await client.create_schedule(id=cfg.id, schedule=schedule, trigger_immediately=not skip_trigger)
            print(f"Created schedule: {cfg.id}")


async def main(*, skip_trigger: bool = False) -> None:
    client = await Client.connect(
        settings.temporal_address,
        namespace=settings.temporal_namespace,
    )
    await upsert_schedules(client, load_schedule_configs(), skip_trigger=skip_trigger)


if __name__ == "__main__":
    args = _parse_args()
    asyncio.run(main(skip_trigger=bool(args.skip_trigger)))
