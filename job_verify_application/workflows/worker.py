import asyncio
import logging
import os
import socket
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from temporalio import workflow
from temporalio.client import Client
from temporalio.worker import Interceptor, Worker, WorkflowInboundInterceptor, WorkflowInterceptorClassInput

from ..config import settings
from ..services import telemetry
from ..services.resilient_client import aclose_client
from . import activities
from .verify_workflow import VerifyJobsWorkflow

WORKFLOW_CLASSES = [VerifyJobsWorkflow]

ACTIVITY_FUNCTIONS = [
    activities.expire_flagged_jobs,
    activities.fetch_verification_candidates,
    activities.verify_candidate_batch,
    activities.mark_jobs_verified,
    activities.record_verification_run,
]


class WorkflowStartLoggingInterceptor(WorkflowInboundInterceptor):
    """Log workflow starts for quick visibility in the worker console."""

    def __init__(self, next: WorkflowInboundInterceptor) -> None:
        super().__init__(next)
        self._logger = logging.getLogger("temporal.worker.workflow")

    async def execute_workflow(self, input: object) -> object:  # noqa: A002
        try:
            info = workflow.info()
            self._logger.info(
                "Workflow run started: type=%s workflow_id=%s run_id=%s task_queue=%s",
                info.workflow_type,
                info.workflow_id,
                info.run_id,
                info.task_queue,
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("Workflow start logging failed: %s", exc)
        return await super().execute_workflow(input)


class WorkflowLoggingInterceptor(Interceptor):
    def workflow_interceptor_class(
        self, input: WorkflowInterceptorClassInput  # noqa: ARG002
    ) -> Optional[type[WorkflowInboundInterceptor]]:
        return WorkflowStartLoggingInterceptor


def _setup_logging(log_dir: Optional[str] = None) -> logging.Logger:
    """Log to stdout and a rotating file under ``settings.log_dir``."""

    directory = Path(log_dir or settings.log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    fmt = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    handlers = [
        RotatingFileHandler(directory / "verify_worker.log", maxBytes=5_000_000, backupCount=3),
        logging.StreamHandler(sys.stdout),
    ]
    logging.basicConfig(level=logging.INFO, format=fmt, handlers=handlers, force=True)
    # Every probe is an httpx request; INFO would log each one.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("temporal.worker")


def build_worker(client: Client) -> Worker:
    return Worker(
        client,
        task_queue=settings.task_queue,
        workflows=WORKFLOW_CLASSES,
        activities=ACTIVITY_FUNCTIONS,
        interceptors=[WorkflowLoggingInterceptor()],
    )


async def main() -> None:
    logger = _setup_logging()
    logger.info("Settings: Temporal=%s, Convex=%s", settings.temporal_address, settings.convex_url)
    if telemetry.is_enabled():
        logger.info("PostHog run telemetry enabled.")
    logger.info("Connecting to Temporal at %s...", settings.temporal_address)
    try:
        client = await asyncio.wait_for(
            Client.connect(
                settings.temporal_address,
                namespace=settings.temporal_namespace,
            ),
            timeout=10.0,
        )
    except asyncio.TimeoutError:
        logger.error("Timed out connecting to Temporal at %s after 10 seconds.", settings.temporal_address)
        return
    except Exception as e:
        logger.exception("Error connecting to Temporal: %s", e)
        return

    worker_id = f"{socket.gethostname()}-{os.getpid()}"
    logger.info(
        "Worker started. id=%s Namespace=%s TaskQueue=%s",
        worker_id,
        settings.temporal_namespace,
        settings.task_queue,
    )
    try:
        await build_worker(client).run()
    except asyncio.CancelledError:
        logger.info("Worker cancelled; shutting down...")
    finally:
        await aclose_client()
        telemetry.force_flush_posthog_logs()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.getLogger("temporal.worker").info("Exiting on CTRL+C")


if __name__ == "__main__":
    run()
