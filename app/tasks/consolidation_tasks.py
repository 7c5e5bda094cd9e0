"""
GroupLedger - Consolidation Tasks

Background execution of consolidation runs. The worker drives the same
persisted run state machine as in-request execution.
"""

import asyncio
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from celery import shared_task

from app.database import async_session_factory

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ===========================================
# CONSOLIDATION RUN TASKS
# ===========================================

@shared_task(name='app.tasks.consolidation_tasks.execute_consolidation_run_task')
def execute_consolidation_run_task(
    run_id: str,
    organization_id: str,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Execute a pending consolidation run. Not retried: a run executes once."""
    return run_async(_execute_consolidation_run(
        UUID(run_id),
        UUID(organization_id),
        UUID(user_id) if user_id else None,
    ))


async def _execute_consolidation_run(
    run_id: UUID,
    organization_id: UUID,
    user_id: Optional[UUID],
) -> Dict[str, Any]:
    """Async implementation of background run execution."""
    from app.dependencies import build_consolidation_service

    async with async_session_factory() as db:
        service = build_consolidation_service(db)
        run = await service.execute_run(organization_id, run_id, user_id=user_id)

    logger.info(f"Background consolidation run {run.id} finished with status {run.status.value}")
    return {
        "run_id": str(run.id),
        "status": run.status.value,
        "error_message": run.error_message,
    }


def enqueue_consolidation_run(run_id: UUID, organization_id: UUID, user_id: Optional[UUID] = None) -> str:
    """Queue a run for a worker; returns the Celery task id."""
    from app.celery_app import celery_app

    result = celery_app.send_task(
        execute_consolidation_run_task.name,
        args=[str(run_id), str(organization_id), str(user_id) if user_id else None],
    )
    logger.info(f"Queued consolidation run {run_id} as task {result.id}")
    return result.id
