# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dcbackup FastAPI Integration - Admin endpoints for the backup scheduler.

This module provides:
- Lifespan management (scheduler start, queue shutdown)
- Protected admin endpoints to inspect and trigger scheduled backups
- Health checks
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dcbackup.exceptions import SchedulingError
from dcbackup.models import ClusterKey
from dcbackup.scheduler import BackupScheduler
from dcbackup.workqueue import WorkQueue

logger = structlog.get_logger()

DEFAULT_PREFIX = "/admin/backups"

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the DCBACKUP_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("DCBACKUP_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="DCBACKUP_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def register_backup_routes(
    app: FastAPI,
    scheduler: BackupScheduler,
    work_queue: WorkQueue,
    prefix: str = DEFAULT_PREFIX,
) -> None:
    """
    Register backup admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        scheduler: Backup scheduler to inspect and drive
        work_queue: Work queue whose keys are reported
        prefix: URL prefix for endpoints (default: /admin/backups)
    """

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """Report whether the scheduler is firing jobs."""
        running = scheduler.scheduler.running
        return {
            "status": "healthy" if running else "degraded",
            "scheduler_running": running,
            "active_work_queues": len(work_queue),
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_status() -> dict:
        """
        Get scheduled clusters and work queue backlog.

        Returns next fire times per cluster and pending operations per key.
        """
        return {
            "scheduled": {
                key.id: [
                    t.isoformat() if t else None for t in scheduler.next_fire_times(key)
                ]
                for key in scheduler.scheduled_keys()
            },
            "work_queues": {
                getattr(key, "id", str(key)): work_queue.pending(key)
                for key in work_queue.keys()
            },
        }

    @app.post(
        f"{prefix}/clusters/{{namespace}}/{{name}}/backups/{{index}}",
        dependencies=[Depends(verify_api_key)],
    )
    async def trigger_backup(namespace: str, name: str, index: int) -> dict:
        """
        Create the backup task of a scheduled definition now.

        Args:
            namespace: Cluster namespace
            name: Datacenter resource name
            index: Position of the definition in scheduledBackups
        """
        key = ClusterKey(name=name, namespace=namespace)
        try:
            task = await scheduler.trigger_backup(key, index)
        except SchedulingError as e:
            raise HTTPException(status_code=404, detail=e.message) from e

        if task is None:
            raise HTTPException(
                status_code=502,
                detail=f"Backup task creation failed for {key.id}",
            )

        logger.info("backup_triggered_manually", cluster=key.id, task=task.name)
        return {
            "cluster": key.id,
            "task": task.name,
            "namespace": task.namespace,
            "backup": task.backup.to_dict() if task.backup else None,
        }

    @app.delete(
        f"{prefix}/clusters/{{namespace}}/{{name}}/schedule",
        dependencies=[Depends(verify_api_key)],
    )
    async def cancel_schedule(namespace: str, name: str) -> dict:
        """Cancel every scheduled backup of a cluster."""
        key = ClusterKey(name=name, namespace=namespace)
        return {"cluster": key.id, "cancelled": scheduler.cancel_backups(key)}


@asynccontextmanager
async def backup_lifespan(
    app: FastAPI,
    scheduler: BackupScheduler,
    work_queue: WorkQueue,
    prefix: str = DEFAULT_PREFIX,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: backup_lifespan(app, scheduler, queue))

    Args:
        app: FastAPI application
        scheduler: Backup scheduler, started on entry
        work_queue: Work queue, shut down on exit
        prefix: URL prefix for admin endpoints
    """
    logger.info("backup_lifespan_starting")

    app.state.backup_scheduler = scheduler
    app.state.work_queue = work_queue
    register_backup_routes(app, scheduler, work_queue, prefix)
    scheduler.start()

    logger.info("backup_lifespan_started")

    try:
        yield
    finally:
        logger.info("backup_lifespan_stopping")
        scheduler.shutdown()
        await work_queue.shutdown()
        logger.info("backup_lifespan_stopped")


def get_backup_scheduler(app: FastAPI) -> BackupScheduler:
    """
    Get the backup scheduler from a FastAPI app.

    Raises:
        RuntimeError: If backup_lifespan was not used
    """
    scheduler = getattr(app.state, "backup_scheduler", None)
    if scheduler is None:
        raise RuntimeError("dcbackup not initialized. Use backup_lifespan first.")
    return scheduler


def get_work_queue(app: FastAPI) -> WorkQueue:
    """
    Get the work queue from a FastAPI app.

    Raises:
        RuntimeError: If backup_lifespan was not used
    """
    work_queue = getattr(app.state, "work_queue", None)
    if work_queue is None:
        raise RuntimeError("dcbackup not initialized. Use backup_lifespan first.")
    return work_queue
