# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with dcbackup Integration.

This example wires the backup scheduler, the per-cluster work queue and
the Kubernetes task client into a FastAPI application. A small webhook
stands in for the reconciliation layer: it receives datacenter resources
and (re)schedules their backups through the work queue.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    DCBACKUP_BUCKET: Bucket receiving backups
    DCBACKUP_IN_CLUSTER: 'true' when running inside the cluster
    KUBECONFIG: Kubeconfig path when running outside the cluster
    DCBACKUP_ADMIN_API_KEY: API key for admin endpoints
"""

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from dcbackup.env import create_config_from_env
from dcbackup.exceptions import DCBackupError
from dcbackup.integrations.fastapi import backup_lifespan, verify_api_key
from dcbackup.kube import load_task_client
from dcbackup.models import ClusterKey, DataCenter
from dcbackup.scheduler import BackupScheduler
from dcbackup.workqueue import WorkQueue

config = create_config_from_env()
scheduler = BackupScheduler(load_task_client(config))
work_queue = WorkQueue(restart_delay=config.workqueue_restart_delay)

app = FastAPI(
    title="Cluster operator with dcbackup",
    description="Example application scheduling cluster backups",
    version="1.0.0",
    lifespan=lambda app: backup_lifespan(app, scheduler, work_queue),
)


@app.put("/datacenters", dependencies=[Depends(verify_api_key)])
async def datacenter_changed(resource: dict) -> dict:
    """
    Replace the backup schedule of a datacenter.

    Cancelling first keeps unchanged definitions from getting a second job.
    """
    try:
        dc = DataCenter.from_resource(resource)
    except (KeyError, TypeError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid datacenter resource: {e}") from e

    async def reschedule():
        scheduler.cancel_backups(dc.key)
        scheduler.schedule_backups(dc)

    operation_id = work_queue.submit(dc.key, reschedule, kind="schedule")
    return {"cluster": dc.key.id, "operation_id": operation_id}


@app.delete("/datacenters/{namespace}/{name}", dependencies=[Depends(verify_api_key)])
async def datacenter_deleted(namespace: str, name: str) -> dict:
    """Stop scheduling a deleted datacenter and release its queue."""
    key = ClusterKey(name=name, namespace=namespace)

    async def forget():
        scheduler.cancel_backups(key)

    work_queue.submit(key, forget, kind="delete")
    work_queue.dispose(key)
    return {"cluster": key.id, "disposed": True}


@app.exception_handler(DCBackupError)
async def dcbackup_error_handler(request, exc: DCBackupError):
    return JSONResponse(status_code=500, content={"error": exc.message, "details": exc.details})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
