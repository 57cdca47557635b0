#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
API routes module, defines FastAPI routes for operating agent instances
"""

import json
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

from instance_manager.config import config
from instance_manager.db.session import get_db, init_db
from instance_manager.executors.docker.errors import DockerError, NotFoundError
from instance_manager.executors.docker.persistent_container import (
    PersistentContainerManager,
    get_container_manager,
)
from instance_manager.models.instance import Instance
from instance_manager.models.subscription import Subscription, SubscriptionStatus
from instance_manager.schemas.instance import (
    BulkActionResult,
    CreateInstanceRequest,
    InstanceStatus,
    RollingUpdateResponse,
)
from instance_manager.services import instance_store, workspace
from instance_manager.services.owner_locks import OwnerLocks, get_owner_locks
from instance_manager.services.rolling_updater import (
    RollingUpdater,
    get_rolling_updater,
    summarize,
)
from instance_manager.services.subscription_enforcer import SubscriptionEnforcer
from shared.logger import setup_logger

# Setup logger
logger = setup_logger(__name__)

_started_at = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    try:
        await get_container_manager().image_builder.ensure_images_ready()
    except DockerError as e:
        # Instance creation retries the build on demand
        logger.error(f"Image preparation failed at startup: {e}")

    enforcer = None
    if config.ENFORCER_ENABLED:
        enforcer = SubscriptionEnforcer()
        enforcer.start()
    yield
    if enforcer is not None:
        await enforcer.stop()


# Create FastAPI app
app = FastAPI(
    title="Instance Manager API",
    description="API for operating per-owner agent containers",
    lifespan=lifespan,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Middleware: Log request duration and source IP"""
    start_time = time.time()
    client_ip = request.client.host if request.client else "unknown"

    response = await call_next(request)

    process_time_ms = (time.time() - start_time) * 1000
    logger.info(f"Request: {request.method} {request.url.path} from {client_ip} - "
                f"Status: {response.status_code} - Time: {process_time_ms:.0f}ms")

    return response


def verify_admin(request: Request, token: Optional[str] = Query(None)) -> None:
    """Bearer token auth. SSE clients cannot set headers, so ?token= is accepted too."""
    admin_token = config.ADMIN_TOKEN
    if not admin_token:
        raise HTTPException(status_code=503, detail="Admin not configured (set ADMIN_TOKEN)")
    auth_header = request.headers.get("Authorization")
    if auth_header != f"Bearer {admin_token}" and token != admin_token:
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


@app.get("/admin/api/overview", dependencies=[Depends(verify_admin)])
async def overview(
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        docker_info = await manager.get_docker_info()
    except DockerError as e:
        logger.warning(f"Could not read Docker info: {e}")
        docker_info = None
    try:
        containers = await manager.list_managed_containers()
    except DockerError as e:
        logger.warning(f"Could not list containers: {e}")
        containers = []

    running = sum(1 for c in containers if c.state == "running")
    return {
        "instances": db.query(func.count(Instance.id)).scalar() or 0,
        "subscriptions": {
            "total": db.query(func.count(Subscription.id)).scalar() or 0,
            "active": db.query(func.count(Subscription.id))
            .filter(Subscription.status == SubscriptionStatus.ACTIVE.value)
            .scalar()
            or 0,
        },
        "containers": {
            "total": len(containers),
            "running": running,
            "stopped": len(containers) - running,
        },
        "docker": docker_info,
        "uptime": time.time() - _started_at,
    }


@app.get("/admin/api/containers", dependencies=[Depends(verify_admin)])
async def list_containers(
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        containers = await manager.list_managed_containers()
    except DockerError as e:
        logger.error(f"Error listing containers: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    enriched: List[Dict[str, Any]] = []
    for container in containers:
        instance = db.query(Instance).filter(Instance.container_id == container.id).first()
        item = container.model_dump(mode="json")
        item.update(
            {
                "instance_id": instance.id if instance else None,
                "owner_id": instance.owner_id if instance else None,
                "model": instance.model if instance else None,
                "db_status": instance.status if instance else None,
                "started_at": instance.started_at.isoformat() if instance and instance.started_at else None,
            }
        )
        enriched.append(item)
    return {"containers": enriched}


@app.get("/admin/api/containers/{container_id}/stats", dependencies=[Depends(verify_admin)])
async def container_stats(
    container_id: str,
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        stats = await manager.get_container_stats(container_id)
        return stats.to_dict()
    except Exception as e:
        logger.error(f"Error getting stats for {container_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/admin/api/containers/{container_id}/status", dependencies=[Depends(verify_admin)])
async def container_status(
    container_id: str,
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    detailed = await manager.get_detailed_status(container_id)
    return detailed.to_dict()


@app.get("/admin/api/containers/{container_id}/logs", dependencies=[Depends(verify_admin)])
async def container_logs(
    container_id: str,
    tail: int = Query(200, ge=1, le=10000),
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        logs = await manager.get_logs(container_id, tail)
        return {"logs": logs}
    except Exception as e:
        logger.error(f"Error getting logs for {container_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def _sse(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


@app.get("/admin/api/containers/{container_id}/logs/stream", dependencies=[Depends(verify_admin)])
async def container_logs_stream(
    container_id: str,
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    """Follow container logs as Server-Sent Events"""

    async def event_stream():
        try:
            log_stream = await manager.stream_logs(container_id)
        except Exception as e:
            logger.warning(f"Failed to start log stream for {container_id}: {e}")
            yield _sse({"error": "Failed to start log stream"})
            return

        # Client disconnect cancels this generator, the finally releases the connection
        try:
            async for line in log_stream:
                yield _sse({"log": line})
            yield _sse({"done": True})
        except DockerError as e:
            yield _sse({"error": str(e)})
        finally:
            await log_stream.cancel()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/admin/api/containers/{container_id}/stop", dependencies=[Depends(verify_admin)])
async def stop_container(
    container_id: str,
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        await manager.stop_instance(container_id)
        instance_store.update_status_by_container(db, container_id, InstanceStatus.STOPPED)
        return {"ok": True, "action": "stopped"}
    except Exception as e:
        logger.error(f"Error stopping container {container_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/admin/api/containers/{container_id}/start", dependencies=[Depends(verify_admin)])
async def start_container(
    container_id: str,
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
    owner_locks: OwnerLocks = Depends(get_owner_locks),
):
    """Start a container, recreating it from its instance record when it is gone"""
    try:
        await manager.start_instance(container_id)
        instance_store.update_status_by_container(db, container_id, InstanceStatus.PENDING)
        return {"ok": True, "action": "started"}
    except NotFoundError:
        instance = db.query(Instance).filter(Instance.container_id == container_id).first()
        if instance is None:
            raise HTTPException(status_code=404, detail=f"Container {container_id} not found")
        logger.info(f"Container {container_id[:12]} not found, recreating for owner {instance.owner_id}")
        async with owner_locks.lock(instance.owner_id):
            created = await _provision(db, manager, instance)
        return {"ok": True, "action": "recreated", "container_id": created["container_id"]}
    except Exception as e:
        logger.error(f"Error starting container {container_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/admin/api/containers/{container_id}/restart", dependencies=[Depends(verify_admin)])
async def restart_container(
    container_id: str,
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        await manager.restart_instance(container_id)
        instance_store.update_status_by_container(db, container_id, InstanceStatus.PENDING)
        return {"ok": True, "action": "restarted"}
    except Exception as e:
        logger.error(f"Error restarting container {container_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/admin/api/containers/{container_id}/delete", dependencies=[Depends(verify_admin)])
async def delete_container(
    container_id: str,
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        await manager.delete_instance(container_id)
        instance_store.detach_container(db, container_id)
        return {"ok": True, "action": "deleted"}
    except Exception as e:
        logger.error(f"Error deleting container {container_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


async def _provision(
    db: Session,
    manager: PersistentContainerManager,
    instance: Instance,
) -> Dict[str, Any]:
    """Create the instance's container and record the outcome on the instance"""
    try:
        container_id = await manager.create_instance(instance_store.config_for_instance(instance))
    except Exception as e:
        logger.error(f"Error creating container for owner {instance.owner_id}: {e}")
        instance_store.record_instance_error(db, instance, str(e))
        raise HTTPException(status_code=500, detail=str(e))

    instance_store.record_container_created(db, instance, container_id)
    return {
        "ok": True,
        "instance_id": instance.id,
        "container_id": container_id,
        "status": instance.status,
    }


@app.post("/admin/api/instances", dependencies=[Depends(verify_admin)])
async def create_instance(
    request: CreateInstanceRequest,
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
    owner_locks: OwnerLocks = Depends(get_owner_locks),
):
    """Create an owner's instance, replacing the container of an existing one"""
    try:
        workspace.validate_owner_id(request.owner_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    async with owner_locks.lock(request.owner_id):
        instance = instance_store.upsert_owner_instance(
            db, request.owner_id, request.model, request.secrets
        )
        return await _provision(db, manager, instance)


@app.post("/admin/api/instances/{instance_id}/recreate", dependencies=[Depends(verify_admin)])
async def recreate_instance(
    instance_id: int,
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
    owner_locks: OwnerLocks = Depends(get_owner_locks),
):
    """Replace an instance's container using its stored settings"""
    instance = db.get(Instance, instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail=f"Instance {instance_id} not found")

    async with owner_locks.lock(instance.owner_id):
        return await _provision(db, manager, instance)


@app.get("/admin/api/owners/{owner_id}/workspace", dependencies=[Depends(verify_admin)])
async def list_workspace(
    owner_id: str,
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        files = workspace.list_workspace_files(owner_id, manager.data_dir)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"files": files}


@app.get("/admin/api/owners/{owner_id}/workspace/{file_name}", dependencies=[Depends(verify_admin)])
async def read_workspace_file(
    owner_id: str,
    file_name: str,
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        return workspace.read_workspace_file(owner_id, file_name, manager.data_dir)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except OSError as e:
        logger.error(f"Error reading workspace file {file_name} for owner {owner_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to read file")


async def _bulk_action(
    db: Session,
    manager: PersistentContainerManager,
    states: tuple,
    action: str,
) -> Dict[str, Any]:
    containers = await manager.list_managed_containers()
    results: List[BulkActionResult] = []
    for container in containers:
        if container.state not in states:
            continue
        try:
            if action == "stop":
                await manager.stop_instance(container.id)
                instance_store.update_status_by_container(db, container.id, InstanceStatus.STOPPED)
            elif action == "start":
                await manager.start_instance(container.id)
                instance_store.update_status_by_container(db, container.id, InstanceStatus.PENDING)
            else:
                await manager.restart_instance(container.id)
            results.append(BulkActionResult(name=container.name, ok=True))
        except Exception as e:
            logger.warning(f"Bulk {action} failed for {container.name}: {e}")
            results.append(BulkActionResult(name=container.name, ok=False, error=str(e)))
    return {
        "succeeded": sum(1 for r in results if r.ok),
        "failed": sum(1 for r in results if not r.ok),
        "results": [r.model_dump() for r in results],
    }


@app.post("/admin/api/containers/stop-all", dependencies=[Depends(verify_admin)])
async def stop_all(
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    return await _bulk_action(db, manager, ("running",), "stop")


@app.post("/admin/api/containers/start-all", dependencies=[Depends(verify_admin)])
async def start_all(
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    return await _bulk_action(db, manager, ("exited", "created"), "start")


@app.post("/admin/api/containers/restart-all", dependencies=[Depends(verify_admin)])
async def restart_all(
    db: Session = Depends(get_db),
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    return await _bulk_action(db, manager, ("running",), "restart")


@app.post(
    "/admin/api/update-all",
    response_model=RollingUpdateResponse,
    dependencies=[Depends(verify_admin)],
)
async def update_all(
    db: Session = Depends(get_db),
    updater: RollingUpdater = Depends(get_rolling_updater),
):
    """Rebuild the instance image and recreate every managed container on it"""
    try:
        results = await updater.rolling_update_all(
            lambda container_id: instance_store.config_for_container(db, container_id)
        )
    except Exception as e:
        logger.error(f"Rolling update failed: {e}")
        raise HTTPException(status_code=500, detail=f"Update failed: {e}")

    instance_store.apply_update_results(db, results)
    return RollingUpdateResponse(
        message="Rolling update complete",
        results=results,
        summary=summarize(results),
    )


@app.post("/admin/api/rebuild-image", dependencies=[Depends(verify_admin)])
async def rebuild_image(
    manager: PersistentContainerManager = Depends(get_container_manager),
):
    try:
        await manager.image_builder.force_rebuild_instance_image()
        return {
            "ok": True,
            "message": "Instance image rebuilt. Use update-all to deploy to containers.",
        }
    except Exception as e:
        logger.error(f"Error rebuilding instance image: {e}")
        raise HTTPException(status_code=500, detail=str(e))
