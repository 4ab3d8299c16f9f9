import logging

from fastapi import APIRouter, Depends, HTTPException

from delivery_engine.api.deps import get_cluster_id, get_store
from delivery_engine.api.schemas.callbacks import (
    AppStatusRequest,
    CallbackResponse,
    DeployResultRequest,
    UndeployResultRequest,
)
from delivery_engine.core.appstatus import ResourceState
from delivery_engine.core.errors import AppNotFound, StoreError
from delivery_engine.core.models import DownstreamVersionStatus, UndeployStatus, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["callbacks"])


@router.put("/deploy/result", response_model=CallbackResponse)
def update_deploy_result(
    request: DeployResultRequest,
    cluster_id: str = Depends(get_cluster_id),
    store=Depends(get_store),
):
    version = store.get_current_version(request.app_id, cluster_id)
    if version is None:
        raise HTTPException(status_code=404, detail="No current version for app")

    if request.is_error:
        status, info = DownstreamVersionStatus.FAILED, request.error_text()
    else:
        status, info = DownstreamVersionStatus.DEPLOYED, ""

    try:
        store.update_downstream_status(request.app_id, cluster_id, version.sequence, status, info)
    except StoreError as e:
        logger.error(f"[callbacks] [app:{request.app_id}] Failed to update deploy status: {e}")
        raise HTTPException(status_code=500, detail="Failed to update deploy status")

    logger.info(f"[callbacks] [app:{request.app_id}] Sequence {version.sequence} -> {status.value}")
    return CallbackResponse(status=status.value)


@router.put("/undeploy/result", response_model=CallbackResponse)
def update_undeploy_result(
    request: UndeployResultRequest,
    cluster_id: str = Depends(get_cluster_id),
    store=Depends(get_store),
):
    status = UndeployStatus.FAILED if request.is_error else UndeployStatus.COMPLETED

    try:
        store.set_restore_undeploy_status(request.app_id, status)
    except AppNotFound:
        raise HTTPException(status_code=404, detail="App not found")

    logger.info(f"[callbacks] [app:{request.app_id}] Undeploy on cluster {cluster_id} -> {status.value}")
    return CallbackResponse(status=status.value)


@router.put("/appstatus", response_model=CallbackResponse)
def update_app_status(
    request: AppStatusRequest,
    cluster_id: str = Depends(get_cluster_id),
    store=Depends(get_store),
):
    resource_states = [
        ResourceState(kind=r.kind, name=r.name, namespace=r.namespace, state=r.state)
        for r in request.resource_states
    ]
    store.set_app_status(
        request.app_id,
        resource_states,
        request.updated_at or utcnow(),
        request.sequence,
    )

    status = store.get_app_status(request.app_id)
    return CallbackResponse(status=status.state.value if status else "missing")
