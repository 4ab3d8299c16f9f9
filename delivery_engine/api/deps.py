#delivery_engine\api\deps.py

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from delivery_engine.core.errors import InvalidDeployToken
from delivery_engine.core.store import Store


def get_store(request: Request) -> Store:
    return request.app.state.socket_service.store


def get_cluster_id(
    authorization: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
) -> str:
    """Resolve the calling agent's cluster from its deploy token."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization")

    token = authorization
    if token.lower().startswith("bearer "):
        token = token[len("bearer "):]

    try:
        return store.get_cluster_id_from_deploy_token(token.strip())
    except InvalidDeployToken:
        raise HTTPException(status_code=401, detail="Invalid deploy token")
