# delivery_engine/socketservice/registry.py
"""In-memory registry of connected cluster agents."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from delivery_engine.core.errors import InvalidDeployToken, StoreError
from delivery_engine.core.store import Store
from delivery_engine.socketservice.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class ClusterSocket:
    """
    One live agent connection.

    The caches are hints only: losing them (restart, reconnect) causes at
    most a redundant, idempotent re-send.
    """
    cluster_id: str
    connection_id: str
    sent_preflight_urls: Set[str] = field(default_factory=set)
    last_deployed_sequences: Dict[str, int] = field(default_factory=dict)


class ConnectionRegistry:
    """
    Tracks which agents are connected.

    One lock guards the list and the per-socket caches. It is only held to
    mutate or copy, never across store calls, rendering or sends.
    """

    def __init__(self, store: Store, transport: Transport):
        self.store = store
        self.transport = transport
        self._sockets: List[ClusterSocket] = []
        self._lock = threading.Lock()

    def on_connect(self, connection_id: str, auth_token: str) -> Optional[ClusterSocket]:
        """Register a connection. Returns None if the token is not accepted."""
        try:
            cluster_id = self.store.get_cluster_id_from_deploy_token(auth_token)
        except InvalidDeployToken:
            logger.warning(f"[registry] Rejected connection {connection_id}: invalid deploy token")
            return None
        except StoreError as e:
            logger.error(f"[registry] Failed to resolve token for {connection_id}: {e}")
            return None

        cluster_socket = ClusterSocket(cluster_id=cluster_id, connection_id=connection_id)
        self.transport.join(connection_id, cluster_id)

        with self._lock:
            self._sockets.append(cluster_socket)

        logger.info(f"[registry] Cluster {cluster_id} connected as {connection_id}")
        return cluster_socket

    def on_disconnect(self, connection_id: str) -> None:
        with self._lock:
            removed = [s for s in self._sockets if s.connection_id == connection_id]
            self._sockets = [s for s in self._sockets if s.connection_id != connection_id]

        self.transport.leave_all(connection_id)

        for cluster_socket in removed:
            logger.info(f"[registry] Cluster {cluster_socket.cluster_id} disconnected ({connection_id})")

    def snapshot(self) -> List[ClusterSocket]:
        """Copy of the connected sockets, safe to iterate without the lock."""
        with self._lock:
            return list(self._sockets)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sockets)

    # -------------------------
    # DEPLOY CACHE
    # -------------------------

    def get_last_deployed_sequence(self, cluster_socket: ClusterSocket, app_id: str) -> Optional[int]:
        with self._lock:
            return cluster_socket.last_deployed_sequences.get(app_id)

    def set_last_deployed_sequence(self, cluster_socket: ClusterSocket, app_id: str, sequence: int) -> None:
        with self._lock:
            cluster_socket.last_deployed_sequences[app_id] = sequence

    def forget_deployed_sequence(self, app_id: str, cluster_socket: Optional[ClusterSocket] = None) -> None:
        """Drop the cached sequence for one socket, or for every socket when none is given."""
        with self._lock:
            targets = [cluster_socket] if cluster_socket is not None else self._sockets
            for target in targets:
                target.last_deployed_sequences.pop(app_id, None)
