"""
Offline Sync Service

Application-facing facade of the engine. Writes land in the local mirror
first, then an operation is queued; the scheduler delivers queued operations
whenever the engine is online. Each service instance owns its collaborators
and has an explicit lifecycle (``start`` / ``shutdown``), so several isolated
instances can coexist.

Usage:
    async with sync_session(client, provider, settings) as service:
        service.create_interaction(Entity(id="rfi-42", payload={...}))
        unsubscribe = service.add_sync_status_listener(print)
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional, Union

from .auth import CredentialProvider, HttpCredentialProvider, TokenGuardedPipeline
from .config import SyncSettings, get_settings
from .connectivity import ConnectivityMonitor
from .delivery import HttpDeliveryClient, RemoteDeliveryClient
from .errors import StorageError
from .mapping import RecordMapper
from .models import (
    Credential,
    Entity,
    LocalStatus,
    Operation,
    OperationAction,
    ResourceKind,
    SyncStatus,
)
from .queue import OperationQueue
from .scheduler import CircuitBreaker, SyncScheduler
from .status import StatusBus, StatusListener
from .store import LocalMirrorStore

logger = logging.getLogger(__name__)


class OfflineSyncService:
    """Offline-first sync engine for mirrored interactions."""

    def __init__(
        self,
        delivery_client: RemoteDeliveryClient,
        credential_provider: CredentialProvider,
        settings: Optional[SyncSettings] = None,
        credential: Optional[Credential] = None,
        store: Optional[LocalMirrorStore] = None,
        queue: Optional[OperationQueue] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        logging.getLogger("offline_sync").setLevel(self.settings.log_level)

        self.store = store or LocalMirrorStore(self.settings.db_path)
        self.queue = queue or OperationQueue(
            self.settings.db_path, max_retries=self.settings.max_retries
        )
        self.connectivity = connectivity or ConnectivityMonitor(
            probe_url=self.settings.probe_url,
            probe_interval=self.settings.probe_interval,
            probe_timeout=self.settings.probe_timeout,
        )
        self.pipeline = TokenGuardedPipeline(
            delivery_client,
            credential_provider,
            credential=credential,
            expiry_buffer=self.settings.token_expiry_buffer,
            min_refresh_interval=self.settings.refresh_min_interval,
            clock=clock,
        )
        self.breaker = CircuitBreaker(self.settings.permission_cooldown, clock=clock)
        self.scheduler = SyncScheduler(
            self.queue,
            self.pipeline,
            self.connectivity,
            batch_size=self.settings.batch_size,
            sync_interval=self.settings.sync_interval,
            continuation_delay=self.settings.continuation_delay,
            delivery_timeout=self.settings.delivery_timeout,
            breaker=self.breaker,
            on_state_change=self._notify,
            on_synced=self._on_operation_synced,
        )
        self.status_bus = StatusBus(self.status)
        self._remove_connectivity_listener = self.connectivity.on_change(
            self._on_connectivity_change
        )
        self._started = False

    # === Lifecycle ===

    async def start(self) -> None:
        """Read the initial connectivity snapshot and start background syncing."""
        if self._started:
            return
        await self.connectivity.start()
        self.scheduler.refresh_pending_count()
        self.scheduler.start()
        self._started = True
        logger.info(
            f"Offline sync service started. Network status: "
            f"{'online' if self.connectivity.is_online else 'offline'}, "
            f"{self.scheduler.pending_count} pending"
        )
        self._notify()
        self.scheduler.trigger()

    async def shutdown(self) -> None:
        """Stop background work and release network clients."""
        await self.scheduler.stop()
        await self.connectivity.stop()
        self._remove_connectivity_listener()
        self.status_bus.clear()
        await self.pipeline.client.close()
        await self.pipeline.provider.close()
        self._started = False
        logger.info("Offline sync service stopped")

    # === Status ===

    def status(self) -> SyncStatus:
        """Current status snapshot."""
        return SyncStatus(
            is_online=self.connectivity.is_online,
            pending_count=self.scheduler.pending_count,
            sync_in_progress=self.scheduler.is_syncing,
            last_sync_time=self.scheduler.last_sync_time,
        )

    def _notify(self) -> None:
        self.status_bus.publish()

    def add_sync_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register for status updates; returns an unsubscribe function."""
        return self.status_bus.subscribe(listener)

    def is_network_online(self) -> bool:
        return self.connectivity.is_online

    def set_online(self, online: bool) -> None:
        """Feed the host environment's network-change signal."""
        self.connectivity.set_online(online)

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Back online, starting sync...")
            self.scheduler.trigger()
        self._notify()

    # === Queue ===

    def enqueue(
        self,
        action: Union[OperationAction, str],
        resource: Union[ResourceKind, str],
        data: dict,
    ) -> str:
        """Queue an operation for delivery.

        Returns:
            The operation id.

        Raises:
            StorageError: if the operation could not be persisted.
        """
        if isinstance(action, str):
            action = OperationAction(action)
        if isinstance(resource, ResourceKind):
            resource = resource.value

        op_id = self.queue.enqueue(Operation.new(action, resource, data))
        self.scheduler.refresh_pending_count()
        self.scheduler.trigger()
        return op_id

    def get_pending_sync_count(self) -> int:
        return self.scheduler.refresh_pending_count()

    def get_failed_sync_operations(self) -> list[Operation]:
        return self.queue.failed_operations()

    def retry_failed_operation(self, operation_id: str) -> bool:
        """Move a failed operation back to pending and try to deliver it."""
        if not self.queue.retry(operation_id):
            return False
        self.scheduler.refresh_pending_count()
        self.scheduler.trigger()
        return True

    async def manual_sync(self) -> bool:
        """Run a pass right away.

        Returns:
            False if nothing was attempted (offline, busy, suspended or
            nothing pending).
        """
        if not self.connectivity.is_online or self.scheduler.is_syncing:
            return False
        if self.breaker.is_open:
            logger.info(f"Manual sync skipped, delivery suspended for {self.breaker.remaining:.0f}s")
            return False
        if self.scheduler.refresh_pending_count() == 0:
            return False
        await self.scheduler.sync_pending()
        return True

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        await self.scheduler.wait_until_idle(timeout)

    def purge_synced_operations(self, older_than_days: int = 7) -> int:
        return self.queue.purge_synced(older_than_days)

    # === Interactions ===

    def create_interaction(self, entity: Entity) -> Entity:
        """Store a new interaction locally and queue its creation."""
        previous = self.store.get(entity.id)
        entity.sync_pending = True
        entity.local_status = LocalStatus.CREATED
        self.store.put(entity)
        self._enqueue_or_restore(OperationAction.CREATE, entity.to_dict(), entity.id, previous)
        return entity

    def update_interaction(self, entity: Entity) -> Entity:
        """Store an updated interaction locally and queue the update.

        Raises:
            KeyError: if the interaction is unknown or deleted locally.
        """
        existing = self.store.get(entity.id)
        if existing is None or existing.is_tombstoned:
            raise KeyError(f"Unknown interaction: {entity.id}")

        entity.sync_pending = True
        # An unsynced create stays a create from the remote side's view
        if existing.local_status == LocalStatus.CREATED:
            entity.local_status = LocalStatus.CREATED
        else:
            entity.local_status = LocalStatus.UPDATED
        if entity.project_id is None:
            entity.project_id = existing.project_id

        self.store.put(entity)
        self._enqueue_or_restore(OperationAction.UPDATE, entity.to_dict(), entity.id, existing)
        return entity

    def delete_interaction(self, entity_id: str) -> str:
        """Tombstone an interaction locally and queue its deletion.

        Returns:
            The id of the queued delete operation.

        Raises:
            KeyError: if the interaction is unknown.
        """
        entity = self.store.get(entity_id)
        if entity is None:
            raise KeyError(f"Unknown interaction: {entity_id}")

        self.store.mark_tombstoned(entity_id)
        return self._enqueue_or_restore(
            OperationAction.DELETE,
            {"id": entity_id, "project_id": entity.project_id},
            entity_id,
            entity,
        )

    def _enqueue_or_restore(
        self,
        action: OperationAction,
        data: dict,
        entity_id: str,
        previous: Optional[Entity],
    ) -> str:
        """Queue an interaction operation, undoing the local write if that fails."""
        try:
            return self.enqueue(action, ResourceKind.INTERACTION, data)
        except StorageError:
            logger.error(f"Could not queue {action.value} for {entity_id}, reverting local change")
            if previous is None:
                self.store.remove(entity_id)
            else:
                self.store.put(previous)
            raise

    def get_interaction(self, entity_id: str) -> Optional[Entity]:
        entity = self.store.get(entity_id)
        if entity is None or entity.is_tombstoned:
            return None
        return entity

    def get_interactions(self, project_id: Optional[int] = None) -> list[Entity]:
        """Interactions for a project, hiding local deletions."""
        return self.store.list(project_id=project_id)

    def apply_remote_records(
        self,
        mapper: RecordMapper,
        records: list[dict],
        project_id: Optional[int] = None,
    ) -> int:
        """Refresh the local mirror from records fetched from the remote API."""
        return self.store.apply_remote(mapper.to_entities(records, project_id))

    def _on_operation_synced(self, op: Operation) -> None:
        if op.resource != ResourceKind.INTERACTION.value or not op.entity_id:
            return
        # Later operations for the same entity keep it flagged
        if self.queue.has_pending_for(op.resource, op.entity_id):
            return

        entity = self.store.get(op.entity_id)
        if entity is None:
            return
        self.store.mark_synced(op.entity_id)
        if entity.is_tombstoned:
            self.store.purge_tombstoned(op.entity_id)


# =============================================================================
# Convenience Functions
# =============================================================================

def create_sync_service(
    settings: Optional[SyncSettings] = None,
    credential: Optional[Credential] = None,
) -> OfflineSyncService:
    """
    Build a service wired to the HTTP delivery client and OAuth provider.

    Args:
        settings: Optional configuration (defaults to environment settings)
        credential: Initial credential, typically from the login flow

    Returns:
        Configured, not yet started, OfflineSyncService instance
    """
    settings = settings or get_settings()
    if not settings.token_url:
        raise ValueError("token_url must be configured to refresh credentials")

    client = HttpDeliveryClient(settings.api_base_url, timeout=settings.api_timeout)
    provider = HttpCredentialProvider(
        settings.token_url,
        settings.client_id,
        settings.client_secret,
        timeout=settings.api_timeout,
    )
    return OfflineSyncService(client, provider, settings=settings, credential=credential)


@asynccontextmanager
async def sync_session(
    delivery_client: RemoteDeliveryClient,
    credential_provider: CredentialProvider,
    settings: Optional[SyncSettings] = None,
    **kwargs,
):
    """
    Context manager for a started sync service.

    Usage:
        async with sync_session(client, provider) as service:
            service.enqueue("create", "interaction", data)
    """
    service = OfflineSyncService(delivery_client, credential_provider, settings=settings, **kwargs)
    await service.start()
    try:
        yield service
    finally:
        await service.shutdown()
