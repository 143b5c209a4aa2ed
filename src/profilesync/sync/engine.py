"""Sync pipeline orchestration.

This module provides:
- SyncEngine: runs collect -> download -> merge -> resolve -> apply -> upload

Run model:
    Only one run per device is in flight at a time; a second caller gets a
    failed result instead of waiting. Runs are cancelled through a
    threading.Event, checked between transport calls and right before local
    data is written, so a run cancelled before the apply stage leaves the
    stores untouched.

    Peers are merged one at a time, oldest blob first, each against the
    base this device last agreed on with that peer. Keeping one base per
    peer means a change merged in from one device is never mistaken for a
    change made by another. The fresh local snapshot is uploaded
    at the end so peers see the result.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from profilesync.core.config import SyncConfig
from profilesync.core.types import SyncStage
from profilesync.sync.applier import SyncDataApplier
from profilesync.sync.codec import CodecError, decode_package, encode_package
from profilesync.sync.collector import SnapshotCollector
from profilesync.sync.domain.merge import MergeEngine, resolve_preferences
from profilesync.sync.metadata import SyncMetadataManager
from profilesync.sync.resolver import ConflictResolver
from profilesync.sync.retry import (
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_RETRIES,
    check_cancelled,
    retry_with_backoff,
)
from profilesync.sync.types import (
    Conflict,
    ConflictResolution,
    ConflictResolutionOption,
    Preferences,
    SyncCancelledError,
    SyncDataPackage,
    SyncInProgressError,
    SyncRunResult,
)
from profilesync.transport.base import (
    RemoteSyncFile,
    TransportAuthError,
    TransportConnectionError,
    TransportError,
)

if TYPE_CHECKING:
    from profilesync.state import SyncStateTracker
    from profilesync.store.base import EntityStores
    from profilesync.transport.base import Transport

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncStage, str], None]
ResolveCallback = Callable[[list[Conflict]], list[ConflictResolution]]


class SyncEngine:
    """Runs sync against the shared store."""

    def __init__(
        self,
        stores: EntityStores,
        transport: Transport,
        state: SyncStateTracker,
        config: SyncConfig | None = None,
        passphrase: str | None = None,
        progress_callback: ProgressCallback | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    ) -> None:
        """Initialize the engine.

        Args:
            stores: Local stores.
            transport: Shared store.
            state: Sync state tracker (base snapshots and device metadata).
            config: Sync settings (default: SyncConfig()).
            passphrase: Blob passphrase, required when config.encrypt is set.
            progress_callback: Called with (stage, message) as the run progresses.
            max_retries: Retries of transport calls on connection errors.
            initial_backoff: First retry delay in seconds.

        Raises:
            ValueError: If encryption is enabled without a passphrase.
        """
        self._config = config or SyncConfig()
        if self._config.encrypt and not passphrase:
            raise ValueError("A passphrase is required when encryption is enabled")

        self._stores = stores
        self._transport = transport
        self._state = state
        self._passphrase = passphrase if self._config.encrypt else None
        self._progress_callback = progress_callback
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff

        self._metadata = SyncMetadataManager(state)
        self._collector = SnapshotCollector(
            stores,
            self._metadata,
            entity_types=self._config.enabled_entity_types(),
            include_preferences=self._config.sync_preferences,
        )
        self._merge_engine = MergeEngine()
        self._resolver = ConflictResolver(stores, state)
        self._applier = SyncDataApplier(stores)

        self._lock = threading.Lock()

    @property
    def metadata(self) -> SyncMetadataManager:
        return self._metadata

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def _report(self, stage: SyncStage, message: str) -> None:
        logger.debug(f"[{stage.value}] {message}")
        if self._progress_callback:
            self._progress_callback(stage, message)

    def _retry(self, func: Callable[[], Any], cancel_event: threading.Event | None) -> Any:
        return retry_with_backoff(
            func,
            max_retries=self._max_retries,
            initial_backoff=self._initial_backoff,
            retryable_exceptions=(TransportConnectionError,),
            cancel_event=cancel_event,
        )

    # === Run ===

    def sync(
        self,
        cancel_event: threading.Event | None = None,
        resolve_callback: ResolveCallback | None = None,
    ) -> SyncRunResult:
        """Run one sync.

        Args:
            cancel_event: Set it to cancel the run.
            resolve_callback: Called with the conflicts automatic resolution
                left undecided; returns the user's decisions.

        Returns:
            SyncRunResult. Transport failures are reported in the result,
            never raised.
        """
        if not self._lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping")
            return SyncRunResult(
                success=False,
                message="Sync already in progress",
                stage=SyncStage.FAILED,
                error=SyncInProgressError("Sync already in progress"),
            )
        try:
            return self._run(cancel_event, resolve_callback)
        finally:
            self._lock.release()

    def _run(
        self,
        cancel_event: threading.Event | None,
        resolve_callback: ResolveCallback | None,
    ) -> SyncRunResult:
        result = SyncRunResult(success=False)
        try:
            self._execute(result, cancel_event, resolve_callback)
        except SyncCancelledError as e:
            logger.info("Sync cancelled")
            result.message = "Sync cancelled"
            result.cancelled = True
            result.stage = SyncStage.FAILED
            result.error = e
        except TransportAuthError as e:
            logger.error(f"Sync failed, credentials rejected: {e}")
            result.message = f"Authentication failed: {e}"
            result.needs_reconfiguration = True
            result.stage = SyncStage.FAILED
            result.error = e
        except (TransportError, CodecError) as e:
            logger.error(f"Sync failed: {e}")
            result.message = f"Sync failed: {e}"
            result.stage = SyncStage.FAILED
            result.error = e
        finally:
            self._metadata.update_last_sync_time()
        return result

    def _execute(
        self,
        result: SyncRunResult,
        cancel_event: threading.Event | None,
        resolve_callback: ResolveCallback | None,
    ) -> None:
        own_id = self._metadata.device_id

        self._report(SyncStage.COLLECTING_DATA, "Collecting local data")
        local = self._collector.collect_all()

        remotes = self._download_peers(own_id, result, cancel_event)

        check_cancelled(cancel_event)
        if remotes and self._metadata.has_never_synced() and local.is_empty():
            newest = max(
                (package for _, package in remotes),
                key=lambda p: p.metadata.timestamp if p.metadata else 0,
            )
            self._report(SyncStage.APPLYING_CHANGES, "First sync: importing peer data")
            applied = self._applier.apply_all(newest)
            result.applied_count += applied.applied_count
            result.errors.extend(applied.errors)
            local = self._collector.collect_all()

        for peer_id, remote in remotes:
            local = self._merge_peer(
                peer_id, local, remote, result, cancel_event, resolve_callback
            )

        self._report(SyncStage.ENCRYPTING, "Encoding local data")
        blob = encode_package(local, self._passphrase)
        self._report(SyncStage.UPLOADING, f"Uploading {len(blob)} bytes")
        self._retry(lambda: self._transport.upload(own_id, blob), cancel_event)

        self._metadata.increment_sync_version()
        self._metadata.update_last_successful_sync_time()

        result.success = True
        result.stage = SyncStage.COMPLETED
        result.item_counts = local.item_counts()
        result.message = (
            f"Synced with {len(result.peers)} device(s): {result.applied_count} changes applied, "
            f"{len(result.conflicts)} conflicts need review"
        )
        self._report(SyncStage.COMPLETED, result.message)
        logger.info(result.message)

    def _download_peers(
        self,
        own_id: str,
        result: SyncRunResult,
        cancel_event: threading.Event | None,
    ) -> list[tuple[str, SyncDataPackage]]:
        """Download and decode every peer blob, oldest first."""
        self._report(SyncStage.DOWNLOADING, "Listing devices")
        files: list[RemoteSyncFile] = self._retry(self._transport.list, cancel_event)
        peers = sorted(
            (f for f in files if f.device_id != own_id),
            key=lambda f: (f.modified_time, f.device_id),
        )

        packages = []
        for peer in peers:
            check_cancelled(cancel_event)
            self._report(SyncStage.DOWNLOADING, f"Downloading {peer.file_name}")
            data: bytes = self._retry(
                lambda locator=peer.locator: self._transport.download(locator), cancel_event
            )
            self._report(SyncStage.DECRYPTING, f"Decoding {peer.file_name}")
            try:
                packages.append((peer.device_id, decode_package(data, self._passphrase)))
            except CodecError as e:
                logger.warning(f"Skipping device {peer.device_id}: {e}")
                result.errors.append(f"{peer.device_id}: {e}")
        return packages

    def _merge_peer(
        self,
        peer_id: str,
        local: SyncDataPackage,
        remote: SyncDataPackage,
        result: SyncRunResult,
        cancel_event: threading.Event | None,
        resolve_callback: ResolveCallback | None,
    ) -> SyncDataPackage:
        """Merge one peer package into the local stores."""
        self._report(SyncStage.MERGING, f"Merging data of {peer_id}")
        merge_result = self._merge_engine.merge_packages(
            self._state.base_snapshot(peer_id),
            local,
            remote,
            entity_types=self._config.enabled_entity_types(),
            include_preferences=self._config.sync_preferences,
        )

        self._report(SyncStage.RESOLVING_CONFLICTS, f"{len(merge_result.conflicts)} conflicts")
        conflicts = merge_result.conflicts
        resolutions: list[ConflictResolution] = []
        if self._config.auto_resolve_conflicts:
            resolutions = self._resolver.auto_resolve(conflicts)
        undecided = self._resolver.requires_manual_resolution(conflicts, resolutions)
        if undecided and resolve_callback is not None:
            resolutions.extend(resolve_callback(undecided))
            resolutions = self._resolver.expand_apply_to_all(conflicts, resolutions)
        pending = self._resolver.requires_manual_resolution(
            conflicts,
            [r for r in resolutions if r.resolution != ConflictResolutionOption.SKIP],
        )

        check_cancelled(cancel_event)
        self._report(SyncStage.APPLYING_CHANGES, f"Applying changes from {peer_id}")
        preferences: Preferences = {}
        if self._config.sync_preferences:
            preferences = resolve_preferences(
                merge_result.preferences.merged, resolutions, pending
            )
        applied = self._applier.apply_merge_result(merge_result, preferences)
        resolved = self._resolver.apply_resolutions(resolutions, peer_id)
        self._state.update_after_merge(peer_id, merge_result, remote, pending)

        result.peers.append(peer_id)
        result.applied_count += applied.applied_count
        result.resolved_count += resolved.success_count
        result.errors.extend(applied.errors)
        result.errors.extend(resolved.errors)
        result.conflicts.extend(pending)
        return self._collector.collect_all()

    # === Maintenance ===

    def list_devices(self) -> list[RemoteSyncFile]:
        """List every device blob in the shared store."""
        return self._transport.list()

    def cleanup_stale_files(self) -> int:
        """Delete peer blobs older than the retention period."""
        return self._transport.delete_stale_files(
            self._config.retention_days, exclude_device=self._metadata.device_id
        )
