"""
Backup coordinator.

Produces one backup per server: flush world state through the console,
snapshot the data volume with a CSI VolumeSnapshot, package the snapshot
record with its metadata into a tar.gz archive and upload it.
"""

import io
import json
import logging
import tarfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import yaml

from man10routine.config.loader import PollingConfig, ServerEndpoint
from man10routine.errors.errors import ErrorCode, RoutineError, retry_transient
from man10routine.integration.console_client import ConsoleClient
from man10routine.integration.kube_client import KubeClient
from man10routine.integration.upload_sink import UploadSink
from man10routine.workloads.polling import poll_until

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPONENT = "backup"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"


class BackupStage(Enum):
    """Stages of a single server backup, in order."""
    FLUSH = "flush"
    SNAPSHOT = "snapshot"
    PACKAGE = "package"
    UPLOAD = "upload"


@dataclass(frozen=True)
class SnapshotArtifact:
    """A finished snapshot and its serialized record."""
    server: str
    namespace: str
    snapshot_name: str
    volume: str
    timestamp: datetime
    record: bytes

    @property
    def size(self) -> int:
        return len(self.record)

    def metadata(self) -> Dict[str, Any]:
        return {
            "server": self.server,
            "namespace": self.namespace,
            "snapshot": self.snapshot_name,
            "volume": self.volume,
            "timestamp": self.timestamp.isoformat(),
            "size": self.size,
        }


@dataclass
class BackupResult:
    """Where a server's backup ended up."""
    server: str
    snapshot_name: str
    location: str
    size: int


class BackupCoordinator:
    """Runs flush, snapshot, package and upload for one server at a time."""

    def __init__(
        self,
        namespace: str,
        console: ConsoleClient,
        kube: KubeClient,
        sink: UploadSink,
        polling: PollingConfig,
        snapshot_class: str = "",
        prefix: str = "",
        retry_backoff: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.namespace = namespace
        self.console = console
        self.kube = kube
        self.sink = sink
        self.polling = polling
        self.snapshot_class = snapshot_class
        self.prefix = prefix.strip('/')
        self.retry_backoff = retry_backoff
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def _stage(self, endpoint: ServerEndpoint, stage: BackupStage,
                     operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        except RoutineError as e:
            raise RoutineError(
                ErrorCode.BACKUP_OPERATION, COMPONENT, stage.value,
                f"backup of {endpoint.name} failed at {stage.value}", e
            ).with_context("server", endpoint.name).with_context("stage", stage.value)

    def snapshot_manifest(self, endpoint: ServerEndpoint, name: str) -> Dict[str, Any]:
        spec: Dict[str, Any] = {"source": {"persistentVolumeClaimName": endpoint.data_volume}}
        if self.snapshot_class:
            spec["volumeSnapshotClassName"] = self.snapshot_class
        return {
            "apiVersion": "snapshot.storage.k8s.io/v1",
            "kind": "VolumeSnapshot",
            "metadata": {
                "name": name,
                "namespace": self.namespace,
                "labels": {
                    "app.kubernetes.io/managed-by": "man10routine",
                    "man10routine/server": endpoint.name,
                },
            },
            "spec": spec,
        }

    async def snapshot(self, endpoint: ServerEndpoint) -> SnapshotArtifact:
        """Flush the world and take a ready-to-use VolumeSnapshot of its PVC."""
        await self._stage(endpoint, BackupStage.FLUSH, lambda: self.console.flush(endpoint))

        timestamp = self.clock()
        name = f"{endpoint.name}-{timestamp.strftime('%Y%m%d%H%M%S')}"

        async def take() -> Dict[str, Any]:
            await self.kube.create_volume_snapshot(self.snapshot_manifest(endpoint, name))
            return await poll_until(lambda: self._snapshot_ready(name), self.polling,
                                    f"snapshot {name} to become ready", COMPONENT)

        record = await self._stage(endpoint, BackupStage.SNAPSHOT, take)
        logger.info(f"[{endpoint.name}] Snapshot {name} of {endpoint.data_volume} is ready")
        return SnapshotArtifact(
            server=endpoint.name,
            namespace=self.namespace,
            snapshot_name=name,
            volume=endpoint.data_volume,
            timestamp=timestamp,
            record=yaml.safe_dump(record, default_flow_style=False).encode('utf-8'),
        )

    async def _snapshot_ready(self, name: str) -> Optional[Dict[str, Any]]:
        snapshot = await self.kube.get_volume_snapshot(name)
        status = snapshot.get("status") or {}
        error = status.get("error")
        if error:
            raise RoutineError(
                ErrorCode.BACKUP_OPERATION, COMPONENT, "snapshot",
                f"snapshot {name} failed: {error.get('message', 'unknown error')}"
            )
        return snapshot if status.get("readyToUse") else None

    @staticmethod
    def package(artifact: SnapshotArtifact) -> bytes:
        """Build a gzip-compressed tar archive of the snapshot record and metadata.json."""
        buffer = io.BytesIO()
        mtime = artifact.timestamp.timestamp()
        metadata = json.dumps(artifact.metadata(), indent=2).encode('utf-8')
        with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
            for member, data in (("volumesnapshot.yaml", artifact.record), ("metadata.json", metadata)):
                info = tarfile.TarInfo(name=member)
                info.size = len(data)
                info.mtime = mtime
                archive.addfile(info, io.BytesIO(data))
        return buffer.getvalue()

    def destination(self, artifact: SnapshotArtifact) -> str:
        """`<prefix>/<namespace>/<server>/<timestamp>.tar.gz`"""
        parts = [self.prefix, artifact.namespace, artifact.server,
                 f"{artifact.timestamp.strftime(TIMESTAMP_FORMAT)}.tar.gz"]
        return "/".join(part for part in parts if part)

    async def upload(self, blob: bytes, destination: str) -> str:
        return await retry_transient(
            lambda: self.sink.upload(blob, destination),
            backoff=self.retry_backoff,
            description=f"upload of {destination}",
        )

    async def backup(self, endpoint: ServerEndpoint) -> BackupResult:
        """Flush, snapshot, package and upload one server, strictly in order.

        Raises:
            RoutineError: BACKUP_OPERATION whose `stage` context names the
                stage that failed
        """
        artifact = await self.snapshot(endpoint)

        try:
            blob = self.package(artifact)
        except (tarfile.TarError, OSError) as e:
            raise RoutineError(
                ErrorCode.BACKUP_OPERATION, COMPONENT, BackupStage.PACKAGE.value,
                f"backup of {endpoint.name} failed at package", e
            ).with_context("server", endpoint.name).with_context("stage", BackupStage.PACKAGE.value)

        destination = self.destination(artifact)
        location = await self._stage(endpoint, BackupStage.UPLOAD, lambda: self.upload(blob, destination))
        logger.info(f"[{endpoint.name}] Backup uploaded to {location} ({len(blob)} bytes)")
        return BackupResult(
            server=endpoint.name,
            snapshot_name=artifact.snapshot_name,
            location=location,
            size=len(blob),
        )
