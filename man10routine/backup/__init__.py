from .coordinator import BackupCoordinator, BackupResult, BackupStage, SnapshotArtifact
