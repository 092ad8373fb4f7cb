from warden.storage.memory import (
    InMemoryAppealRepository,
    InMemoryAuditLogger,
    InMemoryGrantRepository,
    InMemoryPolicyRepository,
    InMemoryResourceService,
    RecordingNotifier,
)

__all__ = [
    "InMemoryAppealRepository",
    "InMemoryAuditLogger",
    "InMemoryGrantRepository",
    "InMemoryPolicyRepository",
    "InMemoryResourceService",
    "RecordingNotifier",
]
