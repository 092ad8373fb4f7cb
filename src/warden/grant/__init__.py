from warden.grant.revocation import (
    BulkRevokeResult,
    RevocationEngine,
    RevocationOutcome,
    TokenBucket,
    group_by_resource,
)
from warden.grant.service import ExpiredRevokeSummary, GrantService

__all__ = [
    "BulkRevokeResult",
    "ExpiredRevokeSummary",
    "GrantService",
    "RevocationEngine",
    "RevocationOutcome",
    "TokenBucket",
    "group_by_resource",
]
