from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

JOB_REVOKE_EXPIRED_GRANTS = "grant.revoke_expired"
JOB_BULK_REVOKE_GRANTS = "grant.bulk_revoke"


@dataclass(slots=True)
class JobMessage:
    job_id: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    requested_by: str | None = None

    def to_message_body(self) -> str:
        data = asdict(self)
        return json.dumps({k: v for k, v in data.items() if v is not None}, separators=(",", ":"))

    @classmethod
    def from_message_body(cls, body: str) -> "JobMessage":
        data = json.loads(body)
        return cls(
            job_id=data["job_id"],
            job_type=data["job_type"],
            payload=data.get("payload", {}),
            requested_by=data.get("requested_by"),
        )
