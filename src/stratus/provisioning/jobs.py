"""Durable background job kinds, keys and handler outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

STATE_FETCH_KIND = "service_instance_state_fetch"
ORPHAN_MITIGATION_KIND = "orphan_mitigation"


def state_fetch_key(instance_guid: str) -> str:
    """Single-flight key: at most one pending poll per instance."""

    return f"state_fetch:{instance_guid}"


def orphan_mitigation_key(instance_guid: str) -> str:
    return f"orphan_mitigation:{instance_guid}"


@dataclass(frozen=True)
class JobOutcome:
    """What the worker should do with a job after its handler returns."""

    run_at: Optional[datetime] = None
    payload: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.run_at is None

    @classmethod
    def done(cls) -> "JobOutcome":
        return cls()

    @classmethod
    def retry(
        cls,
        run_at: datetime,
        *,
        payload: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> "JobOutcome":
        return cls(run_at=run_at, payload=payload, error=error)


class JobHandler(Protocol):
    kind: str

    async def run(self, payload: dict) -> JobOutcome:
        ...
