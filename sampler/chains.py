"""Sampler - Job and chain value types.

A Chain is an ordered sequence of Jobs bound to one sample. Each job's
execution function returns a JobResult; the scheduler only advances the
chain on Success.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar


class JobKind(StrEnum):
    TRANSCODE = "transcode"
    DOWNLOAD_TRANSCODE = "download_transcode"
    GENERATE_WAVEFORM = "generate_waveform"
    PUBLISH = "publish"


@dataclass(frozen=True)
class Job:
    """One unit of work for a sample.

    chain_id, position and attempt are filled in by the scheduler when the
    job is materialised from a persisted chain link. attempt identifies the
    claim a result must still hold to be recorded.
    """

    sample_id: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    chain_id: str | None = None
    position: int | None = None
    attempt: int = 0

    def payload_json(self) -> str:
        return json.dumps(self.payload, sort_keys=True)


@dataclass(frozen=True)
class Chain:
    sample_id: str
    jobs: tuple[Job, ...]

    def __post_init__(self) -> None:
        if not self.jobs:
            raise ValueError("a chain needs at least one job")
        for job in self.jobs:
            if job.sample_id != self.sample_id:
                raise ValueError(
                    f"job {job.kind} targets {job.sample_id}, chain targets {self.sample_id}"
                )

    @classmethod
    def of(cls, sample_id: str, *links: tuple[str, dict[str, Any]] | str) -> Chain:
        """Build a chain from job kinds, optionally paired with a payload.

        Chain.of(sid, JobKind.TRANSCODE, (JobKind.PUBLISH, {}))
        """
        jobs = []
        for link in links:
            if isinstance(link, tuple):
                kind, payload = link
            else:
                kind, payload = link, {}
            jobs.append(Job(sample_id=sample_id, kind=kind, payload=dict(payload)))
        return cls(sample_id=sample_id, jobs=tuple(jobs))

    @property
    def kinds(self) -> list[str]:
        return [job.kind for job in self.jobs]


@dataclass(frozen=True)
class Success:
    """Link succeeded. artifacts maps Sample artifact fields to logical paths."""

    artifacts: dict[str, str] = field(default_factory=dict)
    ok: ClassVar[bool] = True

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "artifacts": dict(self.artifacts)}


@dataclass(frozen=True)
class Failure:
    error_code: str
    detail: str = ""
    ok: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error_code": self.error_code, "detail": self.detail}


JobResult = Success | Failure


@dataclass(frozen=True)
class ChainHandle:
    chain_id: str
    sample_id: str
    status: str
