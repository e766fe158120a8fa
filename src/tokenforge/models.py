from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


class JobKind(str, Enum):
    DEPLOY = "deploy"
    VERIFY = "verify"


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    FAILED = "failed"
    RETRYABLE = "retryable"
    PENDING = "pending"


@dataclass(slots=True)
class DeployRequest:
    kind: str
    modules: list[str] = field(default_factory=list)
    constructor_args: list[Any] = field(default_factory=list)
    network: str | None = None
    verify: bool = False


@dataclass(slots=True)
class VerifyRequest:
    address: str
    artifact_key: str
    constructor_args: list[Any] = field(default_factory=list)
    constructor_args_encoded: str | None = None
    guid: str | None = None


@dataclass(slots=True)
class DeployerCredentials:
    private_key: str | None = None
    rpc_url: str | None = None

    def __repr__(self) -> str:
        return "DeployerCredentials(<redacted>)"


@dataclass(slots=True)
class ExecutionRequest:
    job_id: str
    artifact_key: str
    artifact_path: str
    contract_name: str
    constructor_args: list[Any]
    network: str
    credentials: DeployerCredentials = field(default_factory=DeployerCredentials)


@dataclass(slots=True)
class DeploymentResult:
    address: str
    tx_hash: str | None
    deployer_address: str | None
    network: str
    constructor_args: list[Any]
    constructor_args_encoded: str
    deployed_at: str
    artifact_key: str | None = None


@dataclass(slots=True)
class SubmissionResult:
    ok: bool
    guid: str | None = None
    already_verified: bool = False
    retryable: bool = False
    error: str | None = None


@dataclass(slots=True)
class VerificationOutcome:
    status: VerificationStatus
    guid: str | None
    message: str


@dataclass(slots=True)
class JobError:
    message: str
    error_type: str
    detail: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> JobError:
        message = str(getattr(exc, "message", "") or exc) or "Unknown error"
        detail = getattr(exc, "detail", None)
        return cls(message=message, error_type=type(exc).__name__, detail=detail)


@dataclass(slots=True)
class Job:
    job_id: str
    kind: JobKind
    state: JobState
    created_at: datetime
    payload: Any
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: Any = None
    error: JobError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "payload": to_jsonable(self.payload),
            "result": to_jsonable(self.result),
            "error": to_jsonable(self.error),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def to_jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        if isinstance(value, DeployerCredentials):
            return None
        return {key: to_jsonable(item) for key, item in asdict(value).items()}
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return str(value)
