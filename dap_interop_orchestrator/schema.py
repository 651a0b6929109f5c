import binascii
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .hpke import decode_base64url

TASK_ID_LENGTH = 32
VDAF_TYPES = Literal["Prio3Count", "Prio3Sum", "Prio3SumVec", "Prio3Histogram"]

# Which parameters each VDAF takes, as the aggregators' add_task route checks them.
VDAF_PARAMETERS = {
    "Prio3Count": set(),
    "Prio3Sum": {"bits"},
    "Prio3SumVec": {"bits", "length", "chunk_length"},
    "Prio3Histogram": {"length", "chunk_length"},
}


def _check_base64url_id(value: str, name: str) -> str:
    try:
        raw = decode_base64url(value)
    except (binascii.Error, ValueError):
        raise ValueError(f"{name} is not valid URL-safe base64") from None
    if len(raw) != TASK_ID_LENGTH:
        raise ValueError(f"{name} must decode to {TASK_ID_LENGTH} bytes, got {len(raw)}")
    return value


class Aggregator(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1, pattern=r"^https?://")
    version: str = Field(default="v09", min_length=1)


class Vdaf(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: VDAF_TYPES
    bits: int | None = Field(default=None, gt=0, le=64)
    length: int | None = Field(default=None, gt=0)
    chunk_length: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_parameters(self) -> "Vdaf":
        expected = VDAF_PARAMETERS[self.type]
        given = {
            name
            for name in ("bits", "length", "chunk_length")
            if getattr(self, name) is not None
        }
        if given != expected:
            raise ValueError(
                f"{self.type} takes parameters {sorted(expected)}, got {sorted(given)}"
            )
        return self


class Task(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_id: str | None = None
    vdaf: Vdaf
    time_precision: int = Field(default=3600, gt=0)
    min_batch_size: int = Field(default=1, gt=0)
    max_batch_size: int | None = Field(default=12, gt=0)
    query_type: Literal[1, 2] = 2
    task_expiration_seconds: int = Field(default=604800, gt=0)  # 1 week
    vdaf_verify_key: str | None = Field(default=None, min_length=1)

    @field_validator("task_id")
    @classmethod
    def check_task_id(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _check_base64url_id(value, "task_id")


class Auth(BaseModel):
    model_config = ConfigDict(extra="forbid")

    leader_authentication_token: str = Field(min_length=1)
    collector_authentication_token: str = Field(min_length=1)


class Hpke(BaseModel):
    model_config = ConfigDict(extra="forbid")

    collector_config_path: str = Field(min_length=1)
    leader_config_path: str = Field(min_length=1)
    helper_config_path: str = Field(min_length=1)
    kem_alg: Literal["x25519_hkdf_sha256", "p256_hkdf_sha256"] = "x25519_hkdf_sha256"


class Upload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: list[str] = Field(min_length=1)
    success_marker: str | None = "DAP report: sent"
    failure_marker: str | None = "DAP report: failed"
    timeout: int = Field(default=120, gt=0)


class Decoder(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: list[str] = Field(default=["dapf", "decode"], min_length=1)
    timeout: int = Field(default=120, gt=0)


class Retry(BaseModel):
    """Retry policy for provisioning and trigger calls (network errors only)."""

    model_config = ConfigDict(extra="forbid")

    attempts: int = Field(default=3, gt=0)
    delay: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)


class Poll(BaseModel):
    """Polling policy for collection jobs."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=30, gt=0)
    delay: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=1.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)


class Orchestration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    measurements: list[int | list[int]] = Field(min_length=1)
    min_report_count: int = Field(default=1, gt=0)
    upload_rounds: int = Field(default=1, gt=0)
    trigger_calls_per_round: int = Field(default=1, ge=0)
    trigger_while_polling: bool = True
    max_trigger_calls: int = Field(default=10, ge=0)
    settle_seconds: float = Field(default=1.0, ge=0)
    collection_after_round: int | None = Field(default=None, gt=0)
    reset_before_provision: bool = True
    report_selector: dict[str, Any] | None = None

    @model_validator(mode="after")
    def check_rounds(self) -> "Orchestration":
        if (
            self.collection_after_round is not None
            and self.collection_after_round > self.upload_rounds
        ):
            raise ValueError(
                f"collection_after_round ({self.collection_after_round}) is after "
                f"the last upload round ({self.upload_rounds})"
            )
        return self


class JobConfig(BaseModel):
    """Full config with validation."""

    model_config = ConfigDict(extra="forbid")

    leader: Aggregator
    helper: Aggregator
    task: Task
    auth: Auth
    hpke: Hpke
    upload: Upload
    orchestration: Orchestration
    decoder: Decoder = Field(default_factory=Decoder)
    retry: Retry = Field(default_factory=Retry)
    poll: Poll = Field(default_factory=Poll)
    http_timeout: float = Field(default=30.0, gt=0)
    output_dir: str = Field(default="output", min_length=1)

    @model_validator(mode="after")
    def check_measurements(self) -> "JobConfig":
        vdaf = self.task.vdaf
        for m in self.orchestration.measurements:
            if vdaf.type == "Prio3SumVec":
                if not isinstance(m, list) or len(m) != vdaf.length:
                    raise ValueError(
                        f"Prio3SumVec measurement must be a list of {vdaf.length} integers"
                    )
                values = m
                bound = 2**vdaf.bits - 1
            elif isinstance(m, list):
                raise ValueError(f"{vdaf.type} measurement must be an integer")
            elif vdaf.type == "Prio3Histogram":
                values = [m]
                bound = vdaf.length - 1
            elif vdaf.type == "Prio3Sum":
                values = [m]
                bound = 2**vdaf.bits - 1
            else:
                values = [m]
                bound = 1
            for value in values:
                if not (0 <= value <= bound):
                    raise ValueError(
                        f"Measurement {m} out of range for {vdaf.type} (max {bound})"
                    )
        return self


class BatchInterval(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: int = Field(ge=0)
    duration: int = Field(gt=0)


class TimeIntervalQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_interval: BatchInterval


class FixedSizeQuery(BaseModel):
    """A fixed-size query; without ``batch_id`` the Leader's current batch is used."""

    model_config = ConfigDict(extra="forbid")

    batch_id: str | None = None

    @field_validator("batch_id")
    @classmethod
    def check_batch_id(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _check_base64url_id(value, "batch_id")


class QueryDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid")

    time_interval: TimeIntervalQuery | None = None
    fixed_size: FixedSizeQuery | None = None
    agg_param: str = ""

    @model_validator(mode="after")
    def check_exactly_one(self) -> "QueryDescriptor":
        if (self.time_interval is None) == (self.fixed_size is None):
            raise ValueError("Query must set exactly one of time_interval, fixed_size")
        return self

    @property
    def query_type(self) -> int:
        return 1 if self.time_interval is not None else 2
