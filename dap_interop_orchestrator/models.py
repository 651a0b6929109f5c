from dataclasses import dataclass, field
from enum import Enum

QUERY_TYPE_TIME_INTERVAL = 1
QUERY_TYPE_FIXED_SIZE = 2


@dataclass(frozen=True)
class AggregatorEndpoint:
    """An aggregator reachable at ``origin``, speaking DAP ``version``.

    Test-only routes such as ``/internal/delete_all`` live at the origin,
    versioned routes such as ``/v09/internal/test/add_task`` under
    ``base_url``.
    """

    role: str
    origin: str
    version: str

    @property
    def base_url(self) -> str:
        return f"{self.origin.rstrip('/')}/{self.version}"

    def origin_path(self, path: str) -> str:
        return f"{self.origin.rstrip('/')}/{path.lstrip('/')}"

    def versioned_path(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"


@dataclass(frozen=True)
class VdafConfig:
    type: str
    bits: int | None = None
    length: int | None = None
    chunk_length: int | None = None

    def task_json(self) -> dict:
        """VDAF as the aggregators' add_task route expects it: numbers as strings."""
        out = {"type": self.type}
        for name in ("bits", "length", "chunk_length"):
            value = getattr(self, name)
            if value is not None:
                out[name] = str(value)
        return out

    def decoder_json(self) -> dict:
        """VDAF as the decoder tool's ``--vdaf-config`` expects it."""
        if self.type == "Prio3Count":
            return {"prio3": "count"}
        if self.type == "Prio3Sum":
            return {"prio3": {"sum": {"bits": self.bits}}}
        if self.type == "Prio3SumVec":
            return {
                "prio3": {
                    "sum_vec": {
                        "bits": self.bits,
                        "length": self.length,
                        "chunk_length": self.chunk_length,
                    }
                }
            }
        if self.type == "Prio3Histogram":
            return {
                "prio3": {
                    "histogram": {
                        "length": self.length,
                        "chunk_length": self.chunk_length,
                    }
                }
            }
        raise ValueError(f"Unknown VDAF type: {self.type}")

    def max_measurement(self) -> int:
        if self.type == "Prio3Count":
            return 1
        if self.type in ("Prio3Sum", "Prio3SumVec"):
            return 2**self.bits - 1
        # Histogram entries are per-bucket counts of one.
        return 1

    def aggregate_in_range(self, aggregate, report_count: int) -> bool:
        """Whether ``aggregate`` is a value this VDAF can produce from
        ``report_count`` measurements."""
        bound = self.max_measurement() * report_count
        if self.type in ("Prio3Count", "Prio3Sum"):
            return (
                isinstance(aggregate, int)
                and not isinstance(aggregate, bool)
                and 0 <= aggregate <= bound
            )
        if not isinstance(aggregate, list) or len(aggregate) != self.length:
            return False
        if not all(isinstance(v, int) and 0 <= v <= bound for v in aggregate):
            return False
        if self.type == "Prio3Histogram":
            return sum(aggregate) <= report_count
        return True


@dataclass(frozen=True)
class Task:
    """A DAP task as registered on both aggregators.

    Attributes:
        task_id:                            32 bytes, base64url without padding.
        vdaf:                               The VDAF and its parameters.
        leader_url:                         The Leader's versioned base URL.
        helper_url:                         The Helper's versioned base URL.
        time_precision:                     Report timestamp granularity, in seconds.
        min_batch_size:                     Fewest reports a collectable batch may hold.
        max_batch_size:                     Most reports per batch (fixed-size tasks only).
        query_type:                         1 for time interval, 2 for fixed size.
        task_expiration:                    Unix time after which the task is rejected.
        vdaf_verify_key:                    Shared between Leader and Helper, base64url.
        leader_authentication_token:        Presented by the Leader to the Helper.
        collector_authentication_token:     Presented by the Collector to the Leader.
        collector_hpke_config:              The Collector's public HPKE config, base64url.
    """

    task_id: str
    vdaf: VdafConfig
    leader_url: str
    helper_url: str
    time_precision: int
    min_batch_size: int
    max_batch_size: int | None
    query_type: int
    task_expiration: int
    vdaf_verify_key: str
    leader_authentication_token: str
    collector_authentication_token: str
    collector_hpke_config: str

    def _descriptor(self, role: str) -> dict:
        descriptor = {
            "task_id": self.task_id,
            "leader": self.leader_url,
            "helper": self.helper_url,
            "vdaf": self.vdaf.task_json(),
            "leader_authentication_token": self.leader_authentication_token,
            "role": role,
            "vdaf_verify_key": self.vdaf_verify_key,
            "query_type": self.query_type,
            "min_batch_size": self.min_batch_size,
            "time_precision": self.time_precision,
            "collector_hpke_config": self.collector_hpke_config,
            "task_expiration": self.task_expiration,
        }
        if self.query_type == QUERY_TYPE_FIXED_SIZE:
            descriptor["max_batch_size"] = self.max_batch_size
        return descriptor

    def leader_descriptor(self) -> dict:
        descriptor = self._descriptor("leader")
        descriptor["collector_authentication_token"] = (
            self.collector_authentication_token
        )
        return descriptor

    def helper_descriptor(self) -> dict:
        # The Helper never talks to the Collector, so it gets no Collector
        # credential. It still encrypts its aggregate share to the Collector.
        return self._descriptor("helper")

    def __str__(self):
        return str(
            f"Task(task_id='{self.task_id}', vdaf={self.vdaf}, leader_url='{self.leader_url}', "
            f"helper_url='{self.helper_url}', time_precision={self.time_precision}, "
            f"query_type={self.query_type}, tokens='redacted')"
        )

    __repr__ = __str__


class CollectionJobState(Enum):
    CREATED = "created"
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class CollectionJob:
    task_id: str
    url: str
    state: CollectionJobState = CollectionJobState.CREATED
    polls: int = 0
    payload: bytes | None = None
    error: str | None = None


@dataclass(frozen=True)
class CollectionHeader:
    """The unencrypted prefix of a completed collection job's response."""

    query_type: int
    batch_id: str | None
    report_count: int
    interval_start: int
    interval_duration: int
    leader_config_id: int
    helper_config_id: int


@dataclass(frozen=True)
class AggregateResult:
    task_id: str
    report_count: int
    aggregate: int | list[int]
    job_url: str


@dataclass
class RunSummary:
    task_id: str
    uploads_attempted: int = 0
    uploads_succeeded: int = 0
    trigger_calls: int = 0
    polls: int = 0
    job_url: str | None = None
    result: AggregateResult | None = None
    steps: list[str] = field(default_factory=list)
