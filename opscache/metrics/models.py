import json
import math
import re
import time
from dataclasses import dataclass
from enum import Enum

from pydantic import AliasChoices, BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from opscache.core.errors import CorruptionError, ValidationError

_FAMILY_RE = re.compile(r"^[a-z][a-z0-9_]*$")
_GLOB_CHARS = set("*?[]\\")


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    HIT = "hit"
    MISS = "miss"

    @property
    def succeeded(self) -> bool:
        return self in (Outcome.SUCCESS, Outcome.HIT)


class MetricFamily(str, Enum):
    API = "api"
    DB = "db"
    CACHE = "cache"
    JOB = "job"


def family_name(family: "MetricFamily | str") -> str:
    name = family.value if isinstance(family, MetricFamily) else str(family)
    if not _FAMILY_RE.match(name):
        raise ValidationError(f"Invalid metric family {name!r}")
    return name


def check_dimension(dimension: str) -> str:
    """Dimensions are embedded in keys and scan patterns; reject glob characters."""
    if not isinstance(dimension, str) or not dimension.strip():
        raise ValidationError("Metric dimension must be a non-empty string")
    if _GLOB_CHARS & set(dimension) or any(c in dimension for c in "\r\n"):
        raise ValidationError(f"Invalid characters in metric dimension {dimension!r}")
    return dimension


@dataclass(frozen=True)
class TimeRange:
    """Half-open interval ``[start, end)`` in unix seconds."""

    start: float
    end: float

    def __post_init__(self):
        if self.end < self.start:
            raise ValidationError(
                f"Time range ends before it starts ({self.start} > {self.end})"
            )

    @classmethod
    def last(cls, seconds: float, now: float | None = None) -> "TimeRange":
        now = time.time() if now is None else now
        return cls(start=now - seconds, end=now)

    def bucket_indexes(self, width: int) -> range:
        if self.end == self.start:
            return range(0)
        return range(math.floor(self.start / width), math.ceil(self.end / width))

    @property
    def seconds(self) -> float:
        return self.end - self.start


class AggregateRecord(BaseModel):
    """Per-bucket aggregate. Stored as JSON under the bucket key."""

    count: int = Field(default=0, ge=0)
    total_duration: float = 0.0
    min_duration: float = math.inf
    max_duration: float = -math.inf
    success_count: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("success_count", "hits")
    )
    error_count: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("error_count", "misses")
    )

    @classmethod
    def empty(cls) -> "AggregateRecord":
        return cls()

    @classmethod
    def from_observation(cls, duration: float, outcome: Outcome) -> "AggregateRecord":
        ok = outcome.succeeded
        return cls(
            count=1,
            total_duration=duration,
            min_duration=duration,
            max_duration=duration,
            success_count=1 if ok else 0,
            error_count=0 if ok else 1,
        )

    def merge(self, other: "AggregateRecord") -> "AggregateRecord":
        """Combine two aggregates. Used both for observations and for range folds."""
        return AggregateRecord(
            count=self.count + other.count,
            total_duration=self.total_duration + other.total_duration,
            min_duration=min(self.min_duration, other.min_duration),
            max_duration=max(self.max_duration, other.max_duration),
            success_count=self.success_count + other.success_count,
            error_count=self.error_count + other.error_count,
        )

    @property
    def avg_duration(self) -> float:
        return self.total_duration / self.count if self.count else 0.0

    def to_json(self) -> str:
        # avg_duration is derived; kept in the payload for older readers.
        return json.dumps(
            {
                "count": self.count,
                "total_duration": self.total_duration,
                "avg_duration": self.avg_duration,
                "min_duration": self.min_duration,
                "max_duration": self.max_duration,
                "success_count": self.success_count,
                "error_count": self.error_count,
            }
        )

    @classmethod
    def from_json(cls, key: str, raw: str) -> "AggregateRecord":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CorruptionError(key, f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise CorruptionError(key, "payload is not an object")
        try:
            record = cls.model_validate(data)
        except PydanticValidationError as e:
            raise CorruptionError(key, str(e)) from e

        if record.success_count + record.error_count != record.count:
            raise CorruptionError(key, "outcome counters do not add up to count")
        slack = 1e-9 * max(1.0, abs(record.max_duration))
        if record.count and not (
            record.min_duration - slack
            <= record.avg_duration
            <= record.max_duration + slack
        ):
            raise CorruptionError(key, "duration bounds are inconsistent")
        return record


class AggregateSummary(BaseModel):
    count: int = 0
    total_duration: float = 0.0
    min_duration: float = 0.0
    max_duration: float = 0.0
    success_count: int = 0
    error_count: int = 0
    success_rate: float = 0.0
    avg_duration: float = 0.0
    buckets: int = 0

    @classmethod
    def from_record(cls, record: AggregateRecord, buckets: int = 0) -> "AggregateSummary":
        if not record.count:
            return cls(buckets=buckets)
        return cls(
            count=record.count,
            total_duration=record.total_duration,
            min_duration=record.min_duration,
            max_duration=record.max_duration,
            success_count=record.success_count,
            error_count=record.error_count,
            success_rate=record.success_count / record.count,
            avg_duration=record.avg_duration,
            buckets=buckets,
        )


@dataclass(frozen=True)
class CleanupResult:
    examined: int = 0
    deleted: int = 0
