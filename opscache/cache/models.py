import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from opscache.core.errors import CorruptionError


class CacheEnvelope(BaseModel):
    """What is actually stored under a cache key: the value plus write metadata."""

    data: Any
    cached_at: datetime
    version: str

    @classmethod
    def wrap(cls, value: Any, version: str, now: float) -> "CacheEnvelope":
        return cls(
            data=value,
            cached_at=datetime.fromtimestamp(now, tz=timezone.utc),
            version=version,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "data": self.data,
                "cached_at": self.cached_at.isoformat(),
                "version": self.version,
            },
            default=str,
        )

    @classmethod
    def from_json(cls, key: str, raw: str) -> "CacheEnvelope":
        try:
            return cls.model_validate_json(raw)
        except PydanticValidationError as e:
            raise CorruptionError(key, str(e)) from e

    @property
    def cached_at_timestamp(self) -> float:
        cached_at = self.cached_at
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=timezone.utc)
        return cached_at.timestamp()


@dataclass
class CacheWrite:
    """One entry of a batched ``set_many``."""

    key: str
    value: Any
    ttl: int | None = None
    tags: Sequence[str] = field(default_factory=tuple)
