from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from s3stream.common.config import Settings

IF_NONE_MATCH_ANY = "*"


@dataclass(frozen=True, slots=True)
class ConditionalWritePolicy:
    """Create-if-absent policy for completion and put requests.

    Conditional writes only take effect when a rotation schedule is active;
    without one the sink may legitimately rewrite the same key.
    """

    enabled: bool = False
    rotate_schedule_interval_ms: int | None = None

    @property
    def rotation_scheduled(self) -> bool:
        return bool(self.rotate_schedule_interval_ms and self.rotate_schedule_interval_ms > 0)

    @property
    def active(self) -> bool:
        return self.enabled and self.rotation_scheduled

    @property
    def if_none_match(self) -> str | None:
        return IF_NONE_MATCH_ANY if self.active else None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ConditionalWritePolicy":
        return cls(
            enabled=settings.S3_ENABLE_CONDITIONAL_WRITES,
            rotate_schedule_interval_ms=settings.ROTATE_SCHEDULE_INTERVAL_MS,
        )
