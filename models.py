import datetime
import enum
from dataclasses import asdict, dataclass
from typing import Optional


class FlagType(str, enum.Enum):
    XP_SPIKE = "xp_spike"
    VOLUME_SPIKE = "volume_spike"
    IMPOSSIBLE_SET = "impossible_set"
    SCRIPTED_PATTERN = "scripted_pattern"
    NEW_ACCOUNT_RISK = "new_account_risk"
    EXCESSIVE_VOLUME = "excessive_volume"
    XP_RATE = "xp_rate"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FlagStatus(str, enum.Enum):
    PENDING = "pending"
    CLEARED = "cleared"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class WeeklyProgression:
    user_id: str
    iso_week: int
    xp: int
    workouts: int
    volume_kg: float
    pr_count: int
    gym_code: Optional[str]
    updated_at: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ProgressionState:
    user_id: str
    total_xp: int
    level: int
    current_streak: int
    longest_streak: int
    last_activity_date: Optional[datetime.date]
    forgiveness_used_on: Optional[datetime.date]
    prestige_count: int
    last_prestige_at: Optional[datetime.datetime]


@dataclass(frozen=True)
class PrestigeHistoryEntry:
    id: int
    user_id: str
    prestige_number: int
    xp_before: int
    level_before: int
    xp_after: int
    level_after: int
    created_at: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class AntiCheatFlag:
    id: int
    user_id: str
    flag_type: FlagType
    severity: Severity
    status: FlagStatus
    iso_week: Optional[int]
    reference: str
    details: str
    flagged_at: str
    reviewed_by: Optional[str]
    reviewed_at: Optional[str]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["flag_type"] = self.flag_type.value
        data["severity"] = self.severity.value
        data["status"] = self.status.value
        return data
