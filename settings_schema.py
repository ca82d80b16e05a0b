from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError

from config import YamlConfig


class EngineSettings(BaseModel):
    """Policy constants for XP, prestige and anti-cheat."""

    timezone: str = "UTC"
    base_xp: int = Field(100, gt=0)
    xp_per_kg: float = Field(1.0, ge=0)
    first_of_day_bonus: int = Field(0, ge=0)
    prestige_min_xp: int = Field(100_000, gt=0)
    prestige_cooldown_days: float = Field(30, ge=0)
    xp_spike_multiplier: float = Field(3.0, gt=1)
    volume_spike_multiplier: float = Field(3.0, gt=1)
    trailing_weeks: int = Field(4, ge=1)
    min_trailing_weeks: int = Field(2, ge=1)
    weighted_trailing_average: bool = False
    max_set_weight_kg: float = Field(500.0, gt=0)
    max_set_reps: int = Field(200, gt=0)
    max_sets_per_session: int = Field(500, gt=0)
    min_set_interval_seconds: float = Field(2.0, ge=0)
    max_session_volume_kg: float = Field(50_000.0, gt=0)
    max_xp_per_hour: float = Field(20_000.0, gt=0)
    min_rate_minutes: float = Field(5.0, gt=0)
    new_account_days: int = Field(7, ge=0)
    new_account_percentile: float = Field(95.0, ge=0, le=100)
    new_account_min_participants: int = Field(10, ge=1)
    streak_forgiveness: bool = False
    forgiveness_window_days: int = Field(30, ge=1)
    page_size: int = Field(500, gt=0)
    cron_secret: str = ""
    aggregation_interval_hours: float = Field(24, gt=0)


def validate_settings(data: dict) -> EngineSettings:
    try:
        settings = EngineSettings(**data)
    except ValidationError as e:
        raise ValueError(str(e))
    try:
        ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"unknown timezone: {settings.timezone}")
    if settings.min_trailing_weeks > settings.trailing_weeks:
        raise ValueError("min_trailing_weeks must not exceed trailing_weeks")
    return settings


def load_settings(yaml_path: str = "settings.yaml", **overrides) -> EngineSettings:
    """Read ``yaml_path`` and apply keyword ``overrides`` on top."""
    data = YamlConfig(yaml_path).load()
    data.update(overrides)
    return validate_settings(data)
