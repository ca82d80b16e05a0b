import datetime
import logging
import math
import threading
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Header

from aggregation_service import AggregationSummary, WeeklyAggregator, utcnow
from algorithms.iso_week import parse_week_id, to_db_timestamp, week_id
from anticheat_service import AntiCheatHeuristics
from config import APP_VERSION
from db import (
    AccountRepository,
    ActivityRepository,
    AntiCheatFlagRepository,
    AsyncWeeklyProgressionRepository,
    GymMembershipRepository,
    PersonalRecordRepository,
    PrestigeHistoryRepository,
    ProgressionStateRepository,
    WeeklyProgressionRepository,
)
from errors import ConcurrencyConflict, UpstreamUnavailable
from models import FlagStatus
from prestige_service import PrestigeEngine
from progression_service import ProgressionService
from settings_schema import EngineSettings, load_settings

logger = logging.getLogger(__name__)


class AggregationScheduler(threading.Thread):
    """Background thread re-aggregating the current week on an interval."""

    def __init__(self, api: "ProgressionAPI", interval_hours: float = 24) -> None:
        super().__init__(daemon=True)
        self.api = api
        self.interval = interval_hours * 3600
        self.last_summary: AggregationSummary | None = None
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.last_summary = self.api.aggregator.run()
            except Exception:
                logger.exception("Scheduled weekly aggregation failed")
            self._stop_event.wait(self.interval)

    def stop(self) -> None:
        self._stop_event.set()


class ProgressionAPI:
    """Provides REST endpoints for the progression engine."""

    def __init__(
        self,
        db_path: str = "progression.db",
        yaml_path: str = "settings.yaml",
        *,
        settings: EngineSettings | None = None,
        start_scheduler: bool = False,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.db_path = db_path
        self.settings = settings or load_settings(yaml_path)
        self.clock = clock
        self.accounts = AccountRepository(db_path)
        self.activity = ActivityRepository(db_path)
        self.records = PersonalRecordRepository(db_path)
        self.gyms = GymMembershipRepository(db_path)
        self.weekly = WeeklyProgressionRepository(db_path)
        self.weekly_async = AsyncWeeklyProgressionRepository(db_path)
        self.states = ProgressionStateRepository(db_path)
        self.prestige_history = PrestigeHistoryRepository(db_path)
        self.flags = AntiCheatFlagRepository(db_path)
        self.anticheat = AntiCheatHeuristics(
            self.weekly, self.flags, self.accounts, self.settings
        )
        self.aggregator = WeeklyAggregator(
            self.activity,
            self.records,
            self.gyms,
            self.weekly,
            self.states,
            self.settings,
            anticheat=self.anticheat,
            clock=clock,
        )
        self.progression = ProgressionService(
            self.aggregator, self.activity, self.states, self.accounts, clock=clock
        )
        self.prestige = PrestigeEngine(
            self.states, self.prestige_history, self.settings, clock=clock
        )
        self.app = FastAPI(
            title="Progression API",
            description="XP, levels, streaks, weekly leaderboards and prestige",
            version=APP_VERSION,
        )
        self.scheduler: AggregationScheduler | None = None
        if start_scheduler:
            self.scheduler = AggregationScheduler(
                self, self.settings.aggregation_interval_hours
            )
            self.scheduler.start()
        self._setup_routes()

    def _require_admin(self, user_id: Optional[str]) -> str:
        if not user_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        if not self.accounts.is_admin(user_id):
            raise HTTPException(status_code=403, detail="Admin access required")
        return user_id

    def _aggregate(self, week: Optional[str]) -> dict:
        try:
            summary = self.aggregator.run(week)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except UpstreamUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"success": True, **summary.to_dict()}

    def _setup_routes(self) -> None:
        @self.app.get("/health")
        def health():
            return {"status": "ok"}

        @self.app.post("/cron/aggregate-weekly-xp")
        def cron_aggregate(
            week: str | None = None,
            authorization: str | None = Header(None),
        ):
            secret = self.settings.cron_secret
            if not secret or authorization != f"Bearer {secret}":
                raise HTTPException(status_code=401, detail="Unauthorized")
            return self._aggregate(week)

        @self.app.get("/admin/aggregate-weekly-xp")
        def admin_aggregate(
            week: str | None = None,
            x_user_id: str | None = Header(None),
        ):
            self._require_admin(x_user_id)
            return self._aggregate(week)

        @self.app.post("/sessions/{session_id}/complete")
        def complete_session(session_id: int):
            updated = self.progression.record_workout(session_id)
            return {"session_id": session_id, "progression_updated": updated}

        @self.app.get("/users/{user_id}/progression")
        def user_progression(user_id: str):
            data = self.progression.summary(user_id)
            if data is None:
                raise HTTPException(status_code=404, detail="progression not found")
            return data

        @self.app.get("/users/{user_id}/prestige")
        def prestige_status(user_id: str):
            return self.prestige.check_eligibility(user_id).to_dict()

        @self.app.post("/users/{user_id}/prestige")
        def prestige_enter(user_id: str, x_user_id: str | None = Header(None)):
            if not x_user_id:
                raise HTTPException(status_code=401, detail="Unauthorized")
            if x_user_id != user_id:
                raise HTTPException(status_code=403, detail="cannot prestige another user")
            try:
                outcome = self.prestige.enter(user_id)
            except ConcurrencyConflict as e:
                raise HTTPException(status_code=409, detail=str(e))
            data = outcome.to_dict(self.prestige.cooldown)
            if not outcome.success:
                raise HTTPException(status_code=403, detail=data)
            return data

        @self.app.get("/users/{user_id}/prestige/history")
        def prestige_history(user_id: str):
            return [entry.to_dict() for entry in self.prestige.history(user_id)]

        @self.app.get("/leaderboard")
        async def leaderboard(
            type: str = "global",
            week: str | None = None,
            gym_code: str | None = None,
            friend_ids: str | None = None,
            page: int = 1,
            limit: int = 50,
            x_user_id: str | None = Header(None),
        ):
            if page < 1 or limit < 1 or limit > 100:
                raise HTTPException(status_code=400, detail="Invalid pagination parameters")
            try:
                iso_week = (
                    parse_week_id(week)
                    if week
                    else week_id(self.clock(), self.settings.timezone)
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            user_ids = None
            if type == "gym":
                if not gym_code:
                    raise HTTPException(
                        status_code=400, detail="gym_code required for gym leaderboard"
                    )
            elif type == "friends":
                if not x_user_id:
                    raise HTTPException(status_code=401, detail="Unauthorized")
                ids = [f.strip() for f in (friend_ids or "").split(",") if f.strip()]
                user_ids = sorted(set(ids) | {x_user_id})
                gym_code = None
            elif type == "global":
                gym_code = None
            else:
                raise HTTPException(status_code=400, detail=f"unknown leaderboard type: {type}")
            offset = (page - 1) * limit
            rows, total = await self.weekly_async.leaderboard(
                iso_week,
                user_ids=user_ids,
                gym_code=gym_code,
                limit=limit,
                offset=offset,
            )
            return {
                "iso_week": iso_week,
                "entries": [
                    {
                        "rank": offset + i + 1,
                        "user_id": row.user_id,
                        "xp": row.xp,
                        "workouts": row.workouts,
                        "volume_kg": row.volume_kg,
                        "pr_count": row.pr_count,
                        "gym_code": row.gym_code,
                    }
                    for i, row in enumerate(rows)
                ],
                "total_participants": total,
                "page": page,
                "total_pages": math.ceil(total / limit),
            }

        @self.app.get("/admin/anti-cheat-flags")
        def list_flags(
            status: str = "pending",
            x_user_id: str | None = Header(None),
        ):
            self._require_admin(x_user_id)
            if status == "all":
                flags = self.flags.fetch_all_flags()
            else:
                try:
                    flags = self.flags.fetch_all_flags(FlagStatus(status))
                except ValueError as e:
                    raise HTTPException(status_code=400, detail=str(e))
            return {"flags": [f.to_dict() for f in flags]}

        @self.app.patch("/admin/anti-cheat-flags/{flag_id}")
        def review_flag(
            flag_id: int,
            action: str,
            x_user_id: str | None = Header(None),
        ):
            reviewer = self._require_admin(x_user_id)
            actions = {"clear": FlagStatus.CLEARED, "confirm": FlagStatus.CONFIRMED}
            if action not in actions:
                raise HTTPException(status_code=400, detail="action must be clear or confirm")
            try:
                self.flags.review(
                    flag_id, actions[action], reviewer, to_db_timestamp(self.clock())
                )
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return self.flags.fetch(flag_id).to_dict()
