import datetime
import os
import sqlite3
import sys
import unittest
from unittest.mock import patch

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import UpstreamUnavailable
from rest_api import ProgressionAPI
from settings_schema import EngineSettings

NOW = datetime.datetime(2026, 10, 14, 12, 0, tzinfo=datetime.timezone.utc)
WEEK = 202642
WORKING_SETS = [(10, 100.0), (8, 100.0)]


def log_workout(api, user_id, started_at, sets=WORKING_SETS, warmups=()):
    sid = api.activity.create_session(user_id, started_at)
    for reps, weight in warmups:
        api.activity.add_set(sid, reps, weight, is_warmup=True)
    for reps, weight in sets:
        api.activity.add_set(sid, reps, weight)
    return sid


class AggregationTestBase(unittest.TestCase):
    db_path = "test_aggregation.db"

    def setUp(self) -> None:
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
        self.now = NOW
        self.api = self.make_api(EngineSettings())

    def tearDown(self) -> None:
        if os.path.exists(self.db_path):
            os.remove(self.db_path)

    def make_api(self, settings: EngineSettings) -> ProgressionAPI:
        return ProgressionAPI(self.db_path, settings=settings, clock=lambda: self.now)


class WeeklyAggregatorTest(AggregationTestBase):
    def test_two_workouts_earn_3800_xp(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00", warmups=[(10, 60.0)])
        log_workout(self.api, "alice", "2026-10-13 18:00:00")

        summary = self.api.aggregator.run()

        self.assertEqual(summary.iso_week, WEEK)
        self.assertEqual(summary.users_updated, 1)
        self.assertEqual(summary.rows_changed, 1)
        row = self.api.weekly.fetch("alice", WEEK)
        self.assertEqual(row.xp, 3800)
        self.assertEqual(row.workouts, 2)
        self.assertEqual(row.volume_kg, 3600.0)
        self.assertEqual(row.pr_count, 0)
        self.assertIsNone(row.gym_code)
        self.assertEqual(row.updated_at, "2026-10-14 12:00:00")
        state = self.api.states.fetch("alice")
        self.assertEqual(state.total_xp, 3800)
        self.assertEqual(state.level, 6)
        self.assertEqual(state.current_streak, 2)
        self.assertEqual(state.longest_streak, 2)
        self.assertEqual(state.last_activity_date, datetime.date(2026, 10, 13))

    def test_rerun_leaves_rows_identical(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        log_workout(self.api, "bob", "2026-10-13 07:30:00", sets=[(5, 80.0)])
        self.api.aggregator.run(WEEK)
        first_rows = self.api.weekly.fetch_week(WEEK)
        first_state = self.api.states.fetch("alice")

        self.now = NOW + datetime.timedelta(hours=2)
        summary = self.api.aggregator.run(WEEK)

        self.assertEqual(summary.users_updated, 2)
        self.assertEqual(summary.rows_changed, 0)
        self.assertEqual(self.api.weekly.fetch_week(WEEK), first_rows)
        self.assertEqual(self.api.states.fetch("alice"), first_state)

    def test_new_activity_updates_row(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        self.api.aggregator.run(WEEK)
        log_workout(self.api, "alice", "2026-10-14 08:00:00")
        self.now = NOW + datetime.timedelta(hours=1)

        summary = self.api.aggregator.run(WEEK)

        self.assertEqual(summary.rows_changed, 1)
        row = self.api.weekly.fetch("alice", WEEK)
        self.assertEqual(row.xp, 3800)
        self.assertEqual(row.updated_at, "2026-10-14 13:00:00")
        self.assertEqual(self.api.states.fetch("alice").total_xp, 3800)

    def test_first_of_day_bonus(self) -> None:
        api = self.make_api(EngineSettings(first_of_day_bonus=50))
        log_workout(api, "alice", "2026-10-12 09:00:00")
        log_workout(api, "alice", "2026-10-12 19:00:00")
        api.aggregator.run(WEEK)
        self.assertEqual(api.weekly.fetch("alice", WEEK).xp, 1900 * 2 + 50)

    def test_warmup_only_sessions_do_not_count(self) -> None:
        log_workout(self.api, "bob", "2026-10-12 09:00:00", sets=[], warmups=[(10, 40.0)])
        summary = self.api.aggregator.run(WEEK)
        self.assertEqual(summary.users_updated, 0)
        self.assertIsNone(self.api.weekly.fetch("bob", WEEK))
        self.assertIsNone(self.api.states.fetch("bob"))

    def test_invalid_session_is_skipped(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        log_workout(self.api, "alice", "2026-10-13 09:00:00", sets=[(5, -20.0)])
        with self.assertLogs("aggregation_service", level="WARNING"):
            self.api.aggregator.run(WEEK)
        row = self.api.weekly.fetch("alice", WEEK)
        self.assertEqual((row.xp, row.workouts), (1900, 1))

    def test_pr_count_is_limited_to_the_week(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        self.api.records.add("alice", "Bench Press", "2026-10-12 09:30:00")
        self.api.records.add("alice", "Squat", "2026-10-18 23:59:59")
        self.api.records.add("alice", "Deadlift", "2026-10-05 10:00:00")
        self.api.records.add("alice", "Row", "2026-10-19 00:00:00")
        self.api.aggregator.run(WEEK)
        self.assertEqual(self.api.weekly.fetch("alice", WEEK).pr_count, 2)

    def test_gym_affiliation(self) -> None:
        self.api.gyms.join("alice", "GYM-B", approved=True)
        self.api.gyms.join("alice", "GYM-A", approved=True)
        self.api.gyms.join("alice", "GYM-0", approved=False)
        self.api.gyms.join("carol", "GYM-A", opt_in=False, approved=True)
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        log_workout(self.api, "carol", "2026-10-12 10:00:00")
        self.api.aggregator.run(WEEK)
        self.assertEqual(self.api.weekly.fetch("alice", WEEK).gym_code, "GYM-A")
        self.assertIsNone(self.api.weekly.fetch("carol", WEEK).gym_code)

    def test_gym_directory_failure_keeps_stored_affiliation(self) -> None:
        self.api.gyms.join("alice", "GYM-A", approved=True)
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        self.api.aggregator.run(WEEK)
        log_workout(self.api, "alice", "2026-10-13 09:00:00")

        with patch.object(
            self.api.gyms, "affiliations", side_effect=sqlite3.OperationalError("directory down")
        ), self.assertLogs("aggregation_service", level="WARNING"):
            summary = self.api.aggregator.run(WEEK)

        self.assertEqual(summary.users_updated, 1)
        row = self.api.weekly.fetch("alice", WEEK)
        self.assertEqual(row.xp, 3800)
        self.assertEqual(row.gym_code, "GYM-A")

    def test_activity_store_failure_aborts(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        with patch.object(
            self.api.activity, "fetch_sessions", side_effect=sqlite3.OperationalError("down")
        ):
            with self.assertRaises(UpstreamUnavailable) as cm:
                self.api.aggregator.run(WEEK)
        self.assertEqual(cm.exception.source, "activity store")
        self.assertIsNone(self.api.weekly.fetch("alice", WEEK))

    def test_personal_record_store_failure_aborts(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        with patch.object(
            self.api.records, "count_by_user", side_effect=sqlite3.OperationalError("down")
        ):
            with self.assertRaises(UpstreamUnavailable) as cm:
                self.api.aggregator.run(WEEK)
        self.assertEqual(cm.exception.source, "personal-record store")

    def test_rows_without_activity_are_pruned(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        self.api.aggregator.run(WEEK)
        conn = sqlite3.connect(self.db_path)
        conn.execute("UPDATE set_entries SET is_warmup = 1;")
        conn.commit()
        conn.close()

        summary = self.api.aggregator.run(WEEK)

        self.assertEqual(summary.rows_pruned, 1)
        self.assertIsNone(self.api.weekly.fetch("alice", WEEK))

    def test_explicit_and_invalid_weeks(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        self.assertEqual(self.api.aggregator.run("2026-W41").users_updated, 0)
        with self.assertRaises(ValueError):
            self.api.aggregator.run("2026-W99")

    def test_pages_cover_every_user(self) -> None:
        api = self.make_api(EngineSettings(page_size=2))
        for name in ("u1", "u2", "u3", "u4", "u5"):
            log_workout(api, name, "2026-10-12 09:00:00")
        summary = api.aggregator.run(WEEK)
        self.assertEqual(summary.users_updated, 5)
        self.assertEqual(len(api.weekly.fetch_week(WEEK)), 5)

    def test_week_boundary_follows_reference_timezone(self) -> None:
        api = self.make_api(EngineSettings(timezone="America/New_York"))
        # Sunday evening in New York.
        log_workout(api, "alice", "2026-10-12 02:00:00")
        self.assertEqual(api.aggregator.run(202642).users_updated, 0)
        self.assertEqual(api.aggregator.run(202641).users_updated, 1)

    def test_run_logs_summary(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        with self.assertLogs("aggregation_service", level="INFO") as logs:
            self.api.aggregator.run(WEEK)
        self.assertTrue(any("Aggregated weekly XP for 1 users" in line for line in logs.output))


class LifetimeXpRepairTest(AggregationTestBase):
    def test_set_added_after_live_update_is_credited(self) -> None:
        sid = log_workout(self.api, "alice", "2026-10-13 09:00:00", sets=[(10, 100.0)])
        self.assertTrue(self.api.progression.record_workout(sid))
        self.assertEqual(self.api.states.fetch("alice").total_xp, 1100)
        self.api.activity.add_set(sid, 8, 100.0)

        self.api.aggregator.run(WEEK)
        self.api.aggregator.run(WEEK)

        self.assertEqual(self.api.weekly.fetch("alice", WEEK).xp, 1900)
        state = self.api.states.fetch("alice")
        self.assertEqual((state.total_xp, state.level), (1900, 4))

    def test_backdated_session_moves_first_of_day_bonus(self) -> None:
        api = self.make_api(EngineSettings(first_of_day_bonus=50))
        evening = log_workout(api, "alice", "2026-10-12 19:00:00")
        api.progression.record_workout(evening)
        self.assertEqual(api.states.fetch("alice").total_xp, 1950)
        morning = log_workout(api, "alice", "2026-10-12 09:00:00")
        api.progression.record_workout(morning)

        self.assertEqual(api.weekly.fetch("alice", WEEK).xp, 3850)
        self.assertEqual(api.states.fetch("alice").total_xp, 3850)

    def test_session_that_stops_qualifying_is_withdrawn(self) -> None:
        log_workout(self.api, "alice", "2026-10-12 09:00:00")
        log_workout(self.api, "alice", "2026-10-13 09:00:00")
        self.api.aggregator.run(WEEK)
        self.assertEqual(self.api.states.fetch("alice").total_xp, 3800)
        conn = sqlite3.connect(self.db_path)
        conn.execute("UPDATE set_entries SET is_warmup = 1;")
        conn.commit()
        conn.close()

        self.api.aggregator.run(WEEK)

        self.assertIsNone(self.api.weekly.fetch("alice", WEEK))
        self.assertEqual(self.api.states.fetch("alice").total_xp, 0)

    def test_single_user_path_withdraws_credit(self) -> None:
        sid = log_workout(self.api, "alice", "2026-10-12 09:00:00")
        self.api.progression.record_workout(sid)
        conn = sqlite3.connect(self.db_path)
        conn.execute("UPDATE set_entries SET is_warmup = 1;")
        conn.commit()
        conn.close()

        self.assertIsNone(self.api.aggregator.aggregate_user("alice", WEEK))
        self.assertEqual(self.api.states.fetch("alice").total_xp, 0)



if __name__ == "__main__":
    unittest.main()
