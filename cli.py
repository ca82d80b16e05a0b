import argparse
import datetime
import json
from typing import Optional

from algorithms.weight_converter import WeightConverter
from logging_config import setup_logging
from rest_api import ProgressionAPI


def aggregate(db_path: str, yaml_path: str, week: Optional[str] = None) -> dict:
    api = ProgressionAPI(db_path=db_path, yaml_path=yaml_path)
    return {"success": True, **api.aggregator.run(week).to_dict()}


def prestige_status(db_path: str, yaml_path: str, user_id: str) -> dict:
    api = ProgressionAPI(db_path=db_path, yaml_path=yaml_path)
    return api.prestige.check_eligibility(user_id).to_dict()


def enter_prestige(db_path: str, yaml_path: str, user_id: str) -> dict:
    api = ProgressionAPI(db_path=db_path, yaml_path=yaml_path)
    outcome = api.prestige.enter(user_id)
    return outcome.to_dict(api.prestige.cooldown)


def leaderboard(
    db_path: str, yaml_path: str, week: Optional[str] = None, gym_code: Optional[str] = None, limit: int = 10
) -> list[dict]:
    api = ProgressionAPI(db_path=db_path, yaml_path=yaml_path)
    iso_week = api.aggregator.resolve_week(week)
    rows, _ = api.weekly.leaderboard(iso_week, gym_code=gym_code, limit=limit)
    return [{"rank": i + 1, **row.to_dict()} for i, row in enumerate(rows)]


def list_flags(db_path: str, yaml_path: str, status: Optional[str] = "pending") -> list[dict]:
    api = ProgressionAPI(db_path=db_path, yaml_path=yaml_path)
    return [f.to_dict() for f in api.flags.fetch_all_flags(status)]


def demo_data(db_path: str, yaml_path: str) -> None:
    """Populate the activity store with a demo user if it is empty."""
    api = ProgressionAPI(db_path=db_path, yaml_path=yaml_path)
    if api.activity.fetch_session(1) is not None:
        print("Database already contains sessions")
        return
    now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
    api.accounts.create("demo", (now - datetime.timedelta(days=60)).strftime("%Y-%m-%d %H:%M:%S"))
    for days_ago in range(3, -1, -1):
        started = (now - datetime.timedelta(days=days_ago)).strftime("%Y-%m-%d %H:%M:%S")
        sid = api.activity.create_session("demo", started)
        api.activity.add_set(sid, 10, 60.0, is_warmup=True)
        api.activity.add_set(sid, 10, 100.0)
        api.activity.add_set(sid, 8, 100.0)
        api.progression.record_workout(sid)
    print("Demo data inserted")


def main() -> None:
    parser = argparse.ArgumentParser(description="Progression engine commands")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-format", choices=["text", "json"], default="text")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def db_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--db", default="progression.db")
        p.add_argument("--yaml", default="settings.yaml")

    agg = sub.add_parser("aggregate")
    db_args(agg)
    agg.add_argument("--week", help="ISO week as YYYYWW or YYYY-Www; defaults to the current week")

    status = sub.add_parser("prestige-status")
    db_args(status)
    status.add_argument("--user", required=True)

    pres = sub.add_parser("prestige")
    db_args(pres)
    pres.add_argument("--user", required=True)

    board = sub.add_parser("leaderboard")
    db_args(board)
    board.add_argument("--week")
    board.add_argument("--gym")
    board.add_argument("--limit", type=int, default=10)

    flags = sub.add_parser("flags")
    db_args(flags)
    flags.add_argument("--status", choices=["pending", "cleared", "confirmed", "all"], default="pending")

    demo = sub.add_parser("demo")
    db_args(demo)

    conv = sub.add_parser("convert")
    conv.add_argument("--weight", type=float, required=True)
    conv.add_argument("--unit", choices=["kg", "lb"], required=True)

    args = parser.parse_args()
    setup_logging(args.log_level, args.log_format)

    if args.cmd == "aggregate":
        print(json.dumps(aggregate(args.db, args.yaml, args.week)))
    elif args.cmd == "prestige-status":
        print(json.dumps(prestige_status(args.db, args.yaml, args.user)))
    elif args.cmd == "prestige":
        print(json.dumps(enter_prestige(args.db, args.yaml, args.user)))
    elif args.cmd == "leaderboard":
        print(json.dumps(leaderboard(args.db, args.yaml, args.week, args.gym, args.limit)))
    elif args.cmd == "flags":
        status_filter = None if args.status == "all" else args.status
        print(json.dumps(list_flags(args.db, args.yaml, status_filter)))
    elif args.cmd == "demo":
        demo_data(args.db, args.yaml)
    elif args.cmd == "convert":
        if args.unit == "kg":
            print(f"{args.weight} kg = {WeightConverter.kg_to_lb(args.weight)} lb")
        else:
            print(f"{args.weight} lb = {WeightConverter.lb_to_kg(args.weight)} kg")


if __name__ == "__main__":
    main()
