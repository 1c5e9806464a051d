import argparse
import asyncio
import json
import shutil
from typing import Optional

from config import load_settings, resolver_policy
from exercise_resolver import DEFAULT_POLICY, resolve
from logging_config import configure_logging
from schema import LATEST_VERSION, open_store
from seed import EXERCISE_SEED_VERSION, seed_exercises


def backup_db(db_path: str, backup_path: str) -> None:
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    shutil.copy(backup_path, db_path)


async def migrate(db_path: str) -> int:
    """Bring the store to the latest schema version and return it."""
    store = await open_store(db_path)
    try:
        return await store.user_version()
    finally:
        await store.close()


async def seed_from_file(db_path: str, records_path: str, version: str) -> dict:
    with open(records_path, "r", encoding="utf-8") as f:
        records = json.load(f)
    if not isinstance(records, list):
        raise ValueError("seed file must contain a JSON list of exercises")
    store = await open_store(db_path)
    try:
        return await seed_exercises(store, records, version)
    finally:
        await store.close()


async def resolve_text(db_path: str, text: str, settings=None) -> dict:
    store = await open_store(db_path)
    try:
        exercises = await store.table("exercises").to_list()
    finally:
        await store.close()
    policy = resolver_policy(settings) if settings is not None else DEFAULT_POLICY
    return resolve(text, exercises, policy=policy).to_dict()


async def dump_db(db_path: str, output: str) -> None:
    store = await open_store(db_path)
    try:
        data = await store.dump()
    finally:
        await store.close()
    with open(output, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Iron Planner utility commands")
    parser.add_argument("--settings", default="settings.yaml")
    parser.add_argument("--db", default=None, help="store path (defaults to settings)")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("migrate")

    sd = sub.add_parser("seed")
    sd.add_argument("records")
    sd.add_argument("--version", default=EXERCISE_SEED_VERSION)

    rs = sub.add_parser("resolve")
    rs.add_argument("text")

    bkp = sub.add_parser("backup")
    bkp.add_argument("output")

    rst = sub.add_parser("restore")
    rst.add_argument("backup")

    dmp = sub.add_parser("dump")
    dmp.add_argument("output")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    settings = load_settings(args.settings)
    db_path = args.db or settings.db_path

    if args.cmd == "migrate":
        version = asyncio.run(migrate(db_path))
        print(f"{db_path} is at schema version {version} (latest {LATEST_VERSION})")
    elif args.cmd == "seed":
        result = asyncio.run(seed_from_file(db_path, args.records, args.version))
        print(json.dumps(result))
    elif args.cmd == "resolve":
        print(json.dumps(asyncio.run(resolve_text(db_path, args.text, settings)), indent=2))
    elif args.cmd == "backup":
        backup_db(db_path, args.output)
    elif args.cmd == "restore":
        restore_db(args.backup, db_path)
    elif args.cmd == "dump":
        asyncio.run(dump_db(db_path, args.output))


if __name__ == "__main__":
    main()
