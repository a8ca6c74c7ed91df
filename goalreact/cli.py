"""CLI tool for operator tasks.

Usage:
    python -m goalreact.cli check-login
    python -m goalreact.cli sync-fixtures
    python -m goalreact.cli run-cycle
    python -m goalreact.cli cancel-trade <trade_id>
    python -m goalreact.cli serve
"""

import asyncio
import sys

from goalreact.config import settings, MissingCredentialsError
from goalreact.database import create_db_and_tables, engine as db_engine
from goalreact.engine.runtime import build_runtime
from goalreact.utils.logging import setup_logging


async def _with_runtime(action):
    settings.require_credentials()
    create_db_and_tables()
    runtime = build_runtime(settings, db_engine)
    try:
        await runtime.session.ensure_login("cli")
        return await action(runtime)
    finally:
        await runtime.close()


async def check_login(runtime):
    diag = runtime.session.diagnostics()
    for key, value in diag.items():
        print(f"{key}: {value}")
    return 0 if runtime.session.token else 1


async def sync_fixtures(runtime):
    created = await runtime.engine.sync_fixtures()
    print(f"Fixture sync created {created} trades.")
    return 0


async def run_cycle(runtime):
    result = await runtime.engine.run_cycle()
    print(f"Processed {result.processed} trades, {result.errors} errors.")
    return 0 if result.errors == 0 else 1


def _cancel_trade(trade_id: int):
    async def action(runtime):
        try:
            trade = runtime.engine.cancel_trade(trade_id)
        except LookupError as e:
            print(str(e))
            return 1
        print(f"Trade {trade_id} is now {trade.status}.")
        return 0
    return action


def serve():
    import uvicorn
    uvicorn.run("goalreact.main:app", host="0.0.0.0", port=8000)


COMMANDS = ("check-login", "sync-fixtures", "run-cycle", "cancel-trade", "serve")


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m goalreact.cli <command>")
        print(f"Commands: {', '.join(COMMANDS)}")
        sys.exit(1)

    command = sys.argv[1]
    if command == "serve":
        serve()
        return

    setup_logging()
    if command == "check-login":
        action = check_login
    elif command == "sync-fixtures":
        action = sync_fixtures
    elif command == "run-cycle":
        action = run_cycle
    elif command == "cancel-trade":
        if len(sys.argv) < 3 or not sys.argv[2].isdigit():
            print("Usage: python -m goalreact.cli cancel-trade <trade_id>")
            sys.exit(1)
        action = _cancel_trade(int(sys.argv[2]))
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)

    try:
        code = asyncio.run(_with_runtime(action))
    except MissingCredentialsError as e:
        print(str(e))
        sys.exit(2)
    sys.exit(code)


if __name__ == "__main__":
    main()
