"""Management CLI for headless setup.

Usage:
    python -m setupkit.cli status                          # persisted connection + resume step
    python -m setupkit.cli test <provider> <connection>    # connectivity test only
    python -m setupkit.cli provision                       # test the saved connection, then provision
    python -m setupkit.cli container-status [username]     # managed container detection
"""

import asyncio
import sys

from setupkit.database import async_session, create_state_tables
from setupkit.middleware.exceptions import SetupError
from setupkit.services.connectivity import ConnectivityTester
from setupkit.services.orchestrator import get_orchestrator
from setupkit.services.runtime import configure_logging
from setupkit.services.sessions import registry


async def _with_orchestrator(action):
    await create_state_tables()
    async with async_session() as db:
        orchestrator = await get_orchestrator(db)
        try:
            result = await action(orchestrator)
            await db.commit()
            return result
        except Exception:
            await db.rollback()
            raise


async def status():
    async def action(orchestrator):
        db_status = await orchestrator.database_status()
        setup = await orchestrator.setup_status()
        print(f"  Configured:       {db_status['configured']}")
        print(f"  Provider:         {db_status['provider'] or '-'}")
        print(f"  Connection:       {db_status['connection_string_masked'] or '-'}")
        print(f"  Provisioned at:   {db_status['provisioned_at'] or '-'}")
        print(f"  Active step:      {setup['active_step']}")
        print(f"  Setup completed:  {setup['is_configured']}")
    await _with_orchestrator(action)


async def test(provider: str, connection_string: str) -> bool:
    result = await ConnectivityTester().test(provider, connection_string)
    print(f"  {'OK' if result.success else 'FAILED'}: {result.message} ({result.elapsed_ms} ms)")
    return result.success


async def provision() -> bool:
    session = registry.open("cli")

    async def action(orchestrator):
        config = await orchestrator.get_config()
        if config is None:
            print("No database connection has been saved.")
            return False
        result = await orchestrator.test_connection(
            session, config.provider, config.connection_string
        )
        if not result.success:
            print(f"  FAILED: {result.message}")
            return False
        config = await orchestrator.provision_schema(session)
        print(f"  OK: provisioned at {config.provisioned_at.isoformat()}")
        return True

    try:
        return await _with_orchestrator(action)
    finally:
        registry.close(session.session_id)


async def container_status(username: str | None):
    async def action(orchestrator):
        detected = await orchestrator.managed_container_status(username)
        print(f"  Exists:      {detected.exists}")
        print(f"  Running:     {detected.running}")
        print(f"  Configured:  {detected.configured}")
        print(f"  Username:    {detected.username or '-'}")
    await _with_orchestrator(action)


def main(argv: list[str]) -> int:
    configure_logging()
    cmd = argv[1] if len(argv) > 1 else ""
    try:
        if cmd == "status":
            asyncio.run(status())
        elif cmd == "test" and len(argv) == 4:
            return 0 if asyncio.run(test(argv[2], argv[3])) else 1
        elif cmd == "provision":
            return 0 if asyncio.run(provision()) else 1
        elif cmd == "container-status":
            asyncio.run(container_status(argv[2] if len(argv) > 2 else None))
        else:
            print("Usage: python -m setupkit.cli [status|test <provider> <connection>|provision|container-status [username]]")
            return 2
    except SetupError as exc:
        print(f"  FAILED: {exc.message}")
        return 1
    return 0


def run() -> None:
    sys.exit(main(sys.argv))


if __name__ == "__main__":
    run()
