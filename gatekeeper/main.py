"""Application entrypoint."""

from __future__ import annotations

import asyncio

from gatekeeper.config import get_settings
from gatekeeper.container import AccessContainer
from gatekeeper.logging import configure_logging, logger
from gatekeeper.services.seeds import ensure_subscription_plans


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.environment != "dev")

    container = AccessContainer(settings=settings)
    async with container:
        if settings.environment == "dev":
            await container.database.create_all()

        # Plans must exist before any quota evaluation.
        async with container.session() as session:
            await ensure_subscription_plans(session, settings)

        async with container.session() as session:
            plans = await container.limit_service(session).subscriptions.list_plans()
        logger.info(
            "gatekeeper_ready",
            environment=settings.environment,
            plans=[plan.name for plan in plans],
        )


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
