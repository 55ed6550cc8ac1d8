import asyncio

from loguru import logger

from config.settings import settings
from database.base import init_db
from services.maintenance_service import run_periodic_maintenance
from services.webhook_server import run_webhook_server


async def main():
    """Start the booking engine: database, payment webhooks and maintenance"""

    # Logging
    logger.add(
        "logs/rental.log",
        rotation="1 day",
        retention="7 days",
        level=settings.log_level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"
    )

    logger.info("🚀 Starting booking engine...")

    if not settings.gateway_configured:
        logger.warning("⚠️ Konnect wallet or API key missing, card payments will fail")

    runner = None
    try:
        logger.info("🗄️ Initializing database...")
        await init_db()
        logger.info("✅ Database initialized")

        runner = await run_webhook_server(settings.webhook_host, settings.webhook_port)

        # Maintenance loop runs until the process stops
        await run_periodic_maintenance(settings.maintenance_interval_hours)

    except Exception as e:
        logger.error(f"❌ Startup error: {e}")
        raise
    finally:
        if runner is not None:
            await runner.cleanup()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("👋 Stopped by user")
    except Exception as e:
        logger.error(f"💥 Critical error: {e}")
        raise
