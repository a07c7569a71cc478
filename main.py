"""
CareLink API client entry point
Starts the client, keeps connectivity tracking and the offline queue alive
"""

import asyncio
import sys

from loguru import logger

from carelink.client import CareLinkClient
from carelink.settings import load_settings


async def main() -> None:
    """Main function"""
    settings = load_settings()

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())

    logger.info("Starting CareLink client...")
    client = CareLinkClient(settings)

    try:
        await client.start()
        client.auth.on_auth_failure(
            lambda: logger.warning("Session expired, user must sign in again")
        )

        logger.info("CareLink client is running. Press Ctrl+C to stop.")
        while True:
            status = await client.get_health_status()
            logger.debug(f"Health: {status}")
            await asyncio.sleep(60)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        logger.info("Closing CareLink client...")
        await client.close()
        logger.info("CareLink client stopped")


if __name__ == "__main__":
    asyncio.run(main())
