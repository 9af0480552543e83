"""
Sankhya gateway entry point
Serves the FastAPI app with uvicorn
"""

import uvicorn
from loguru import logger

from gateway.api.app import create_app
from gateway.settings import global_settings


def main() -> None:
    """Run the HTTP server"""
    logger.info(
        f"Starting Sankhya gateway on {global_settings.host}:{global_settings.port}..."
    )
    if not global_settings.redis_url:
        logger.warning("REDIS_URL not set, token and cache are local to this process")

    uvicorn.run(
        create_app(),
        host=global_settings.host,
        port=global_settings.port,
        log_level="debug" if global_settings.debug else "info",
    )


if __name__ == "__main__":
    main()
