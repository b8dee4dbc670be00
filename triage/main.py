from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.config import AppConfig, load_config
from core.logging import configure_logging
from core.runtime import TriageRuntime

LOGGER = logging.getLogger(__name__)


async def _run_service(config: AppConfig) -> None:
    async with TriageRuntime(config) as runtime:
        if not config.api.enabled:
            LOGGER.info("HTTP API disabled; running workers only")
            await asyncio.Event().wait()
            return
        api = create_api_app(runtime)
        server = uvicorn.Server(
            uvicorn.Config(
                app=api,
                host=config.api.host,
                port=config.api.port,
                log_level=config.logging.level.lower(),
                log_config=None,
            )
        )
        await server.serve()


def main() -> None:
    root = Path(__file__).resolve().parent
    config = load_config(root / "config" / "config.yaml")
    configure_logging(config.logging)
    try:
        asyncio.run(_run_service(config))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; shutting down")


if __name__ == "__main__":
    main()
