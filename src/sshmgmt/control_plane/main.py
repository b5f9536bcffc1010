"""Command-line entrypoint for running the sshmgmt control plane."""

from __future__ import annotations

import asyncio

import uvicorn

from ..common.settings import ControlPlaneSettings
from .app import create_app


async def main() -> None:
    settings = ControlPlaneSettings()
    config = uvicorn.Config(
        create_app(),
        host=settings.bind_host,
        port=settings.bind_port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )
    await uvicorn.Server(config).serve()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
