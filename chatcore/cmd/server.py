from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from chatcore.core.config import Settings
from chatcore.server.runtime import ServerRuntime

log = logging.getLogger("chatcore.cmd.server")


async def _run(settings: Settings) -> None:
    runtime = ServerRuntime(settings)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="chatcore real-time chat server")
    parser.add_argument("--config", help="Path to server YAML config (environment variables override it)")
    parser.add_argument("--port", type=int, help="Listen port, overrides config and PORT")
    args = parser.parse_args(argv)

    config_path: Optional[Path] = Path(args.config) if args.config else None
    settings = Settings.load(config_path)
    if args.port is not None:
        settings.port = args.port

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
