"""
Serve the ChatBridge HTTP API: `python -m chatbridge_mcp`.
"""

import argparse
import signal
import sys
from typing import Optional

import anyio
from aiohttp import web

from chatbridge_mcp.app import ChatBridgeApp
from chatbridge_mcp.config.settings import load_config
from chatbridge_mcp.server import create_app
from chatbridge_mcp.utils.logging import get_logger

logger = get_logger("chatbridge.main")


async def serve(config_path: Optional[str], host: Optional[str], port: Optional[int]) -> None:
    settings = load_config(config_path)
    host = host or settings.server.host
    port = port or settings.server.port

    async with ChatBridgeApp(settings=settings).run() as chat_app:
        runner = web.AppRunner(create_app(chat_app))
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(f"ChatBridge API listening on http://{host}:{port}")

        try:
            with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
                async for signum in signals:
                    logger.info(f"Received signal {signum}, shutting down...")
                    break
        finally:
            await runner.cleanup()


def main() -> int:
    parser = argparse.ArgumentParser(description="ChatBridge MCP server")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to chatbridge_mcp.config.yaml (default: search the working directory)",
    )
    parser.add_argument("--host", default=None, help="Host to bind (default: from config)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind (default: from config)")
    args = parser.parse_args()

    try:
        anyio.run(serve, args.config, args.host, args.port)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
