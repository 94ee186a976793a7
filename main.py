import asyncio
import logging
import os
import sys

import uvicorn

from kiosk_sync import __version__
from kiosk_sync.config import SETTINGS_PATH, load_settings
from kiosk_sync.context import build_background_context, build_foreground_context
from kiosk_sync.network.ws_local import LocalBridge
from kiosk_sync.offline_kiosk.app import create_app
from kiosk_sync.services.errors import ConfigError


def configure_logging(level_name):
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.getLogger().setLevel(level)


async def run(settings):
    foreground = build_foreground_context(settings)
    background = build_background_context(settings)

    print(f"[*] Kiosk ID: {settings.kiosk_id}")
    print(f"[*] Upstream: {settings.server_url}")
    print(f"[*] Data dir: {os.path.abspath(settings.data_dir)}")
    print(f"[*] Pending submissions: {foreground.queue.count()}")

    print("[*] Installing resource cache...")
    await background.start()
    report = background.registration.last_install
    if report is not None and report.failed:
        print(f"[!] {len(report.failed)} resources could not be cached: {', '.join(report.failed)}")
    print(f"[+] Cache version {settings.cache_version} active")

    app = create_app(background, foreground)
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=settings.kiosk_host,
        port=settings.kiosk_port,
        log_level=settings.log_level.lower(),
    ))
    bridge = LocalBridge(background)

    print(f"[*] Kiosk server on http://{settings.kiosk_host}:{settings.kiosk_port}")
    print(f"[*] Local WebSocket Bridge on ws://{settings.kiosk_host}:{settings.bridge_port}")
    bridge_task = asyncio.create_task(bridge.serve(settings.kiosk_host, settings.bridge_port))
    try:
        await server.serve()
    finally:
        print("[*] Shutting down...")
        bridge_task.cancel()
        try:
            await bridge_task
        except asyncio.CancelledError:
            pass
        await background.stop()


def main():
    print(f"=== Kiosk Survey Edge v{__version__} ===")

    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"[!] Invalid configuration ({SETTINGS_PATH}): {e}")
        sys.exit(1)
    configure_logging(settings.log_level)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        print("\n[!] Interrupted.")


if __name__ == "__main__":
    main()
