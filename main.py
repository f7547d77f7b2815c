import asyncio
import logging
import os
import signal

from dotenv import load_dotenv

from sniper.config import load_settings
from sniper.engine import Engine
from sniper.errors import ConfigError
from transports.discord_bot import run_discord_bot


async def main():
    load_dotenv()
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s :: %(message)s")

    discord_token = os.getenv("DISCORD_TOKEN")
    guild_id_raw = os.getenv("DISCORD_GUILD_ID")
    guild_id = int(guild_id_raw) if guild_id_raw and guild_id_raw.isdigit() else None

    if not discord_token:
        raise SystemExit("Missing required environment variables.")

    try:
        settings = load_settings()
    except ConfigError as exc:
        raise SystemExit(f"Invalid configuration: {exc}")

    engine = Engine(settings)
    await engine.start()

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    discord_task = asyncio.create_task(run_discord_bot(engine, discord_token, guild_id))
    discord_task.add_done_callback(lambda _: stop_event.set())

    await stop_event.wait()

    discord_task.cancel()
    try:
        await discord_task
    except asyncio.CancelledError:
        pass
    finally:
        await engine.stop()


if __name__ == "__main__":
    asyncio.run(main())
