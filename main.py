"""holdline entrypoint: answer SIP calls and play hold audio."""

import asyncio
import functools
import logging
import signal

import asyncpg
from dotenv import load_dotenv

from holdline.audio.source import open_audio_source, prepare_audio
from holdline.config import load_settings
from holdline.database import CallRecorder, run_migrations
from holdline.rtp.socket import create_media_sockets
from holdline.server import CallServer
from holdline.sip.transport import get_server_ip, start_transport

logger = logging.getLogger(__name__)


async def main() -> None:
    load_dotenv()
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    loop = asyncio.get_running_loop()
    server_ip = settings.server_ip or get_server_ip()

    # Render the hold audio off the loop so the first call does not stall it
    await loop.run_in_executor(None, prepare_audio, settings.audio)

    pool = None
    recorder = None
    if settings.database_url:
        pool = await asyncpg.create_pool(settings.database_url)
        assert pool is not None
        await run_migrations(pool)
        recorder = CallRecorder(pool)

    transport = await start_transport(settings.sip_host, settings.sip_port)
    server = CallServer(
        transport,
        server_ip=server_ip,
        allocate_media=functools.partial(
            create_media_sockets,
            settings.sip_host,
            settings.rtp_port_min,
            settings.rtp_port_max,
            strict=settings.rtp_strict_ports,
        ),
        open_source=functools.partial(open_audio_source, settings.audio),
        frame_size=settings.frame_size,
        recorder=recorder,
    )

    print("holdline SIP user agent server.")
    print(f"Call sip:holdline@{server_ip}:{transport.local_addr[1]} to hear {settings.audio!r}.")
    print("Press Ctrl-C to exit.")

    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    try:
        await shutdown.wait()
        logger.info("Exiting...")
    finally:
        await server.shutdown()
        logger.info("Shutting down SIP transport...")
        transport.close()
        if pool is not None:
            await pool.close()


if __name__ == "__main__":
    asyncio.run(main())
