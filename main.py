"""Entry point for the overweight message recovery bot."""

import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from monitor.status_server import StatusServer
from monitor.substrate_gateway import SubstrateGateway, load_signer
from trading.controller import RecoveryController
from trading.recovery_types import ChainGateway, ConnectivityError


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # substrate-interface logs every websocket frame at DEBUG.
    logging.getLogger("substrateinterface").setLevel(logging.WARNING)
    logging.getLogger("websocket").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class RecoveryBot:
    def __init__(self, gateway: ChainGateway | None = None) -> None:
        self.gateway = gateway
        self.controller: RecoveryController | None = None
        self.blocks = None
        self.status_server: StatusServer | None = None

    async def start(self) -> None:
        if self.gateway is None:
            self.gateway = await SubstrateGateway.connect(config.WS_ENDPOINT)

        signer = None
        if not config.DRY_RUN:
            signer = load_signer(
                config.MNEMONIC,
                crypto_type=config.KEYPAIR_CRYPTO_TYPE,
                ss58_format=config.SS58_FORMAT,
            )
            logger.info("SIGNER_LOADED address=%s", signer.ss58_address)

        self.controller = RecoveryController.from_config(self.gateway, signer=signer)
        if config.STATUS_SERVER_ENABLED:
            self.status_server = StatusServer(self.controller.state)
            await self.status_server.start()

        self.blocks = await self.gateway.subscribe_new_blocks()
        logger.info(
            "BOT_STARTED endpoint=%s batch_limit=%s weight=%s/%s dry_run=%s",
            config.WS_ENDPOINT,
            config.BATCH_LIMIT,
            config.REF_TIME,
            config.PROOF_SIZE,
            config.DRY_RUN,
        )

    async def run(self) -> None:
        if self.controller is None or self.blocks is None:
            raise RuntimeError("RecoveryBot.start() must be awaited before run()")
        await self.controller.run(self.blocks)

    async def stop(self) -> None:
        if self.blocks is not None:
            self.blocks.unsubscribe()
            self.blocks = None
        if self.controller is not None:
            await self.controller.shutdown()
        if self.status_server is not None:
            await self.status_server.stop()
            self.status_server = None
        if self.gateway is not None:
            await self.gateway.disconnect()
            self.gateway = None
        logger.info("BOT_STOPPED")


async def _run_bot() -> int:
    bot = RecoveryBot()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - windows event loop
            pass

    try:
        await bot.start()
    except (ConnectivityError, ValueError) as exc:
        logger.error("BOT_START_FAILED err=%s", exc)
        await bot.stop()
        return 1

    run_task = asyncio.create_task(bot.run())
    stop_task = asyncio.create_task(stop_event.wait())
    try:
        done, _ = await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if run_task in done and run_task.exception() is not None:
            logger.error("Block subscription ended with error: %s", run_task.exception())
    finally:
        logger.info("Stopping bot...")
        stop_task.cancel()
        await bot.stop()
        if not run_task.done():
            run_task.cancel()
        await asyncio.gather(run_task, return_exceptions=True)
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(_run_bot())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
