"""Substrate chain gateway: block heads, message-queue storage and forced batches."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

from substrateinterface import ExtrinsicReceipt, Keypair, KeypairType, SubstrateInterface

import config
from trading.recovery_types import (
    ConnectivityError,
    Finalized,
    InBlock,
    ItemEvent,
    OriginRef,
    StatusUpdate,
    SubmissionError,
    WeightLimit,
    event_kind_for_method,
    origin_call_arg,
)

logger = logging.getLogger(__name__)

_STREAM_END = object()
_TERMINAL_STATUSES = {"dropped", "invalid", "usurped", "finalitytimeout"}


def load_signer(secret: str, *, crypto_type: str = "sr25519", ss58_format: int | None = None) -> Keypair:
    if not secret:
        raise ValueError("MNEMONIC is empty")
    key_type = {"sr25519": KeypairType.SR25519, "ed25519": KeypairType.ED25519}.get(crypto_type.lower())
    if key_type is None:
        raise ValueError(f"unsupported KEYPAIR_CRYPTO_TYPE: {crypto_type!r}")
    kwargs: dict[str, Any] = {"crypto_type": key_type}
    if ss58_format is not None:
        kwargs["ss58_format"] = ss58_format
    return Keypair.create_from_uri(secret, **kwargs)


class ThreadedSubscription:
    """Async stream fed by a blocking substrate-interface subscription running in a worker thread."""

    def __init__(self, name: str, closer: Callable[[], None]) -> None:
        self.name = name
        self._closer = closer
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._stopped = threading.Event()
        self._worker: asyncio.Future[None] | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self, worker: Callable[["ThreadedSubscription"], None]) -> None:
        self._worker = asyncio.ensure_future(asyncio.to_thread(self._run, worker))

    def push(self, item: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Event loop already closed during shutdown.
            pass

    def _run(self, worker: Callable[["ThreadedSubscription"], None]) -> None:
        try:
            worker(self)
        except Exception as exc:
            if not self.stopped:
                logger.warning("SUBSCRIPTION_ERROR name=%s err=%s", self.name, exc)
                self.push(exc)
        finally:
            self.push(_STREAM_END)

    def __aiter__(self) -> "ThreadedSubscription":
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _STREAM_END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    def unsubscribe(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        try:
            self._closer()
        except Exception as exc:  # pragma: no cover - network/runtime dependent
            logger.debug("SUBSCRIPTION_CLOSE name=%s err=%s", self.name, exc)
        logger.info("SUBSCRIPTION_RELEASED name=%s", self.name)


class SubstrateGateway:
    """Chain access for the recovery controller.

    Queries and call composition share one connection; the new-heads stream and
    each watched extrinsic get their own connection since substrate-interface
    subscriptions block the socket they run on.
    """

    def __init__(self, url: str, *, ss58_format: int | None = None) -> None:
        self.url = url
        self.ss58_format = ss58_format
        self.substrate: SubstrateInterface | None = None

    def _open(self) -> SubstrateInterface:
        kwargs: dict[str, Any] = {"url": self.url}
        if self.ss58_format is not None:
            kwargs["ss58_format"] = self.ss58_format
        return SubstrateInterface(**kwargs)

    @classmethod
    async def connect(
        cls,
        url: str | None = None,
        *,
        ss58_format: int | None = None,
        retries: int | None = None,
    ) -> "SubstrateGateway":
        gateway = cls(url or config.WS_ENDPOINT, ss58_format=ss58_format if ss58_format is not None else config.SS58_FORMAT)
        attempts = max(1, int(retries if retries is not None else config.RPC_CONNECT_RETRIES))
        delays = config.RPC_RETRY_DELAYS_SECONDS
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                gateway.substrate = await asyncio.to_thread(gateway._open)
                break
            except Exception as exc:  # pragma: no cover - network/runtime dependent
                last_error = exc
                logger.warning("CHAIN_CONNECT_RETRY url=%s attempt=%s/%s err=%s", gateway.url, attempt, attempts, exc)
                if attempt < attempts:
                    await asyncio.sleep(delays[min(attempt - 1, len(delays) - 1)])
        else:
            raise ConnectivityError(f"cannot connect to {gateway.url}: {last_error}")
        logger.info(
            "CHAIN_CONNECTED url=%s chain=%s runtime=%s",
            gateway.url,
            gateway.substrate.chain,
            gateway.substrate.runtime_version,
        )
        return gateway

    def _require(self) -> SubstrateInterface:
        if self.substrate is None:
            raise ConnectivityError("gateway is not connected")
        return self.substrate

    async def _rpc_with_backoff(self, call: Callable[[], Any], op_name: str) -> Any:
        delays = config.RPC_RETRY_DELAYS_SECONDS
        last_error: Exception | None = None
        # One initial attempt plus one retry per configured delay.
        for attempt in range(len(delays) + 1):
            try:
                return await asyncio.to_thread(call)
            except Exception as exc:
                last_error = exc
                if attempt < len(delays):
                    logger.warning("RPC_RETRY op=%s attempt=%s err=%s", op_name, attempt + 1, exc)
                    await asyncio.sleep(delays[attempt])
        raise ConnectivityError(f"{op_name} failed after retries: {last_error}")

    async def subscribe_new_blocks(self) -> ThreadedSubscription:
        heads = await asyncio.to_thread(self._open)
        stream = ThreadedSubscription("new_heads", heads.close)

        def _worker(sub: ThreadedSubscription) -> None:
            def _handler(obj: Any, update_nr: int, subscription_id: str) -> Any:
                if sub.stopped:
                    return True
                header = (obj or {}).get("header") or {}
                block_ref = header.get("hash") or f"#{header.get('number')}"
                sub.push(str(block_ref))
                return None

            heads.subscribe_block_headers(_handler)

        stream.start(_worker)
        return stream

    async def query_service_head(self) -> Any | None:
        substrate = self._require()
        result = await self._rpc_with_backoff(
            lambda: substrate.query("MessageQueue", "ServiceHead"),
            "MessageQueue.ServiceHead",
        )
        return getattr(result, "value", result)

    async def query_queue_pages(self) -> list[tuple[Any, Any]]:
        substrate = self._require()
        return await self._rpc_with_backoff(
            lambda: [(key, value) for key, value in substrate.query_map("MessageQueue", "Pages")],
            "MessageQueue.Pages",
        )

    async def build_recovery_call(
        self, origin: OriginRef, page_index: int, sub_index: int, weight_limit: WeightLimit
    ) -> Any:
        substrate = self._require()
        params = {
            "message_origin": origin_call_arg(origin),
            "page": int(page_index),
            "index": int(sub_index),
            "weight_limit": weight_limit.as_call_arg(),
        }
        return await asyncio.to_thread(
            substrate.compose_call,
            call_module="MessageQueue",
            call_function="execute_overweight",
            call_params=params,
        )

    def fingerprint(self, call: Any) -> str:
        return str(call.data)

    async def build_batch_call(self, calls: Sequence[Any]) -> Any:
        substrate = self._require()
        try:
            return await asyncio.to_thread(
                substrate.compose_call,
                call_module="Utility",
                call_function="force_batch",
                call_params={"calls": list(calls)},
            )
        except Exception as exc:
            raise SubmissionError(f"force_batch compose failed: {exc}") from exc

    async def submit_and_track(self, call: Any, signer: Keypair) -> ThreadedSubscription:
        substrate = self._require()
        opened: list[SubstrateInterface] = []
        try:
            extrinsic = await asyncio.to_thread(substrate.create_signed_extrinsic, call=call, keypair=signer)
            watcher = await asyncio.to_thread(self._open)
            opened.append(watcher)
            # Receipt lookups can't share the socket the watch subscription is blocked on.
            receipts = await asyncio.to_thread(self._open)
            opened.append(receipts)
        except Exception as exc:
            for conn in opened:
                try:
                    conn.close()
                except Exception as close_exc:  # pragma: no cover - network/runtime dependent
                    logger.debug("WATCH_CONN_CLOSE err=%s", close_exc)
            raise SubmissionError(f"batch signing failed: {exc}") from exc

        extrinsic_hash = f"0x{extrinsic.extrinsic_hash.hex()}"
        logger.info("BATCH_SIGNED hash=%s call=%s", extrinsic_hash, call.data)

        def _close() -> None:
            watcher.close()
            receipts.close()

        stream = ThreadedSubscription(f"extrinsic:{extrinsic_hash}", _close)
        handler = self._watch_handler(stream, watcher, receipts, extrinsic_hash)

        def _worker(sub: ThreadedSubscription) -> None:
            watcher.rpc_request("author_submitAndWatchExtrinsic", [str(extrinsic.data)], result_handler=handler)

        stream.start(_worker)
        return stream

    def _watch_handler(
        self,
        sub: ThreadedSubscription,
        watcher: SubstrateInterface,
        receipts: SubstrateInterface,
        extrinsic_hash: str,
    ) -> Callable[[dict[str, Any], int, str], Any]:
        """Map `author_extrinsicUpdate` messages to status events; a truthy return ends the watch."""

        def _handler(message: dict[str, Any], update_nr: int, subscription_id: str) -> Any:
            if sub.stopped:
                return True
            result = (message.get("params") or {}).get("result")
            if isinstance(result, str):
                sub.push(StatusUpdate(status=result))
                return True if result.lower() in _TERMINAL_STATUSES else None
            status = {str(k).lower(): v for k, v in (result or {}).items()}
            if "inblock" in status:
                block_hash = str(status["inblock"])
                item_events = self._fetch_receipt_events(receipts, extrinsic_hash, block_hash)
                sub.push(InBlock(block_hash=block_hash, item_events=item_events))
                return None
            if "finalized" in status:
                watcher.rpc_request("author_unwatchExtrinsic", [subscription_id])
                sub.push(Finalized(block_hash=str(status["finalized"])))
                return True
            for name in status:
                sub.push(StatusUpdate(status=name))
                if name in _TERMINAL_STATUSES:
                    return True
            return None

        return _handler

    def _fetch_receipt_events(
        self, substrate: SubstrateInterface, extrinsic_hash: str, block_hash: str
    ) -> tuple[ItemEvent, ...]:
        # Runs on the watch thread, so blocking sleeps between attempts are fine.
        delays = config.RPC_RETRY_DELAYS_SECONDS
        for attempt in range(len(delays) + 1):
            try:
                return self._receipt_events(substrate, extrinsic_hash, block_hash)
            except Exception as exc:
                if attempt < len(delays):
                    logger.warning("RECEIPT_RETRY hash=%s block=%s attempt=%s err=%s", extrinsic_hash, block_hash, attempt + 1, exc)
                    time.sleep(delays[attempt])
                else:
                    logger.error("RECEIPT_UNAVAILABLE hash=%s block=%s err=%s", extrinsic_hash, block_hash, exc)
        return ()

    @staticmethod
    def _receipt_events(substrate: SubstrateInterface, extrinsic_hash: str, block_hash: str) -> tuple[ItemEvent, ...]:
        receipt = ExtrinsicReceipt(substrate=substrate, extrinsic_hash=extrinsic_hash, block_hash=block_hash)
        events: list[ItemEvent] = []
        for record in receipt.triggered_events:
            value = getattr(record, "value", record) or {}
            event = value.get("event", value)
            method = str(event.get("event_id", "") or "")
            events.append(
                ItemEvent(
                    kind=event_kind_for_method(method),
                    section=str(event.get("module_id", "") or ""),
                    method=method,
                    payload=event.get("attributes"),
                )
            )
        return tuple(events)

    async def disconnect(self) -> None:
        if self.substrate is None:
            return
        substrate, self.substrate = self.substrate, None
        await asyncio.to_thread(substrate.close)
        logger.info("CHAIN_DISCONNECTED url=%s", self.url)
