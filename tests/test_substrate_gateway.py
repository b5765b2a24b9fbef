from __future__ import annotations

import asyncio
import threading
import unittest
from types import SimpleNamespace
from unittest import mock

import config
from monitor import substrate_gateway
from monitor.substrate_gateway import SubstrateGateway, ThreadedSubscription, load_signer
from trading.recovery_types import (
    ConnectivityError,
    Finalized,
    HereOrigin,
    InBlock,
    ItemEvent,
    ItemEventKind,
    ParentOrigin,
    StatusUpdate,
    SubmissionError,
    WeightLimit,
)


class ThreadedSubscriptionTests(unittest.IsolatedAsyncioTestCase):
    async def test_items_pushed_from_worker_thread_are_streamed_in_order(self) -> None:
        sub = ThreadedSubscription("test", lambda: None)

        def _worker(s: ThreadedSubscription) -> None:
            for item in ("0x01", "0x02", "0x03"):
                s.push(item)

        sub.start(_worker)
        received = [item async for item in sub]
        self.assertEqual(received, ["0x01", "0x02", "0x03"])

    async def test_worker_error_is_raised_to_consumer(self) -> None:
        sub = ThreadedSubscription("test", lambda: None)

        def _worker(s: ThreadedSubscription) -> None:
            s.push("0x01")
            raise RuntimeError("socket closed")

        sub.start(_worker)
        received: list[str] = []
        with self.assertRaises(RuntimeError):
            async for item in sub:
                received.append(item)
        self.assertEqual(received, ["0x01"])

    async def test_unsubscribe_closes_once_and_stops_worker(self) -> None:
        closed: list[int] = []
        release = threading.Event()
        sub = ThreadedSubscription("test", lambda: (closed.append(1), release.set()))

        def _worker(s: ThreadedSubscription) -> None:
            release.wait(timeout=5)

        sub.start(_worker)
        sub.unsubscribe()
        sub.unsubscribe()
        self.assertTrue(sub.stopped)
        self.assertEqual(closed, [1])
        received = await asyncio.wait_for(_collect(sub), timeout=5)
        self.assertEqual(received, [])


async def _collect(sub: ThreadedSubscription) -> list[object]:
    return [item async for item in sub]


class _Record:
    def __init__(self, module_id: str, event_id: str, attributes: object = None) -> None:
        self.value = {"phase": "ApplyExtrinsic", "event": {"module_id": module_id, "event_id": event_id, "attributes": attributes}}


class ReceiptEventsTests(unittest.TestCase):
    def test_triggered_events_are_mapped_to_item_events(self) -> None:
        records = [
            _Record("Utility", "ItemCompleted"),
            _Record("Utility", "ItemFailed", {"error": {"Module": {"index": 62, "error": "0x05000000"}}}),
            _Record("Balances", "Withdraw"),
            _Record("System", "ExtrinsicSuccess"),
        ]
        fake_receipt = mock.Mock(return_value=SimpleNamespace(triggered_events=records))
        with mock.patch.object(substrate_gateway, "ExtrinsicReceipt", fake_receipt):
            events = SubstrateGateway._receipt_events(object(), "0xaa", "0xbb")

        fake_receipt.assert_called_once()
        self.assertEqual(
            [event.kind for event in events],
            [
                ItemEventKind.ITEM_COMPLETED,
                ItemEventKind.ITEM_FAILED,
                ItemEventKind.OTHER,
                ItemEventKind.EXTRINSIC_SUCCESS,
            ],
        )
        self.assertEqual(events[1].section, "Utility")
        self.assertIn("error", events[1].payload)


class GatewayCallTests(unittest.IsolatedAsyncioTestCase):
    async def test_recovery_call_params(self) -> None:
        substrate = mock.Mock()
        substrate.compose_call.return_value = SimpleNamespace(data="0x2a03")
        gateway = SubstrateGateway("ws://node")
        gateway.substrate = substrate

        call = await gateway.build_recovery_call(ParentOrigin(), 7, 0, WeightLimit(ref_time=5, proof_size=6))

        self.assertEqual(gateway.fingerprint(call), "0x2a03")
        kwargs = substrate.compose_call.call_args.kwargs
        self.assertEqual(kwargs["call_module"], "MessageQueue")
        self.assertEqual(kwargs["call_function"], "execute_overweight")
        self.assertEqual(
            kwargs["call_params"],
            {"message_origin": "Parent", "page": 7, "index": 0, "weight_limit": {"ref_time": 5, "proof_size": 6}},
        )

    async def test_service_head_unwraps_scale_value(self) -> None:
        substrate = mock.Mock()
        substrate.query.return_value = SimpleNamespace(value=None)
        gateway = SubstrateGateway("ws://node")
        gateway.substrate = substrate
        self.assertIsNone(await gateway.query_service_head())
        substrate.query.assert_called_once_with("MessageQueue", "ServiceHead")

    async def test_queries_require_connection(self) -> None:
        gateway = SubstrateGateway("ws://node")
        with self.assertRaises(ConnectivityError):
            await gateway.query_queue_pages()


    async def test_here_and_indexed_parent_origins_reach_the_call(self) -> None:
        substrate = mock.Mock()
        gateway = SubstrateGateway("ws://node")
        gateway.substrate = substrate
        weight = WeightLimit(ref_time=5, proof_size=6)

        await gateway.build_recovery_call(ParentOrigin(5), 1, 0, weight)
        self.assertEqual(substrate.compose_call.call_args.kwargs["call_params"]["message_origin"], {"Parent": 5})
        await gateway.build_recovery_call(HereOrigin(), 2, 0, weight)
        self.assertEqual(substrate.compose_call.call_args.kwargs["call_params"]["message_origin"], "Here")


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


def _update(result: object) -> dict[str, object]:
    return {"jsonrpc": "2.0", "method": "author_extrinsicUpdate", "params": {"subscription": "sub-1", "result": result}}


def _drain(sub: ThreadedSubscription) -> list[object]:
    items: list[object] = []
    while not sub._queue.empty():
        items.append(sub._queue.get_nowait())
    return items


COMPLETED = ItemEvent(kind=ItemEventKind.ITEM_COMPLETED, section="Utility", method="ItemCompleted")


class WatchHandlerTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(RPC_RETRY_DELAYS_SECONDS=[0, 0])
        self.gateway = SubstrateGateway("ws://node")
        self.watcher = mock.Mock()
        self.receipts = mock.Mock()

    async def _handler_with_sub(self) -> tuple[ThreadedSubscription, object]:
        sub = ThreadedSubscription("extrinsic:0xaa", lambda: None)
        return sub, self.gateway._watch_handler(sub, self.watcher, self.receipts, "0xaa")

    async def test_pool_statuses_are_reported_and_terminal_ones_end_the_watch(self) -> None:
        sub, handler = await self._handler_with_sub()
        self.assertIsNone(handler(_update("ready"), 0, "sub-1"))
        self.assertIsNone(handler(_update({"broadcast": ["12D3Koo"]}), 1, "sub-1"))
        self.assertTrue(handler(_update("invalid"), 2, "sub-1"))
        self.assertTrue(handler(_update({"finalityTimeout": "0xbb"}), 3, "sub-1"))
        self.assertTrue(handler(_update({"usurped": "0xcc"}), 4, "sub-1"))
        await asyncio.sleep(0)
        self.assertEqual(
            _drain(sub),
            [
                StatusUpdate("ready"),
                StatusUpdate("broadcast"),
                StatusUpdate("invalid"),
                StatusUpdate("finalitytimeout"),
                StatusUpdate("usurped"),
            ],
        )
        self.watcher.rpc_request.assert_not_called()

    async def test_in_block_carries_receipt_events_and_finalized_unwatches(self) -> None:
        sub, handler = await self._handler_with_sub()
        with mock.patch.object(SubstrateGateway, "_receipt_events", mock.Mock(return_value=(COMPLETED,))) as receipt:
            self.assertIsNone(handler(_update({"inBlock": "0xbb"}), 0, "sub-1"))
        receipt.assert_called_once_with(self.receipts, "0xaa", "0xbb")
        self.assertTrue(handler(_update({"finalized": "0xbb"}), 1, "sub-1"))
        self.watcher.rpc_request.assert_called_once_with("author_unwatchExtrinsic", ["sub-1"])
        await asyncio.sleep(0)
        self.assertEqual(_drain(sub), [InBlock("0xbb", (COMPLETED,)), Finalized("0xbb")])

    async def test_receipt_lookup_is_retried_before_giving_up(self) -> None:
        sub, handler = await self._handler_with_sub()
        flaky = mock.Mock(side_effect=[RuntimeError("timeout"), (COMPLETED,)])
        with mock.patch.object(SubstrateGateway, "_receipt_events", flaky):
            handler(_update({"inBlock": "0xbb"}), 0, "sub-1")
        self.assertEqual(flaky.call_count, 2)
        await asyncio.sleep(0)
        self.assertEqual(_drain(sub), [InBlock("0xbb", (COMPLETED,))])

    async def test_unavailable_receipt_keeps_tracking_until_finalized(self) -> None:
        sub, handler = await self._handler_with_sub()
        broken = mock.Mock(side_effect=RuntimeError("state pruned"))
        with mock.patch.object(SubstrateGateway, "_receipt_events", broken):
            self.assertIsNone(handler(_update({"inBlock": "0xbb"}), 0, "sub-1"))
        self.assertEqual(broken.call_count, 3)
        self.assertTrue(handler(_update({"finalized": "0xbb"}), 1, "sub-1"))
        await asyncio.sleep(0)
        self.assertEqual(_drain(sub), [InBlock("0xbb", ()), Finalized("0xbb")])

    async def test_stopped_subscription_ends_watch_without_events(self) -> None:
        sub, handler = await self._handler_with_sub()
        sub.unsubscribe()
        self.assertTrue(handler(_update("ready"), 0, "sub-1"))
        await asyncio.sleep(0)
        self.assertEqual(_drain(sub), [])


class SubmitAndTrackTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(RPC_RETRY_DELAYS_SECONDS=[0])
        self.substrate = mock.Mock()
        self.substrate.create_signed_extrinsic.return_value = SimpleNamespace(
            extrinsic_hash=bytes.fromhex("ab" * 32), data="0x0102"
        )
        self.gateway = SubstrateGateway("ws://node")
        self.gateway.substrate = self.substrate

    async def test_watch_streams_statuses_and_releases_both_connections(self) -> None:
        messages = [_update("ready"), _update({"inBlock": "0xbb"}), _update({"finalized": "0xbb"})]
        watcher = mock.Mock()
        receipts = mock.Mock()

        def _rpc_request(method: str, params: list, result_handler=None):
            if method != "author_submitAndWatchExtrinsic":
                return None
            for update_nr, message in enumerate(messages):
                if result_handler(message, update_nr, "sub-1"):
                    return {"result": True}
            return None

        watcher.rpc_request.side_effect = _rpc_request
        self.gateway._open = mock.Mock(side_effect=[watcher, receipts])

        with mock.patch.object(SubstrateGateway, "_receipt_events", mock.Mock(return_value=(COMPLETED,))):
            stream = await self.gateway.submit_and_track(SimpleNamespace(data="0xcall"), signer=object())
            events = await asyncio.wait_for(_collect(stream), timeout=5)

        self.assertEqual(events, [StatusUpdate("ready"), InBlock("0xbb", (COMPLETED,)), Finalized("0xbb")])
        self.assertEqual(watcher.rpc_request.call_args_list[0].args[:2], ("author_submitAndWatchExtrinsic", ["0x0102"]))
        watcher.rpc_request.assert_any_call("author_unwatchExtrinsic", ["sub-1"])
        stream.unsubscribe()
        watcher.close.assert_called_once()
        receipts.close.assert_called_once()

    async def test_connections_opened_before_a_failure_are_closed(self) -> None:
        watcher = mock.Mock()
        self.gateway._open = mock.Mock(side_effect=[watcher, RuntimeError("connection refused")])
        with self.assertRaises(SubmissionError):
            await self.gateway.submit_and_track(SimpleNamespace(data="0xcall"), signer=object())
        watcher.close.assert_called_once()

    async def test_signing_failure_opens_no_connections(self) -> None:
        self.substrate.create_signed_extrinsic.side_effect = ValueError("bad nonce")
        self.gateway._open = mock.Mock()
        with self.assertRaises(SubmissionError):
            await self.gateway.submit_and_track(SimpleNamespace(data="0xcall"), signer=object())
        self.gateway._open.assert_not_called()


class RpcBackoffTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    async def test_every_configured_delay_is_used_before_giving_up(self) -> None:
        self.patch_cfg(RPC_RETRY_DELAYS_SECONDS=[1, 2, 4])
        gateway = SubstrateGateway("ws://node")
        call = mock.Mock(side_effect=RuntimeError("ws closed"))
        with mock.patch.object(substrate_gateway.asyncio, "sleep", mock.AsyncMock()) as sleep:
            with self.assertRaises(ConnectivityError):
                await gateway._rpc_with_backoff(call, "MessageQueue.Pages")
        self.assertEqual(call.call_count, 4)
        self.assertEqual([c.args[0] for c in sleep.await_args_list], [1, 2, 4])

    async def test_recovers_on_last_retry(self) -> None:
        self.patch_cfg(RPC_RETRY_DELAYS_SECONDS=[1, 2, 4])
        gateway = SubstrateGateway("ws://node")
        call = mock.Mock(side_effect=[RuntimeError("a"), RuntimeError("b"), RuntimeError("c"), "ok"])
        with mock.patch.object(substrate_gateway.asyncio, "sleep", mock.AsyncMock()):
            self.assertEqual(await gateway._rpc_with_backoff(call, "MessageQueue.ServiceHead"), "ok")
        self.assertEqual(call.call_count, 4)


class LoadSignerTests(unittest.TestCase):
    def test_dev_uri_resolves_to_known_address(self) -> None:
        signer = load_signer("//Alice")
        self.assertEqual(signer.ss58_address, "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY")

    def test_rejects_empty_secret_and_unknown_crypto(self) -> None:
        with self.assertRaises(ValueError):
            load_signer("")
        with self.assertRaises(ValueError):
            load_signer("//Alice", crypto_type="secp256k1")


if __name__ == "__main__":
    unittest.main()
