from __future__ import annotations

import unittest

from aiohttp.test_utils import TestClient, TestServer

from monitor.status_server import StatusServer
from trading.recovery_types import ControllerState


class StatusServerTests(unittest.IsolatedAsyncioTestCase):
    async def test_status_reports_controller_state(self) -> None:
        state = ControllerState(cooldown=3, last_block="0xbeef", submissions=2)
        state.ban("0xcall")
        server = StatusServer(state)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/status")
            self.assertEqual(resp.status, 200)
            payload = await resp.json()
        self.assertTrue(payload["ok"])
        self.assertEqual(payload["cooldown"], 3)
        self.assertEqual(payload["banned_count"], 1)
        self.assertEqual(payload["submissions"], 2)
        self.assertEqual(payload["last_block"], "0xbeef")

    async def test_health_reflects_live_state(self) -> None:
        state = ControllerState()
        server = StatusServer(state)
        async with TestClient(TestServer(server.build_app())) as client:
            state.last_block = "0x01"
            resp = await client.get("/health")
            payload = await resp.json()
        self.assertEqual(payload, {"ok": True, "last_block": "0x01"})


if __name__ == "__main__":
    unittest.main()
