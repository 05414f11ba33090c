from __future__ import annotations

import asyncio
import logging
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from sniper.bot_runtime.settings import AppSettings
from sniper.bot_runtime.supervisor import RecoverySupervisor, bootstrap_dependencies
from sniper.common import PollStoppedError, PollTimeoutError
from sniper.trading.types import OpenPosition, TokenInfo, TradeResult

MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"


def _make_settings() -> AppSettings:
    return AppSettings(
        private_key="unused",
        api_key="unused",
        token_address=MINT,
        solana_rpc_url="https://rpc.invalid",
        settle_delay_seconds=30.0,
        recovery_delay_seconds=10.0,
    )


class RecoverySupervisorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.price_oracle = MagicMock()
        self.price_oracle.wait_for_price = AsyncMock(return_value=Decimal("0.004"))
        self.price_oracle.fetch_price = AsyncMock(return_value=None)
        self.executor = MagicMock()
        self.executor.execute_trade = AsyncMock(
            return_value=TradeResult(success=True, initial_price=Decimal("0.004"), bundle_id="buy-1", attempts=1)
        )
        self.monitor = MagicMock()
        self.monitor.monitor_and_sell = AsyncMock(return_value=TradeResult(success=True, bundle_id="sell-1"))
        self.store = MagicMock()
        self.store.get_open_position = AsyncMock(return_value=None)
        self.store.save_open_position = AsyncMock()
        self.store.clear_position = AsyncMock(return_value=True)

        self.supervisor = self._make_supervisor(position_store=self.store)

    def _make_supervisor(self, *, position_store=None) -> RecoverySupervisor:
        supervisor = RecoverySupervisor(
            logger=logging.getLogger("test.supervisor"),
            app_settings=_make_settings(),
            price_oracle=self.price_oracle,
            executor=self.executor,
            monitor=self.monitor,
            position_store=position_store,
        )
        supervisor._wait = AsyncMock()  # type: ignore[method-assign]
        return supervisor

    async def test_full_sequence_buys_then_monitors(self) -> None:
        result = await self.supervisor.run_once()

        self.price_oracle.wait_for_price.assert_awaited_once()
        self.supervisor._wait.assert_awaited_once_with(self.supervisor.stop_event, 30.0)
        self.executor.execute_trade.assert_awaited_once_with(MINT, Decimal("6"), is_buy=True)
        self.monitor.monitor_and_sell.assert_awaited_once_with(
            MINT,
            Decimal("0.004"),
            stop_event=self.supervisor.stop_event,
        )
        saved = self.store.save_open_position.await_args.args[0]
        self.assertIsInstance(saved, OpenPosition)
        self.assertEqual(saved.bundle_id, "buy-1")
        self.store.clear_position.assert_awaited_once_with(MINT)
        self.assertEqual(result.bundle_id, "sell-1")

    async def test_failed_buy_skips_monitoring(self) -> None:
        self.executor.execute_trade.return_value = TradeResult(success=False, reason="max_retries_exhausted")

        result = await self.supervisor.run_once()

        self.assertFalse(result.success)
        self.monitor.monitor_and_sell.assert_not_awaited()
        self.store.save_open_position.assert_not_awaited()

    async def test_failed_sell_keeps_position(self) -> None:
        self.monitor.monitor_and_sell.return_value = TradeResult(success=False, reason="max_retries_exhausted")

        await self.supervisor.run_once()

        self.store.save_open_position.assert_awaited_once()
        self.store.clear_position.assert_not_awaited()

    async def test_stored_position_resumes_without_rebuying(self) -> None:
        self.store.get_open_position.return_value = OpenPosition(
            token_address=MINT,
            initial_price=Decimal("0.003"),
            bundle_id="buy-0",
            opened_at="2024-01-01T00:00:00+00:00",
        )

        await self.supervisor.run_once()

        self.price_oracle.wait_for_price.assert_not_awaited()
        self.executor.execute_trade.assert_not_awaited()
        self.monitor.monitor_and_sell.assert_awaited_once_with(
            MINT,
            Decimal("0.003"),
            stop_event=self.supervisor.stop_event,
        )
        self.store.clear_position.assert_awaited_once_with(MINT)

    async def test_without_store_behaves_statelessly(self) -> None:
        supervisor = self._make_supervisor()

        await supervisor.run_once()

        self.store.get_open_position.assert_not_awaited()
        self.executor.execute_trade.assert_awaited_once()

    async def test_store_write_failure_does_not_abort_monitoring(self) -> None:
        self.store.save_open_position.side_effect = ConnectionError("redis down")

        with self.assertLogs("test.supervisor", level="WARNING"):
            await self.supervisor.run_once()

        self.monitor.monitor_and_sell.assert_awaited_once()

    async def test_restarts_after_unhandled_error(self) -> None:
        self.price_oracle.wait_for_price.side_effect = [
            RuntimeError("503 Service Unavailable"),
            Decimal("0.004"),
        ]

        with self.assertLogs("test.supervisor", level="INFO") as captured:
            result = await self.supervisor.run_forever()

        self.assertEqual(self.supervisor.restarts, 1)
        self.assertEqual(self.price_oracle.wait_for_price.await_count, 2)
        self.assertEqual(result.bundle_id, "sell-1")
        self.supervisor._wait.assert_any_await(self.supervisor.stop_event, 10.0)
        output = "\n".join(captured.output)
        self.assertIn("Unhandled error: 503 Service Unavailable", output)
        self.assertIn("RPC service is currently unavailable", output)
        self.assertIn("Attempting to recover from error...", output)

    async def test_stop_during_price_wait_ends_quietly(self) -> None:
        self.price_oracle.wait_for_price.side_effect = PollStoppedError("stopped")

        result = await self.supervisor.run_forever()

        self.assertIsNone(result)
        self.assertEqual(self.supervisor.restarts, 0)

    async def test_stop_during_recovery_delay_ends_loop(self) -> None:
        self.price_oracle.wait_for_price.side_effect = RuntimeError("boom")

        async def stop_while_waiting(stop_event: asyncio.Event, seconds: float) -> None:
            stop_event.set()

        self.supervisor._wait = AsyncMock(side_effect=stop_while_waiting)  # type: ignore[method-assign]

        with self.assertLogs("test.supervisor", level="ERROR"):
            result = await self.supervisor.run_forever()

        self.assertIsNone(result)
        self.assertEqual(self.price_oracle.wait_for_price.await_count, 1)

    async def test_loop_exception_handler_logs_stray_errors(self) -> None:
        loop = asyncio.get_running_loop()
        previous = loop.get_exception_handler()
        self.supervisor.install_exception_handler(loop)
        try:
            with self.assertLogs("test.supervisor", level="ERROR") as captured:
                loop.call_exception_handler({"message": "Task exception was never retrieved", "exception": ValueError("x")})
        finally:
            loop.set_exception_handler(previous)

        self.assertIn("Unhandled error: x", captured.output[0])

    async def test_resumed_position_without_price_uses_current_price(self) -> None:
        self.store.get_open_position.return_value = OpenPosition(
            token_address=MINT,
            initial_price=None,
            bundle_id="buy-0",
            opened_at="2024-01-01T00:00:00+00:00",
        )
        self.price_oracle.wait_for_price.return_value = Decimal("0.005")

        with self.assertLogs("test.supervisor", level="WARNING") as captured:
            await self.supervisor.run_once()

        self.price_oracle.fetch_price.assert_awaited_once_with(MINT)
        self.executor.execute_trade.assert_not_awaited()
        self.monitor.monitor_and_sell.assert_awaited_once_with(
            MINT,
            Decimal("0.005"),
            stop_event=self.supervisor.stop_event,
        )
        saved = self.store.save_open_position.await_args.args[0]
        self.assertEqual(saved.initial_price, Decimal("0.005"))
        self.assertEqual(saved.bundle_id, "buy-0")
        self.assertEqual(saved.opened_at, "2024-01-01T00:00:00+00:00")
        self.store.clear_position.assert_awaited_once_with(MINT)
        self.assertIn("No entry price recorded", "\n".join(captured.output))

    async def test_buy_without_captured_price_fetches_entry_price(self) -> None:
        self.executor.execute_trade.return_value = TradeResult(success=True, bundle_id="buy-1", attempts=1)
        self.price_oracle.fetch_price.return_value = TokenInfo(
            price=Decimal("0.0045"),
            source="jupiter",
            is_freezable=False,
        )

        with self.assertLogs("test.supervisor", level="WARNING"):
            await self.supervisor.run_once()

        self.monitor.monitor_and_sell.assert_awaited_once_with(
            MINT,
            Decimal("0.0045"),
            stop_event=self.supervisor.stop_event,
        )
        self.assertEqual(self.store.save_open_position.await_count, 2)
        first, second = (call.args[0] for call in self.store.save_open_position.await_args_list)
        self.assertIsNone(first.initial_price)
        self.assertEqual(second.initial_price, Decimal("0.0045"))
        self.assertEqual(first.opened_at, second.opened_at)

    async def test_monitor_timeout_finishes_without_rebuying(self) -> None:
        self.monitor.monitor_and_sell.side_effect = PollTimeoutError("sell trigger not reached", attempts=3)

        with self.assertLogs("test.supervisor", level="WARNING") as captured:
            result = await self.supervisor.run_forever()

        self.assertIsNone(result)
        self.assertEqual(self.supervisor.restarts, 0)
        self.executor.execute_trade.assert_awaited_once()
        self.store.clear_position.assert_not_awaited()
        self.assertIn("stopping without selling", "\n".join(captured.output))


class BootstrapDependenciesTests(unittest.IsolatedAsyncioTestCase):
    def _dependency(self) -> MagicMock:
        dependency = MagicMock()
        dependency.connect = AsyncMock()
        dependency.close = AsyncMock()
        return dependency

    async def test_retries_until_dependencies_connect(self) -> None:
        stop_event = asyncio.Event()
        redis = self._dependency()
        redis.connect.side_effect = [ConnectionError("redis unreachable"), None]
        rpc = self._dependency()
        wait = AsyncMock()

        with self.assertLogs("test.bootstrap", level="ERROR") as captured:
            connected = await bootstrap_dependencies(
                logger=logging.getLogger("test.bootstrap"),
                stop_event=stop_event,
                dependencies=[rpc, redis],
                retry_delay_seconds=10.0,
                wait=wait,
            )

        self.assertTrue(connected)
        self.assertEqual(redis.connect.await_count, 2)
        rpc.close.assert_awaited_once()
        redis.close.assert_awaited_once()
        wait.assert_awaited_once_with(stop_event, 10.0)
        self.assertIn("Dependency bootstrap failed", captured.output[0])

    async def test_failed_healthcheck_triggers_retry(self) -> None:
        stop_event = asyncio.Event()
        rpc = self._dependency()
        healthcheck = AsyncMock(side_effect=[RuntimeError("503 Service Unavailable"), True])
        wait = AsyncMock()

        with self.assertLogs("test.bootstrap", level="ERROR"):
            connected = await bootstrap_dependencies(
                logger=logging.getLogger("test.bootstrap"),
                stop_event=stop_event,
                dependencies=[rpc],
                healthchecks=[healthcheck],
                retry_delay_seconds=5.0,
                wait=wait,
            )

        self.assertTrue(connected)
        self.assertEqual(rpc.connect.await_count, 2)
        self.assertEqual(healthcheck.await_count, 2)
        wait.assert_awaited_once_with(stop_event, 5.0)

    async def test_stop_requested_before_connecting(self) -> None:
        stop_event = asyncio.Event()
        stop_event.set()
        rpc = self._dependency()

        connected = await bootstrap_dependencies(
            logger=logging.getLogger("test.bootstrap"),
            stop_event=stop_event,
            dependencies=[rpc],
            retry_delay_seconds=10.0,
            wait=AsyncMock(),
        )

        self.assertFalse(connected)
        rpc.connect.assert_not_awaited()

    async def test_stop_during_retry_delay_gives_up(self) -> None:
        stop_event = asyncio.Event()
        rpc = self._dependency()
        rpc.connect.side_effect = ConnectionError("unreachable")

        async def stop_while_waiting(event: asyncio.Event, seconds: float) -> None:
            event.set()

        with self.assertLogs("test.bootstrap", level="ERROR"):
            connected = await bootstrap_dependencies(
                logger=logging.getLogger("test.bootstrap"),
                stop_event=stop_event,
                dependencies=[rpc],
                retry_delay_seconds=10.0,
                wait=AsyncMock(side_effect=stop_while_waiting),
            )

        self.assertFalse(connected)
        rpc.connect.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
