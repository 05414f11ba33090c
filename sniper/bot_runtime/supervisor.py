from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Protocol, Sequence

from sniper.common import PollStoppedError, PollTimeoutError, guarded_call, log_event, wait_with_stop
from sniper.storage import RedisPositionStore
from sniper.trading import OpenPosition, PriceMonitor, PriceOracle, SwapExecutor, TradeResult
from sniper.trading.types import now_iso

from .settings import AppSettings

SERVICE_UNAVAILABLE_MARKER = "503 Service Unavailable"


class Dependency(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    dependencies: Sequence[Dependency],
    healthchecks: Sequence[Callable[[], Awaitable[Any]]] = (),
    retry_delay_seconds: float,
    wait: Callable[[asyncio.Event, float], Awaitable[None]] = wait_with_stop,
) -> bool:
    """Connect every dependency, retrying after ``retry_delay_seconds`` on failure.

    Returns False when shutdown is requested before everything is connected.
    """
    while not stop_event.is_set():
        try:
            for dependency in dependencies:
                await dependency.connect()
            for healthcheck in healthchecks:
                await healthcheck()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
                error_type=type(error).__name__,
            )
            for dependency in dependencies:
                await guarded_call(
                    dependency.close,
                    logger=logger,
                    event="bootstrap_close_failed",
                    message=f"Failed to close {type(dependency).__name__} during bootstrap retry",
                )

            await wait(stop_event, retry_delay_seconds)

    return False


class RecoverySupervisor:
    """Runs the buy-then-sell sequence and restarts it after any failure."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        app_settings: AppSettings,
        price_oracle: PriceOracle,
        executor: SwapExecutor,
        monitor: PriceMonitor,
        position_store: RedisPositionStore | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._logger = logger
        self._settings = app_settings
        self._price_oracle = price_oracle
        self._executor = executor
        self._monitor = monitor
        self._position_store = position_store
        self._stop_event = stop_event or asyncio.Event()
        self._wait = wait_with_stop
        self.restarts = 0

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    async def _load_open_position(self, token_address: str) -> OpenPosition | None:
        if self._position_store is None:
            return None
        return await self._position_store.get_open_position(token_address)

    async def _resolve_entry_price(self, token_address: str) -> Decimal:
        token_info = await self._price_oracle.fetch_price(token_address)
        if token_info is not None:
            entry_price = token_info.price
        else:
            entry_price = await self._price_oracle.wait_for_price(token_address, stop_event=self._stop_event)
        log_event(
            self._logger,
            level="warning",
            event="entry_price_refreshed",
            message=f"No entry price recorded; using current price {entry_price} as entry",
            token_address=token_address,
            initial_price=str(entry_price),
        )
        return entry_price

    async def _remember_position(
        self,
        token_address: str,
        *,
        initial_price: Decimal | None,
        bundle_id: str | None,
        opened_at: str | None = None,
    ) -> None:
        if self._position_store is None:
            return
        position = OpenPosition(
            token_address=token_address,
            initial_price=initial_price,
            bundle_id=bundle_id,
            opened_at=opened_at or now_iso(),
        )
        await guarded_call(
            lambda: self._position_store.save_open_position(position),
            logger=self._logger,
            event="position_save_failed",
            message="Failed to record open position",
            token_address=token_address,
        )

    async def _forget_position(self, token_address: str) -> None:
        if self._position_store is None:
            return
        await guarded_call(
            lambda: self._position_store.clear_position(token_address),
            logger=self._logger,
            event="position_clear_failed",
            message="Failed to clear open position",
            token_address=token_address,
        )

    async def _monitor_position(self, token_address: str, initial_price: Decimal) -> TradeResult | None:
        result = await self._monitor.monitor_and_sell(
            token_address,
            initial_price,
            stop_event=self._stop_event,
        )
        if result is not None and result.success:
            await self._forget_position(token_address)
        return result

    async def run_once(self) -> TradeResult | None:
        token_address = self._settings.token_address

        open_position = await self._load_open_position(token_address)
        if open_position is not None:
            log_event(
                self._logger,
                level="info",
                event="position_resumed",
                message=f"Resuming price monitoring for open position in {token_address}",
                token_address=token_address,
                initial_price=str(open_position.initial_price),
                bundle_id=open_position.bundle_id,
                opened_at=open_position.opened_at,
            )
            entry_price = open_position.initial_price
            if entry_price is None:
                entry_price = await self._resolve_entry_price(token_address)
                await self._remember_position(
                    token_address,
                    initial_price=entry_price,
                    bundle_id=open_position.bundle_id,
                    opened_at=open_position.opened_at,
                )
            return await self._monitor_position(token_address, entry_price)

        await self._price_oracle.wait_for_price(token_address, stop_event=self._stop_event)
        await self._wait(self._stop_event, self._settings.settle_delay_seconds)
        if self._stop_event.is_set():
            return None

        buy_result = await self._executor.execute_trade(token_address, self._settings.buy_percentage, is_buy=True)
        if not buy_result.success:
            log_event(
                self._logger,
                level="warning",
                event="buy_not_executed",
                message="Buy did not go through; skipping price monitoring",
                token_address=token_address,
                reason=buy_result.reason,
            )
            return buy_result

        opened_at = now_iso()
        await self._remember_position(
            token_address,
            initial_price=buy_result.initial_price,
            bundle_id=buy_result.bundle_id,
            opened_at=opened_at,
        )
        entry_price = buy_result.initial_price
        if entry_price is None:
            entry_price = await self._resolve_entry_price(token_address)
            await self._remember_position(
                token_address,
                initial_price=entry_price,
                bundle_id=buy_result.bundle_id,
                opened_at=opened_at,
            )
        return await self._monitor_position(token_address, entry_price)

    async def run_forever(self) -> TradeResult | None:
        while not self._stop_event.is_set():
            try:
                return await self.run_once()
            except PollStoppedError:
                return None
            except PollTimeoutError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="monitor_timed_out",
                    message="Sell trigger not reached before the monitor timeout; stopping without selling",
                    token_address=self._settings.token_address,
                    attempts=error.attempts,
                    error=str(error),
                )
                return None
            except asyncio.CancelledError:
                raise
            except Exception as error:
                self.restarts += 1
                log_event(
                    self._logger,
                    level="exception",
                    event="unhandled_error",
                    message=f"Unhandled error: {error}",
                    error=str(error),
                    error_type=type(error).__name__,
                    restarts=self.restarts,
                )
                if SERVICE_UNAVAILABLE_MARKER in str(error):
                    log_event(
                        self._logger,
                        level="warning",
                        event="rpc_unavailable",
                        message=(
                            "RPC service is currently unavailable. The program will continue running, "
                            "but some operations may fail."
                        ),
                    )

            await self._wait(self._stop_event, self._settings.recovery_delay_seconds)
            if self._stop_event.is_set():
                break
            log_event(
                self._logger,
                level="info",
                event="recovery_attempt",
                message="Attempting to recover from error...",
                restarts=self.restarts,
            )
        return None

    def install_exception_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        def handle(_: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
            error = context.get("exception")
            log_event(
                self._logger,
                level="error",
                event="loop_unhandled_error",
                message=f"Unhandled error: {error if error is not None else context.get('message', '')}",
                error=str(error) if error is not None else "",
                error_type=type(error).__name__ if error is not None else "",
                task=repr(context.get("task") or context.get("future") or ""),
            )

        loop.set_exception_handler(handle)
