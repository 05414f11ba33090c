from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

from sniper.common import log_event, poll_until

from .executor import SwapExecutor
from .price import PriceOracle
from .types import TokenInfo, TradeResult

DEFAULT_SELL_TRIGGER_MULTIPLE = Decimal("1.2")


class PriceMonitor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        price_oracle: PriceOracle,
        executor: SwapExecutor,
        sell_trigger_multiple: Decimal = DEFAULT_SELL_TRIGGER_MULTIPLE,
        poll_interval_seconds: float = 2.0,
        timeout_seconds: float | None = None,
    ) -> None:
        self._logger = logger
        self._price_oracle = price_oracle
        self._executor = executor
        self._sell_trigger_multiple = Decimal(str(sell_trigger_multiple))
        self._poll_interval_seconds = poll_interval_seconds
        self._timeout_seconds = timeout_seconds

    def threshold_for(self, initial_price: Decimal) -> Decimal:
        return initial_price * self._sell_trigger_multiple

    async def monitor_and_sell(
        self,
        token_address: str,
        initial_price: Decimal | None,
        *,
        stop_event: asyncio.Event | None = None,
    ) -> TradeResult | None:
        """Poll until price reaches the sell threshold, then sell the whole balance.

        Returns the sell result, or None when there is no entry price to
        compare against.
        """
        if initial_price is None:
            log_event(
                self._logger,
                level="error",
                event="monitor_missing_initial_price",
                message="Failed to retrieve initial price, cannot monitor price changes.",
                token_address=token_address,
            )
            return None

        threshold = self.threshold_for(initial_price)

        def on_miss(token_info: TokenInfo | None, attempt: int) -> None:
            current = "undefined" if token_info is None else str(token_info.price)
            log_event(
                self._logger,
                level="info",
                event="monitor_price_tick",
                message=f"Monitoring price... Current Price: {current}, Waiting for: {threshold}",
                token_address=token_address,
                current_price=current,
                threshold=str(threshold),
                attempt=attempt,
            )

        token_info = await poll_until(
            lambda: self._price_oracle.fetch_price(token_address),
            lambda info: info is not None and info.price >= threshold,
            interval_seconds=self._poll_interval_seconds,
            deadline_seconds=self._timeout_seconds,
            stop_event=stop_event,
            on_miss=on_miss,
        )

        log_event(
            self._logger,
            level="info",
            event="sell_target_met",
            message=(
                f"Price target met! Current Price: {token_info.price if token_info else None}, "
                f"Initial Price: {initial_price}. Initiating sell..."
            ),
            token_address=token_address,
            initial_price=str(initial_price),
            threshold=str(threshold),
        )
        return await self._executor.execute_trade(token_address, 100, is_buy=False)
