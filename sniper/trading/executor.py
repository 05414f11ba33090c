from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable

import aiohttp
from solders.keypair import Keypair

from sniper.common import guarded_call, log_event

from .jito import Bundle, BundleSubmissionError, JitoBlockEngineClient, JitoRateLimitError
from .jupiter import JupiterSwapClient, sign_swap_transaction
from .price import PriceOracle
from .rpc import SolanaRpcClient
from .types import (
    DEFAULT_GAS_FEE_LAMPORTS,
    DEFAULT_TIP_LAMPORTS,
    LAMPORTS_PER_SOL,
    SOL_MINT,
    TradeResult,
    compute_buy_amount,
    compute_sell_amount,
)


class SwapExecutor:
    """Jupiter swap submitted as a Jito bundle, retried with exponential backoff."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        signer: Keypair,
        rpc: SolanaRpcClient,
        price_oracle: PriceOracle,
        jupiter: JupiterSwapClient,
        jito: JitoBlockEngineClient,
        gas_fee_lamports: int = DEFAULT_GAS_FEE_LAMPORTS,
        tip_lamports: int = DEFAULT_TIP_LAMPORTS,
        slippage_bps: int = 500,
        max_retries: int = 3,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._signer = signer
        self._rpc = rpc
        self._price_oracle = price_oracle
        self._jupiter = jupiter
        self._jito = jito
        self._gas_fee_lamports = max(0, int(gas_fee_lamports))
        self._tip_lamports = max(1, int(tip_lamports))
        self._slippage_bps = max(1, int(slippage_bps))
        self._max_retries = max(1, int(max_retries))
        self._timeout_seconds = timeout_seconds
        self._http_session: aiohttp.ClientSession | None = None
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @property
    def public_key(self) -> str:
        return str(self._signer.pubkey())

    async def connect(self) -> None:
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def _size_trade(
        self,
        *,
        token_address: str,
        percentage: Decimal | float | int,
        is_buy: bool,
    ) -> tuple[int, str, str]:
        if is_buy:
            balance = await self._rpc.fetch_balance(self._signer.pubkey())
            amount = compute_buy_amount(
                balance_lamports=balance,
                percentage=percentage,
                gas_fee_lamports=self._gas_fee_lamports,
                tip_lamports=self._tip_lamports,
            )
            log_event(
                self._logger,
                level="info",
                event="buy_sized",
                message=f"Wallet balance {Decimal(balance) / LAMPORTS_PER_SOL} SOL, swapping {amount} lamports",
                balance_lamports=balance,
                amount_lamports=amount,
                percentage=str(percentage),
            )
            return amount, SOL_MINT, token_address

        token_balance = await self._rpc.fetch_token_balance(owner=self._signer.pubkey(), mint=token_address)
        amount = compute_sell_amount(
            ui_amount=token_balance.ui_amount,
            decimals=token_balance.decimals,
            percentage=percentage,
        )
        return amount, token_address, SOL_MINT

    async def _submit_swap_bundle(
        self,
        *,
        amount: int,
        input_mint: str,
        output_mint: str,
        slippage_bps: int,
    ) -> str:
        if self._http_session is None:
            await self.connect()
        session = self._http_session
        if session is None:
            raise RuntimeError("HTTP session is not initialized for swap execution.")

        quote = await self._jupiter.quote(
            session=session,
            input_mint=input_mint,
            output_mint=output_mint,
            amount=amount,
            slippage_bps=slippage_bps,
        )
        swap_transaction = await self._jupiter.build_swap_transaction(
            session=session,
            quote_response=quote,
            user_public_key=self.public_key,
        )
        signed_swap = sign_swap_transaction(swap_transaction, self._signer)

        bundle = Bundle().add_transactions(signed_swap)
        # Tip account and blockhash expire quickly; fetch both right before sending.
        tip_account = await self._jito.select_tip_account(session=session)
        blockhash = await self._rpc.fetch_latest_blockhash()
        bundle.add_tip_transaction(
            signer=self._signer,
            tip_lamports=self._tip_lamports,
            tip_account=tip_account,
            recent_blockhash=blockhash,
        )

        log_event(
            self._logger,
            level="info",
            event="bundle_sending",
            message="Sending bundle...",
            tx_count=len(bundle),
            tip_account=str(tip_account),
            tip_lamports=self._tip_lamports,
        )
        bundle_id = await self._jito.send_bundle(session=session, bundle=bundle)
        if not bundle_id:
            raise BundleSubmissionError("Bundle UUID not received")
        return bundle_id

    async def execute_trade(
        self,
        token_address: str,
        percentage: Decimal | float | int,
        *,
        is_buy: bool = True,
        slippage_bps: int | None = None,
        max_retries: int | None = None,
    ) -> TradeResult:
        side = "buy" if is_buy else "sell"
        slippage = self._slippage_bps if slippage_bps is None else max(1, int(slippage_bps))
        attempts_allowed = self._max_retries if max_retries is None else max(1, int(max_retries))
        retries = 0
        bundle_id: str | None = None

        while retries < attempts_allowed:
            try:
                log_event(
                    self._logger,
                    level="info",
                    event="trade_started",
                    message=f"Starting {side} transaction for {token_address}",
                    token_address=token_address,
                    side=side,
                    percentage=str(percentage),
                    attempt=retries + 1,
                )

                amount, input_mint, output_mint = await self._size_trade(
                    token_address=token_address,
                    percentage=percentage,
                    is_buy=is_buy,
                )
                if is_buy and amount < 0:
                    log_event(
                        self._logger,
                        level="error",
                        event="trade_amount_below_fees",
                        message="Amount is less than gas fee and tip to Jito",
                        token_address=token_address,
                        amount=amount,
                        gas_fee_lamports=self._gas_fee_lamports,
                        tip_lamports=self._tip_lamports,
                    )
                    return TradeResult(success=False, attempts=retries + 1, reason="amount_below_fees")
                if not is_buy and amount <= 0:
                    log_event(
                        self._logger,
                        level="error",
                        event="trade_no_token_balance",
                        message="No token balance available to sell",
                        token_address=token_address,
                        amount=amount,
                    )
                    return TradeResult(success=False, attempts=retries + 1, reason="no_token_balance")

                bundle_id = await self._submit_swap_bundle(
                    amount=amount,
                    input_mint=input_mint,
                    output_mint=output_mint,
                    slippage_bps=slippage,
                )
                break
            except asyncio.CancelledError:
                raise
            except Exception as error:
                retries += 1
                log_event(
                    self._logger,
                    level="warning",
                    event="bundle_attempt_failed",
                    message=f"Attempt {retries} failed to send bundle to JITO: {error}",
                    token_address=token_address,
                    side=side,
                    attempt=retries,
                    max_attempts=attempts_allowed,
                    error=str(error),
                )
                if retries >= attempts_allowed:
                    log_event(
                        self._logger,
                        level="error",
                        event="bundle_retries_exhausted",
                        message="Max retries reached. Failed to send bundle to JITO",
                        token_address=token_address,
                        side=side,
                        attempts=retries,
                        error=str(error),
                        error_type=type(error).__name__,
                    )
                    return TradeResult(success=False, attempts=retries, reason="max_retries_exhausted")

                backoff_seconds: float = 2**retries
                if isinstance(error, JitoRateLimitError) and error.retry_after_seconds:
                    backoff_seconds = max(backoff_seconds, error.retry_after_seconds)
                await self._sleep(backoff_seconds)

        log_event(
            self._logger,
            level="info",
            event="bundle_accepted",
            message=f"Bundle sent successfully {bundle_id}",
            token_address=token_address,
            side=side,
            bundle_id=bundle_id,
        )

        initial_price: Decimal | None = None
        if is_buy:
            token_info = await guarded_call(
                lambda: self._price_oracle.fetch_price(token_address),
                logger=self._logger,
                event="initial_price_capture_failed",
                message="Failed to capture initial price after buy",
                level="error",
                token_address=token_address,
            )
            initial_price = token_info.price if token_info is not None else None
            log_event(
                self._logger,
                level="info" if initial_price is not None else "error",
                event="initial_price_captured",
                message=f"Initial Price: {initial_price}. Initiating sell monitoring...",
                token_address=token_address,
                initial_price=None if initial_price is None else str(initial_price),
            )

        return TradeResult(
            success=True,
            initial_price=initial_price,
            bundle_id=bundle_id,
            attempts=retries + 1,
            reason="bundle_accepted",
        )
