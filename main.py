from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

from dotenv import load_dotenv

from sniper.bot_runtime import (
    AppSettings,
    ConfigurationError,
    RecoverySupervisor,
    bootstrap_dependencies,
    setup_logger,
)
from sniper.common import guarded_call, log_event
from sniper.storage import RedisPositionStore
from sniper.trading import (
    PROVIDER_FACTORIES,
    JitoBlockEngineClient,
    JupiterSwapClient,
    PriceMonitor,
    PriceOracle,
    SolanaRpcClient,
    SwapExecutor,
    parse_private_key,
)


def build_price_providers(app_settings: AppSettings) -> list:
    api_urls = {
        "jupiter": app_settings.jupiter_price_api,
        "dexscreener": app_settings.dexscreener_api,
    }
    return [PROVIDER_FACTORIES[name](api_url=api_urls[name]) for name in app_settings.price_providers]


async def close_all(logger: logging.Logger, *components: object) -> None:
    for component in components:
        if component is None:
            continue
        await guarded_call(
            component.close,
            logger=logger,
            event="shutdown_close_failed",
            message=f"Failed to close {type(component).__name__}",
        )


async def main() -> int:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    try:
        app_settings.validate()
    except ConfigurationError as error:
        log_event(
            logger,
            level="error",
            event="missing_configuration",
            message=str(error),
            missing=error.missing,
        )
        return 1

    try:
        signer = parse_private_key(app_settings.private_key)
    except ValueError as error:
        log_event(
            logger,
            level="error",
            event="invalid_private_key",
            message="PRIVATE_KEY could not be parsed",
            error_type=type(error).__name__,
        )
        return 1

    rpc = SolanaRpcClient(
        logger=logger,
        rpc_url=app_settings.solana_rpc_url,
        timeout_seconds=app_settings.http_timeout_seconds,
    )
    price_oracle = PriceOracle(
        logger=logger,
        rpc=rpc,
        providers=build_price_providers(app_settings),
        timeout_seconds=app_settings.http_timeout_seconds,
        poll_interval_seconds=app_settings.price_poll_interval_seconds,
    )
    executor = SwapExecutor(
        logger=logger,
        signer=signer,
        rpc=rpc,
        price_oracle=price_oracle,
        jupiter=JupiterSwapClient(
            logger=logger,
            quote_api_url=app_settings.jupiter_quote_api,
            swap_api_url=app_settings.jupiter_swap_api,
        ),
        jito=JitoBlockEngineClient(logger=logger, block_engine_url=app_settings.jito_block_engine_url),
        gas_fee_lamports=app_settings.gas_fee_lamports,
        tip_lamports=app_settings.tip_lamports,
        slippage_bps=app_settings.slippage_bps,
        max_retries=app_settings.max_retries,
        timeout_seconds=app_settings.http_timeout_seconds,
    )
    monitor = PriceMonitor(
        logger=logger,
        price_oracle=price_oracle,
        executor=executor,
        sell_trigger_multiple=app_settings.sell_trigger_multiple,
        poll_interval_seconds=app_settings.monitor_poll_interval_seconds,
        timeout_seconds=app_settings.monitor_timeout_seconds,
    )
    position_store: RedisPositionStore | None = None
    if app_settings.redis_url:
        position_store = RedisPositionStore(
            logger=logger,
            redis_url=app_settings.redis_url,
            key_prefix=app_settings.redis_position_key,
            ttl_seconds=app_settings.redis_position_ttl_seconds,
        )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info(
            "Shutdown signal received",
            extra={"event": "shutdown_signal_received", "signal": sig.name},
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    supervisor = RecoverySupervisor(
        logger=logger,
        app_settings=app_settings,
        price_oracle=price_oracle,
        executor=executor,
        monitor=monitor,
        position_store=position_store,
        stop_event=stop_event,
    )
    supervisor.install_exception_handler(loop)

    log_event(
        logger,
        level="info",
        event="bot_started",
        message="Sniper bot started",
        token_address=app_settings.token_address,
        wallet=executor.public_key,
        price_providers=price_oracle.provider_names,
        buy_percentage=str(app_settings.buy_percentage),
        sell_trigger_multiple=str(app_settings.sell_trigger_multiple),
        position_store_enabled=position_store is not None,
    )

    dependencies: list = [rpc, price_oracle, executor]
    healthchecks = [rpc.healthcheck]
    if position_store is not None:
        dependencies.append(position_store)
        healthchecks.append(position_store.healthcheck)

    try:
        connected = await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            dependencies=dependencies,
            healthchecks=healthchecks,
            retry_delay_seconds=app_settings.recovery_delay_seconds,
        )
        if not connected:
            return 0

        result = await supervisor.run_forever()
        if result is not None:
            log_event(
                logger,
                level="info",
                event="run_completed",
                message="Trading sequence finished",
                result=result.to_dict(),
            )
    finally:
        await close_all(logger, position_store, executor, price_oracle, rpc)
        logger.info("Shutdown completed", extra={"event": "shutdown_completed"})

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
