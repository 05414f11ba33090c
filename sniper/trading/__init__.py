from .executor import SwapExecutor
from .jito import (
    Bundle,
    BundleError,
    BundleSubmissionError,
    JitoBlockEngineClient,
    JitoRateLimitError,
    build_tip_transaction,
)
from .jupiter import JupiterApiError, JupiterSwapClient, sign_swap_transaction
from .monitor import PriceMonitor
from .price import (
    PROVIDER_FACTORIES,
    DexScreenerPriceProvider,
    JupiterPriceProvider,
    PriceOracle,
    PriceProviderError,
    PriceUnavailableError,
)
from .rpc import MalformedAccountError, RpcError, SolanaRpcClient, parse_private_key
from .types import (
    SOL_MINT,
    OpenPosition,
    PriceLookup,
    TokenBalance,
    TokenInfo,
    TradeResult,
    compute_buy_amount,
    compute_sell_amount,
)

__all__ = [
    "Bundle",
    "BundleError",
    "BundleSubmissionError",
    "DexScreenerPriceProvider",
    "JitoBlockEngineClient",
    "JitoRateLimitError",
    "JupiterApiError",
    "JupiterPriceProvider",
    "JupiterSwapClient",
    "MalformedAccountError",
    "OpenPosition",
    "PROVIDER_FACTORIES",
    "PriceLookup",
    "PriceMonitor",
    "PriceOracle",
    "PriceProviderError",
    "PriceUnavailableError",
    "RpcError",
    "SOL_MINT",
    "SolanaRpcClient",
    "SwapExecutor",
    "TokenBalance",
    "TokenInfo",
    "TradeResult",
    "build_tip_transaction",
    "compute_buy_amount",
    "compute_sell_amount",
    "parse_private_key",
    "sign_swap_transaction",
]
