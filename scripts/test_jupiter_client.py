from __future__ import annotations

import json
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from sniper.trading.jupiter import JupiterApiError, JupiterSwapClient
from sniper.trading.types import SOL_MINT

MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"


def _response_context(body: str, *, status: int = 200, reason: str = "OK") -> MagicMock:
    response = MagicMock()
    response.status = status
    response.reason = reason
    response.text = AsyncMock(return_value=body)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


class JupiterSwapClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.client = JupiterSwapClient(logger=logging.getLogger("test.jupiter"))
        self.session = MagicMock()

    async def test_quote_sends_mints_amount_and_slippage(self) -> None:
        quote = {"inAmount": "59985000", "outAmount": "1234", "priceImpactPct": "0.01"}
        self.session.get = MagicMock(return_value=_response_context(json.dumps(quote)))

        result = await self.client.quote(
            session=self.session,
            input_mint=SOL_MINT,
            output_mint=MINT,
            amount=59_985_000,
            slippage_bps=500,
        )

        self.assertEqual(result, quote)
        url = self.session.get.call_args.args[0]
        params = self.session.get.call_args.kwargs["params"]
        self.assertEqual(url, "https://quote-api.jup.ag/v6/quote")
        self.assertEqual(
            params,
            {"inputMint": SOL_MINT, "outputMint": MINT, "amount": "59985000", "slippageBps": "500"},
        )

    async def test_quote_http_error_is_raised(self) -> None:
        self.session.get = MagicMock(
            return_value=_response_context('{"error": "no route"}', status=400, reason="Bad Request")
        )

        with self.assertRaises(JupiterApiError) as ctx:
            await self.client.quote(
                session=self.session,
                input_mint=SOL_MINT,
                output_mint=MINT,
                amount=1,
                slippage_bps=500,
            )
        self.assertEqual(ctx.exception.status, 400)

    async def test_swap_request_wraps_sol(self) -> None:
        self.session.post = MagicMock(return_value=_response_context('{"swapTransaction": "AQID"}'))
        quote = {"outAmount": "1"}

        swap_transaction = await self.client.build_swap_transaction(
            session=self.session,
            quote_response=quote,
            user_public_key="Wallet1111",
        )

        self.assertEqual(swap_transaction, "AQID")
        payload = self.session.post.call_args.kwargs["json"]
        self.assertEqual(
            payload,
            {"quoteResponse": quote, "userPublicKey": "Wallet1111", "wrapAndUnwrapSol": True},
        )

    async def test_swap_without_transaction_is_an_error(self) -> None:
        self.session.post = MagicMock(return_value=_response_context("{}"))

        with self.assertRaises(JupiterApiError):
            await self.client.build_swap_transaction(
                session=self.session,
                quote_response={"outAmount": "1"},
                user_public_key="Wallet1111",
            )


if __name__ == "__main__":
    unittest.main()
