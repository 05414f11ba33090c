from __future__ import annotations

import base64
import json
import logging
from typing import Any

import aiohttp
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from sniper.common import log_event

from .types import MAX_BUNDLE_TRANSACTIONS

DEFAULT_JITO_BLOCK_ENGINE_URL = "https://frankfurt.mainnet.block-engine.jito.wtf/api/v1/bundles"


class BundleError(RuntimeError):
    pass


class BundleSubmissionError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class JitoRateLimitError(BundleSubmissionError):
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message, status=status)
        self.retry_after_seconds = retry_after_seconds


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
        details = payload.get("details")
        if details:
            return str(details)
    return str(payload)


def _is_rate_limit_message(message: str) -> bool:
    lowered = message.lower()
    return any(
        marker in lowered
        for marker in (
            "rate limit",
            "too many requests",
            "congested",
            "try again later",
        )
    )


def build_tip_transaction(
    *,
    signer: Keypair,
    tip_lamports: int,
    tip_account: Pubkey,
    recent_blockhash: str,
) -> VersionedTransaction:
    if tip_lamports <= 0:
        raise BundleError("tip_lamports must be greater than zero.")

    instruction = transfer(
        TransferParams(
            from_pubkey=signer.pubkey(),
            to_pubkey=tip_account,
            lamports=int(tip_lamports),
        )
    )
    message = MessageV0.try_compile(
        signer.pubkey(),
        [instruction],
        [],
        Hash.from_string(recent_blockhash),
    )
    return VersionedTransaction(message, [signer])


class Bundle:
    """Ordered set of signed transactions that the relay lands atomically."""

    def __init__(self, *, max_transactions: int = MAX_BUNDLE_TRANSACTIONS) -> None:
        if max_transactions < 1:
            raise BundleError("A bundle must allow at least one transaction.")
        self._max_transactions = max_transactions
        self._transactions: list[VersionedTransaction] = []

    def __len__(self) -> int:
        return len(self._transactions)

    @property
    def max_transactions(self) -> int:
        return self._max_transactions

    @property
    def transactions(self) -> list[VersionedTransaction]:
        return list(self._transactions)

    def add_transactions(self, *transactions: VersionedTransaction) -> "Bundle":
        if len(self._transactions) + len(transactions) > self._max_transactions:
            raise BundleError(
                f"Bundle would exceed {self._max_transactions} transactions "
                f"(has {len(self._transactions)}, adding {len(transactions)})."
            )
        for transaction in transactions:
            if not isinstance(transaction, VersionedTransaction):
                raise BundleError(f"Unsupported bundle transaction type: {type(transaction).__name__}")
            if not transaction.signatures:
                raise BundleError("Bundle transactions must be signed.")
        self._transactions.extend(transactions)
        return self

    def add_tip_transaction(
        self,
        *,
        signer: Keypair,
        tip_lamports: int,
        tip_account: Pubkey,
        recent_blockhash: str,
    ) -> "Bundle":
        tip_tx = build_tip_transaction(
            signer=signer,
            tip_lamports=tip_lamports,
            tip_account=tip_account,
            recent_blockhash=recent_blockhash,
        )
        return self.add_transactions(tip_tx)

    def serialized(self) -> list[str]:
        return [base64.b64encode(bytes(tx)).decode("ascii") for tx in self._transactions]

    def signatures(self) -> list[str]:
        return [str(tx.signatures[0]) for tx in self._transactions]


class JitoBlockEngineClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        block_engine_url: str = DEFAULT_JITO_BLOCK_ENGINE_URL,
    ) -> None:
        self._logger = logger
        self._block_engine_url = block_engine_url.strip()

    @property
    def block_engine_url(self) -> str:
        return self._block_engine_url

    async def _post_rpc(
        self,
        *,
        session: aiohttp.ClientSession,
        method: str,
        params: list[Any],
    ) -> tuple[int, Any, float | None, str]:
        if not self._block_engine_url:
            raise BundleSubmissionError("JITO_BLOCK_ENGINE_URL is required for bundle submission.")

        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }

        async with session.post(self._block_engine_url, json=payload) as response:
            status = response.status
            retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
            raw_text = await response.text()

        try:
            parsed: Any = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text}
        return status, parsed, retry_after_seconds, raw_text

    async def fetch_tip_accounts(self, *, session: aiohttp.ClientSession) -> list[str]:
        status, parsed, retry_after_seconds, raw_text = await self._post_rpc(
            session=session,
            method="getTipAccounts",
            params=[],
        )

        if status == 429:
            raise JitoRateLimitError(
                f"Jito getTipAccounts rate-limited: body={raw_text[:240]!r}",
                status=status,
                retry_after_seconds=retry_after_seconds,
            )
        if status >= 400:
            raise BundleSubmissionError(
                f"Jito getTipAccounts failed: status={status} body={raw_text[:240]!r}",
                status=status,
            )
        if isinstance(parsed, dict) and parsed.get("error"):
            raise BundleSubmissionError(f"Jito getTipAccounts failed: {parsed['error']}")

        result = parsed.get("result") if isinstance(parsed, dict) else None
        if not isinstance(result, list):
            raise BundleSubmissionError(f"Unexpected getTipAccounts response: {parsed}")

        tip_accounts = [str(item).strip() for item in result if str(item).strip()]
        if not tip_accounts:
            raise BundleSubmissionError("Jito getTipAccounts returned no tip accounts.")
        return tip_accounts

    async def select_tip_account(self, *, session: aiohttp.ClientSession) -> Pubkey:
        tip_accounts = await self.fetch_tip_accounts(session=session)
        try:
            return Pubkey.from_string(tip_accounts[0])
        except Exception as error:
            raise BundleError(f"Invalid Jito tip account returned: {tip_accounts[0]}") from error

    async def send_bundle(
        self,
        *,
        session: aiohttp.ClientSession,
        bundle: Bundle,
    ) -> str | None:
        if len(bundle) == 0:
            raise BundleError("Refusing to submit an empty bundle.")

        signed_transactions = bundle.serialized()
        status, parsed, retry_after_seconds, raw_text = await self._post_rpc(
            session=session,
            method="sendBundle",
            params=[signed_transactions, {"encoding": "base64"}],
        )

        if status == 429:
            raise JitoRateLimitError(
                f"Jito bundle submission failed: status={status} body={raw_text[:240]!r}",
                status=status,
                retry_after_seconds=retry_after_seconds,
            )

        if status >= 400:
            error_message = raw_text
            if isinstance(parsed, dict) and parsed.get("error") is not None:
                error_message = _error_message_from_payload(parsed.get("error"))
            if _is_rate_limit_message(error_message):
                raise JitoRateLimitError(
                    f"Jito bundle submission rate-limited: status={status} error={error_message}",
                    status=status,
                    retry_after_seconds=retry_after_seconds,
                )
            raise BundleSubmissionError(
                f"Jito bundle submission failed: status={status} body={raw_text[:240]!r}",
                status=status,
            )

        if isinstance(parsed, dict) and parsed.get("error"):
            error_message = _error_message_from_payload(parsed["error"])
            if _is_rate_limit_message(error_message):
                raise JitoRateLimitError(
                    f"Jito bundle submission rate-limited: {error_message}",
                    retry_after_seconds=retry_after_seconds,
                )
            raise BundleSubmissionError(f"Jito bundle submission failed: {parsed['error']}")

        bundle_id = None
        if isinstance(parsed, dict):
            result = parsed.get("result")
            if isinstance(result, str):
                bundle_id = result.strip() or None
            elif isinstance(result, dict):
                bundle_id = str(result.get("bundleId") or result.get("id") or "") or None

        log_event(
            self._logger,
            level="info",
            event="jito_bundle_submitted",
            message="Bundle submitted to Jito Block Engine",
            tx_count=len(signed_transactions),
            tx_signatures=bundle.signatures(),
            bundle_id=bundle_id,
        )
        return bundle_id
