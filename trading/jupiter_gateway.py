"""Jupiter quote and swap execution over Solana RPC."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.signature import Signature

import config
from trading.errors import ExecutionFailure, QuoteStale
from trading.wallet_pool import Signer
from utils.addressing import short_key
from utils.http_client import HttpResult, ResilientHttpClient

logger = logging.getLogger(__name__)

_CONFIRMED_LEVELS = {
    "processed": {"processed", "confirmed", "finalized"},
    "confirmed": {"confirmed", "finalized"},
    "finalized": {"finalized"},
}


@dataclass(frozen=True)
class Quote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_fraction: float
    route_hop_count: int
    fetched_at: float
    raw: dict[str, Any] = field(repr=False, compare=False, default_factory=dict)

    @property
    def entry_price(self) -> float:
        return (self.out_amount / self.in_amount) if self.in_amount > 0 else 0.0

    def age_seconds(self, now: float | None = None) -> float:
        return max(0.0, (time.monotonic() if now is None else now) - self.fetched_at)


def parse_quote(payload: Any, fetched_at: float) -> Quote | None:
    """Turn an aggregator quote payload into a Quote, or None when there is no usable route."""
    if isinstance(payload, list):
        payload = payload[0] if payload else None
    if not isinstance(payload, dict) or payload.get("error"):
        return None
    route_plan = payload.get("routePlan") or []
    if not isinstance(route_plan, list) or not route_plan:
        return None
    try:
        in_amount = int(payload["inAmount"])
        out_amount = int(payload["outAmount"])
        impact = abs(float(payload.get("priceImpactPct") or 0.0))
    except (KeyError, TypeError, ValueError):
        return None
    if in_amount <= 0 or out_amount <= 0:
        return None
    return Quote(
        input_mint=str(payload.get("inputMint", "")),
        output_mint=str(payload.get("outputMint", "")),
        in_amount=in_amount,
        out_amount=out_amount,
        price_impact_fraction=impact,
        route_hop_count=len(route_plan),
        fetched_at=fetched_at,
        raw=payload,
    )


def _confirmation_level(status: Any) -> str:
    # solders renders e.g. "TransactionConfirmationStatus.Confirmed"
    return str(status or "").rsplit(".", 1)[-1].strip().lower()


class JupiterGateway:
    def __init__(
        self,
        rpc: Any,
        http: ResilientHttpClient | None = None,
        *,
        quote_url: str | None = None,
        swap_url: str | None = None,
        confirm_timeout_seconds: float | None = None,
        confirm_poll_seconds: float | None = None,
        quote_max_age_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        headers = {"x-api-key": config.JUPITER_API_KEY} if config.JUPITER_API_KEY else None
        self._http = http or ResilientHttpClient(
            timeout_seconds=config.HTTP_TIMEOUT_SECONDS,
            headers=headers,
            source_limits={"jupiter_quote": 2, "jupiter_swap": 1},
        )
        self._rpc = rpc
        self.quote_url = quote_url or config.JUPITER_QUOTE_URL
        self.swap_url = swap_url or config.JUPITER_SWAP_URL
        self.confirm_timeout_seconds = float(confirm_timeout_seconds or config.CONFIRM_TIMEOUT_SECONDS)
        self.confirm_poll_seconds = float(confirm_poll_seconds or config.CONFIRM_POLL_SECONDS)
        self.quote_max_age_seconds = float(quote_max_age_seconds or config.QUOTE_MAX_AGE_SECONDS)
        self._clock = clock
        self.last_failure = ""

    async def close(self) -> None:
        await self._http.close()

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_fraction: float,
    ) -> Quote | None:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(max(1, int(round(slippage_fraction * 10_000)))),
            "swapMode": "ExactIn",
        }
        result: HttpResult = await self._http.get_json(self.quote_url, source="jupiter_quote", params=params)
        if not result.ok:
            logger.info(
                "QUOTE_UNAVAILABLE out=%s amount=%s status=%s err=%s",
                short_key(output_mint),
                amount,
                result.status,
                result.error,
            )
            return None
        quote = parse_quote(result.data, fetched_at=self._clock())
        if quote is None:
            logger.info("QUOTE_NO_ROUTE out=%s amount=%s", short_key(output_mint), amount)
            return None
        logger.debug(
            "QUOTE_OK out=%s in=%s outAmount=%s impact=%.4f hops=%s",
            short_key(output_mint),
            quote.in_amount,
            quote.out_amount,
            quote.price_impact_fraction,
            quote.route_hop_count,
        )
        return quote

    async def execute(self, quote: Quote, wallet: Signer) -> str | None:
        """Build, sign, submit and confirm; any failure along the chain yields None."""
        self.last_failure = ""
        stage = "freshness"
        try:
            age = quote.age_seconds(self._clock())
            if age > self.quote_max_age_seconds:
                raise QuoteStale(f"quote_stale age={age:.1f}s max={self.quote_max_age_seconds:.1f}s")
            stage = "build"
            unsigned = await self._build_swap_transaction(quote, wallet.public_identity())
            stage = "sign"
            signed = wallet.sign(unsigned)
            stage = "submit"
            signature = await self._submit(signed)
            stage = "confirm"
            await self._confirm(signature)
        except Exception as exc:
            self.last_failure = f"{stage}:{exc}"
            logger.error(
                "SWAP_FAILED stage=%s out=%s wallet=%s err=%s",
                stage,
                short_key(quote.output_mint),
                short_key(wallet.public_identity()),
                exc,
            )
            return None
        logger.info("SWAP_CONFIRMED out=%s sig=%s", short_key(quote.output_mint), signature)
        return str(signature)

    async def _build_swap_transaction(self, quote: Quote, user_public_key: str) -> bytes:
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": bool(config.WRAP_AND_UNWRAP_SOL),
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": int(config.PRIORITIZATION_FEE_LAMPORTS),
        }
        result = await self._http.post_json(self.swap_url, payload, source="jupiter_swap")
        if not result.ok or not isinstance(result.data, dict):
            raise ExecutionFailure(f"swap_build_failed status={result.status} err={result.error}")
        blob = result.data.get("swapTransaction")
        if not blob:
            raise ExecutionFailure("swap_build_failed missing swapTransaction")
        try:
            return base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ExecutionFailure(f"swap_build_failed bad base64: {exc}") from exc

    async def _submit(self, signed: bytes) -> Signature:
        opts = TxOpts(skip_preflight=False, preflight_commitment=Commitment(config.CONFIRM_COMMITMENT))
        resp = await self._rpc.send_raw_transaction(signed, opts=opts)
        signature = getattr(resp, "value", None)
        if signature is None:
            raise ExecutionFailure("submit returned no signature")
        return signature

    async def _confirm(self, signature: Signature) -> None:
        try:
            await asyncio.wait_for(self._poll_confirmation(signature), timeout=self.confirm_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ExecutionFailure(
                f"confirmation_timeout after {self.confirm_timeout_seconds:.0f}s sig={signature}"
            ) from exc

    async def _poll_confirmation(self, signature: Signature) -> None:
        wanted = _CONFIRMED_LEVELS.get(config.CONFIRM_COMMITMENT, _CONFIRMED_LEVELS["confirmed"])
        while True:
            resp = await self._rpc.get_signature_statuses([signature])
            statuses = getattr(resp, "value", None) or []
            status = statuses[0] if statuses else None
            if status is not None:
                if status.err:
                    raise ExecutionFailure(f"on_chain_error {status.err}")
                if _confirmation_level(status.confirmation_status) in wanted:
                    return
            await asyncio.sleep(self.confirm_poll_seconds)
