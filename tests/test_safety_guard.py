from __future__ import annotations

import asyncio
import unittest

import config
from trading.jupiter_gateway import Quote
from trading.safety_guard import ImpactSafetyChecker

WSOL = "So11111111111111111111111111111111111111112"
BONK = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class _StubQuotes:
    def __init__(self, quote: Quote | None) -> None:
        self.quote = quote
        self.calls: list[tuple[str, str, int, float]] = []

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_fraction: float) -> Quote | None:
        self.calls.append((input_mint, output_mint, amount, slippage_fraction))
        return self.quote


def _check_quote(out_amount: int = 50_000_000, impact: float = 0.001) -> Quote:
    return Quote(
        input_mint=WSOL,
        output_mint=BONK,
        in_amount=5_000_000,
        out_amount=out_amount,
        price_impact_fraction=impact,
        route_hop_count=1,
        fetched_at=0.0,
    )


class ImpactSafetyCheckerTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(
            HONEYPOT_CHECK_AMOUNT=0.005,
            HONEYPOT_MAX_IMPACT=5.0,
            HONEYPOT_MIN_RECEIVED=5.0,
            HONEYPOT_OUTPUT_DECIMALS=6,
        )

    def test_quote_runs_from_base_mint_into_token_at_check_amount(self) -> None:
        quotes = _StubQuotes(_check_quote())
        verdict = asyncio.run(ImpactSafetyChecker(quotes).check(BONK))
        self.assertTrue(verdict.safe)
        self.assertEqual(quotes.calls, [(WSOL, BONK, 5_000_000, 0.01)])

    def test_high_impact_is_rejected(self) -> None:
        checker = ImpactSafetyChecker(_StubQuotes(_check_quote(impact=0.08)))
        verdict = asyncio.run(checker.check(BONK))
        self.assertFalse(verdict.safe)
        self.assertEqual(verdict.reason, "safety_impact")
        self.assertFalse(asyncio.run(checker.is_safe_to_buy(BONK)))

    def test_impact_under_the_limit_passes(self) -> None:
        checker = ImpactSafetyChecker(_StubQuotes(_check_quote(impact=0.049)))
        self.assertTrue(asyncio.run(checker.is_safe_to_buy(BONK)))

    def test_low_output_is_rejected(self) -> None:
        checker = ImpactSafetyChecker(_StubQuotes(_check_quote(out_amount=4_999_999)))
        verdict = asyncio.run(checker.check(BONK))
        self.assertFalse(verdict.safe)
        self.assertEqual(verdict.reason, "safety_low_output")

    def test_no_route_is_rejected(self) -> None:
        verdict = asyncio.run(ImpactSafetyChecker(_StubQuotes(None)).check(BONK))
        self.assertFalse(verdict.safe)
        self.assertEqual(verdict.reason, "safety_no_route")

    def test_every_call_quotes_again(self) -> None:
        quotes = _StubQuotes(_check_quote())
        checker = ImpactSafetyChecker(quotes)
        asyncio.run(checker.check(BONK))
        quotes.quote = _check_quote(impact=0.5)
        self.assertFalse(asyncio.run(checker.is_safe_to_buy(BONK)))
        self.assertEqual(len(quotes.calls), 2)

    def test_explicit_thresholds_override_config(self) -> None:
        checker = ImpactSafetyChecker(
            _StubQuotes(_check_quote(out_amount=2_000, impact=0.02)),
            max_impact_percent=1.0,
            min_received=0.0,
            output_decimals=0,
        )
        self.assertEqual(asyncio.run(checker.check(BONK)).reason, "safety_impact")


if __name__ == "__main__":
    unittest.main()
