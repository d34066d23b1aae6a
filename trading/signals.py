"""Candidate token sources feeding the strategy loop."""

from __future__ import annotations

from typing import Iterable, Protocol

from utils.addressing import normalize_mint


class SignalSource(Protocol):
    async def get_candidates(self) -> list[str]: ...


class MonitoredTokenSource:
    """Proposes the configured tokens in order; entry timing is left to the risk gates."""

    def __init__(self, tokens: Iterable[str]) -> None:
        self.tokens: list[str] = []
        for token in tokens:
            mint = normalize_mint(token)
            if mint and mint not in self.tokens:
                self.tokens.append(mint)

    async def get_candidates(self) -> list[str]:
        return list(self.tokens)
