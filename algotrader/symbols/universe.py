from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Set, Union

from algotrader.core.models import MarketData

QUOTE = "USDT"


@dataclass(frozen=True)
class SymbolUniverse:
    symbols: List[str]
    fallback_used: bool


def parse_symbols(raw: Union[str, List[str]], max_symbols: int = 100) -> List[str]:
    # Accept both CSV string and list[str]
    if isinstance(raw, list):
        symbols = [str(s).strip().upper() for s in raw if str(s).strip()]
    else:
        symbols = [s.strip().upper() for s in raw.split(",") if s.strip()]

    # remove duplicates but keep order
    seen: Set[str] = set()
    unique = []
    for s in symbols:
        if s not in seen:
            seen.add(s)
            unique.append(s)

    return unique[:max_symbols]


def top_usdt_symbols(tickers: Iterable[MarketData], limit: int) -> List[str]:
    """USDT-quoted symbols ordered by 24h turnover, highest first."""
    usdt = [t for t in tickers if t.symbol.upper().endswith(QUOTE)]
    usdt.sort(key=lambda t: t.volume24h, reverse=True)
    return parse_symbols([t.symbol for t in usdt], limit)


def resolve_universe(symbols: List[str], fallback: List[str], limit: int) -> SymbolUniverse:
    valid = parse_symbols(symbols, limit)
    if valid:
        return SymbolUniverse(symbols=valid, fallback_used=False)
    return SymbolUniverse(symbols=parse_symbols(fallback, limit), fallback_used=True)
