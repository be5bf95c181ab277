"""
Trade Lifecycle Core: Capital Ledger

Per-market capital accounting and the gate every new trade passes through.

Checks (in order, first failure wins):
1. Total open positions across markets
2. Market known
3. Market open positions
4. Available capital vs dynamic trade size
5. Duplicate active position in the symbol

The ledger never touches trade or signal status; callers hand it the
amounts to move and the backing store applies them.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from core.exceptions import ConfigurationError, TradeValidationError
from core.models import MarketCapital, Trade, market_from_symbol

logger = logging.getLogger(__name__)

TOTAL_LIMIT = "TOTAL_LIMIT"
MARKET_NOT_FOUND = "MARKET_NOT_FOUND"
MARKET_LIMIT = "MARKET_LIMIT"
INSUFFICIENT_CAPITAL = "INSUFFICIENT_CAPITAL"
DUPLICATE_POSITION = "DUPLICATE_POSITION"

# Codes that mean "no room right now" rather than "this signal is bad"
CAPACITY_CODES = frozenset({TOTAL_LIMIT, MARKET_LIMIT, INSUFFICIENT_CAPITAL})

DEFAULT_TRADE_SIZES = {
    "India": {"currency": "INR", "amount": 50000.0},
    "UK": {"currency": "GBP", "amount": 400.0},
    "US": {"currency": "USD", "amount": 500.0},
}

CURRENCY_SYMBOLS = {"INR": "₹", "GBP": "£", "USD": "$"}


@dataclass
class TradeValidation:
    """Result of validate_trade_entry"""
    valid: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    trade_size: Optional[float] = None
    currency: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    existing_trade_id: Optional[int] = None

    @property
    def is_capacity_limit(self) -> bool:
        return self.code in CAPACITY_CODES


@dataclass
class CapitalStatus:
    """Read-only snapshot across all markets"""
    per_market: Dict[str, MarketCapital]
    total_positions: int
    max_total_positions: int
    utilization_percent: str  # one decimal, e.g. "43.3"


class CapitalLedger:
    """
    Single source of truth for "can this trade happen, and is there room".

    Args:
        store: PortfolioCapitalStore + TradeStore (get_portfolio_capital,
            allocate_capital, release_capital, get_active_trade_by_symbol)
        trade_sizes: market -> {"currency": str, "amount": standard trade size}
        max_positions_total: cap on open positions across all markets
        max_positions_per_market: cap on open positions in one market
        min_size_fraction: floor for dynamic sizing, as a fraction of the
            standard trade size
    """

    def __init__(
        self,
        store,
        trade_sizes: Optional[Dict[str, Dict[str, Any]]] = None,
        max_positions_total: int = 30,
        max_positions_per_market: int = 10,
        min_size_fraction: float = 0.1,
        currency_symbols: Optional[Dict[str, str]] = None,
    ):
        self.store = store
        self.trade_sizes = trade_sizes or DEFAULT_TRADE_SIZES
        self.max_positions_total = int(max_positions_total)
        self.max_positions_per_market = int(max_positions_per_market)
        self.min_size_fraction = float(min_size_fraction)
        self.currency_symbols = currency_symbols or CURRENCY_SYMBOLS

        # Serialises validate+allocate per market
        self._market_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

        logger.info(
            f"CapitalLedger initialized: markets={sorted(self.trade_sizes)}, "
            f"max_total={self.max_positions_total}, max_per_market={self.max_positions_per_market}"
        )

    @classmethod
    def from_policy(cls, policy: Dict[str, Any], store) -> "CapitalLedger":
        markets = policy.get("markets") or {}
        limits = policy.get("limits") or {}
        trade_sizes = {
            name: {"currency": cfg["currency"], "amount": float(cfg["standard_trade_size"])}
            for name, cfg in markets.items()
        }
        symbols = {
            cfg["currency"]: cfg.get("currency_symbol") or CURRENCY_SYMBOLS.get(cfg["currency"], "")
            for cfg in markets.values()
        }
        return cls(
            store,
            trade_sizes=trade_sizes or None,
            max_positions_total=limits.get("max_positions_total", 30),
            max_positions_per_market=limits.get("max_positions_per_market", 10),
            min_size_fraction=limits.get("min_trade_size_fraction", 0.1),
            currency_symbols=symbols or None,
        )

    def get_capital_status(self) -> CapitalStatus:
        capital = self.store.get_portfolio_capital()
        total_positions = sum(m.positions for m in capital.values())
        utilization = (total_positions / self.max_positions_total) * 100
        return CapitalStatus(
            per_market=capital,
            total_positions=total_positions,
            max_total_positions=self.max_positions_total,
            utilization_percent=f"{utilization:.1f}",
        )

    def standard_trade_size(self, market: str) -> float:
        sizing = self.trade_sizes.get(market)
        if sizing is None:
            raise ConfigurationError(f"No standard trade size configured for market {market}")
        return float(sizing["amount"])

    def calculate_trade_size(self, market: str, capital: Mapping[str, MarketCapital]) -> float:
        """
        Dynamic size = (initial + realized) / max positions per market,
        floored at a fraction of the market's standard trade size.
        """
        standard = self.standard_trade_size(market)
        market_cap = capital.get(market)
        if market_cap is None:
            return standard

        dynamic_size = market_cap.total_capital / self.max_positions_per_market
        min_size = standard * self.min_size_fraction
        return max(dynamic_size, min_size)

    def validate_trade_entry(self, market: str, symbol: str) -> TradeValidation:
        capital = self.store.get_portfolio_capital()
        total_positions = sum(m.positions for m in capital.values())

        # Check 1: Total position limit
        if total_positions >= self.max_positions_total:
            return TradeValidation(
                valid=False,
                reason=f"Total portfolio limit reached ({total_positions}/{self.max_positions_total})",
                code=TOTAL_LIMIT,
            )

        # Check 2: Market known
        market_cap = capital.get(market)
        if market_cap is None or market not in self.trade_sizes:
            return TradeValidation(
                valid=False,
                reason=f"Market {market} not found",
                code=MARKET_NOT_FOUND,
            )

        # Check 3: Market position limit
        if market_cap.positions >= self.max_positions_per_market:
            return TradeValidation(
                valid=False,
                reason=f"Market limit reached for {market} ({market_cap.positions}/{self.max_positions_per_market})",
                code=MARKET_LIMIT,
            )

        # Check 4: Capital availability
        required = self.calculate_trade_size(market, capital)
        if market_cap.available < required:
            return TradeValidation(
                valid=False,
                reason=f"Insufficient capital in {market} market",
                code=INSUFFICIENT_CAPITAL,
                details={
                    "required": required,
                    "available": market_cap.available,
                    "shortfall": required - market_cap.available,
                },
            )

        # Check 5: Duplicate position
        existing = self.store.get_active_trade_by_symbol(symbol)
        if existing is not None:
            return TradeValidation(
                valid=False,
                reason=f"Already have active position in {symbol}",
                code=DUPLICATE_POSITION,
                existing_trade_id=existing.id,
            )

        return TradeValidation(valid=True, trade_size=required, currency=market_cap.currency)

    def allocate_for_trade(self, market: str, symbol: str, entry_price: float) -> Dict[str, Any]:
        """
        Validate and commit capital for one new position.

        Raises:
            TradeValidationError: validation failed (AllocationRejected if the
                store refused the conditional update)
        """
        with self._market_locks[market]:
            validation = self.validate_trade_entry(market, symbol)
            if not validation.valid:
                raise TradeValidationError(validation.reason, validation.code, validation.details)

            self.store.allocate_capital(
                market,
                validation.trade_size,
                max_positions=self.max_positions_per_market,
                max_total_positions=self.max_positions_total,
            )

        logger.info(
            f"[CAPITAL] Allocated {validation.trade_size:.2f} {validation.currency} "
            f"for {symbol} in {market} (entry={entry_price})"
        )
        return {
            "allocated": validation.trade_size,
            "currency": validation.currency,
            "market": market,
        }

    def cancel_allocation(self, market: str, amount: float) -> None:
        """Undo an allocation whose trade was never created (no P/L booked)."""
        logger.warning(f"[CAPITAL] Rolling back allocation of {amount:.2f} in {market}")
        self.store.release_capital(market, amount, 0.0)

    def release_from_trade(self, trade: Any) -> Dict[str, Any]:
        """
        Return a closing trade's capital and book its P/L.

        Accepts a Trade or a mapping. P/L resolution: `profit_loss` verbatim
        when present, otherwise investment * percent / 100, with investment
        from investment_amount -> trade_size -> 0 and percent from
        profit_loss_percent -> profit_loss_percentage -> 0.
        """
        data = trade.to_dict() if isinstance(trade, Trade) else dict(trade)

        market = data.get("market") or self.get_market_from_symbol(data["symbol"])
        investment_amount = _first_number(data, "investment_amount", "trade_size")

        profit_loss = data.get("profit_loss")
        if profit_loss is not None:
            pl_amount = float(profit_loss)
        else:
            pl_percent = _first_number(data, "profit_loss_percent", "profit_loss_percentage")
            pl_amount = (investment_amount * pl_percent) / 100

        logger.info(
            f"[CAPITAL] Releasing capital: market={market}, investment={investment_amount}, "
            f"pl={pl_amount:.2f}, symbol={data.get('symbol')}"
        )
        self.store.release_capital(market, investment_amount, pl_amount)

        return {
            "released": investment_amount,
            "pl": pl_amount,
            "currency": data.get("currency"),
            "market": market,
        }

    def get_capital_summary(self) -> Dict[str, Any]:
        """Display-ready view of each market plus totals."""
        status = self.get_capital_status()
        summary: Dict[str, Any] = {}
        for market, cap in status.per_market.items():
            max_positions = cap.max_positions or self.max_positions_per_market
            summary[market] = {
                "currency": self.currency_symbols.get(cap.currency, cap.currency),
                "available": f"{cap.available:,.2f}",
                "positions": cap.positions,
                "max_positions": max_positions,
                "utilization_percent": f"{(cap.positions / max_positions) * 100:.0f}",
            }
        summary["totals"] = {
            "total_positions": status.total_positions,
            "max_total_positions": status.max_total_positions,
            "utilization_percent": status.utilization_percent,
        }
        return summary

    @staticmethod
    def get_market_from_symbol(symbol: str) -> str:
        return market_from_symbol(symbol)


def _first_number(data: Mapping[str, Any], *keys: str) -> float:
    """First truthy numeric value among `keys`, else 0."""
    for key in keys:
        value = data.get(key)
        if value in (None, "", 0):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return 0.0
