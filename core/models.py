"""
Trade Lifecycle Core: Data Model

Signals, trades, per-market capital rows and exit-check audit records.
Store rows are plain dicts (JSON); these dataclasses are the typed view the
ledger, executor and monitor work with.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Union

SIGNAL_PENDING = "pending"
SIGNAL_ADDED = "added"
SIGNAL_DISMISSED = "dismissed"

TRADE_ACTIVE = "active"
TRADE_CLOSED = "closed"

MARKET_INDIA = "India"
MARKET_UK = "UK"
MARKET_US = "US"

# Symbol suffix -> market. Anything unmatched trades in the US market.
MARKET_SUFFIXES = {
    ".NS": MARKET_INDIA,
    ".BO": MARKET_INDIA,
    ".L": MARKET_UK,
}
DEFAULT_MARKET = MARKET_US


def market_from_symbol(symbol: str) -> str:
    """Resolve the trading market from a ticker suffix."""
    for suffix, market in MARKET_SUFFIXES.items():
        if symbol.upper().endswith(suffix.upper()):
            return market
    return DEFAULT_MARKET


def parse_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value)[:10]).date()


def parse_datetime(value: Union[str, date, datetime, None]) -> Optional[datetime]:
    """Parse ISO values; bare dates become midnight UTC, naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Signal:
    """Candidate trade produced by the scanner, awaiting execution or dismissal."""
    id: int
    symbol: str
    market: str
    entry_price: float
    target_price: float
    signal_date: date
    win_rate: float = 0.0
    historical_signal_count: int = 0
    status: str = SIGNAL_PENDING
    linked_trade_id: Optional[int] = None
    entry_dti: float = 0.0
    entry_7day_dti: float = 0.0
    prev_dti: float = 0.0
    prev_7day_dti: float = 0.0

    @property
    def is_pending(self) -> bool:
        return self.status == SIGNAL_PENDING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        symbol = data["symbol"]
        try:
            historical = int(data.get("historical_signal_count") or 0)
        except (TypeError, ValueError):
            historical = 0
        return cls(
            id=data["id"],
            symbol=symbol,
            market=data.get("market") or market_from_symbol(symbol),
            entry_price=_float(data.get("entry_price")),
            target_price=_float(data.get("target_price")),
            signal_date=parse_date(data.get("signal_date")),
            win_rate=_float(data.get("win_rate")),
            historical_signal_count=historical,
            status=data.get("status", SIGNAL_PENDING),
            linked_trade_id=data.get("linked_trade_id"),
            entry_dti=_float(data.get("entry_dti")),
            entry_7day_dti=_float(data.get("entry_7day_dti")),
            prev_dti=_float(data.get("prev_dti")),
            prev_7day_dti=_float(data.get("prev_7day_dti")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {key: _iso(value) for key, value in asdict(self).items()}


@dataclass
class Trade:
    """A funded position. Closed exclusively by the exit monitor."""
    id: Optional[int]
    symbol: str
    market: str
    entry_date: datetime
    entry_price: float
    target_price: float
    trade_size: float
    currency: str
    stop_loss_percent: float = 5.0
    status: str = TRADE_ACTIVE
    notes: str = ""
    signal_date: Optional[date] = None
    win_rate: float = 0.0
    historical_signal_count: int = 0
    auto_added: bool = False
    entry_dti: float = 0.0
    entry_7day_dti: float = 0.0
    prev_dti: float = 0.0
    prev_7day_dti: float = 0.0
    shares: Optional[float] = None
    square_off_date: Optional[date] = None
    owner_ref: Optional[str] = None
    exit_date: Optional[date] = None
    exit_price: Optional[float] = None
    profit_loss: Optional[float] = None
    profit_loss_percent: Optional[float] = None
    exit_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == TRADE_ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        symbol = data["symbol"]
        try:
            historical = int(data.get("historical_signal_count") or 0)
        except (TypeError, ValueError):
            historical = 0
        return cls(
            id=data.get("id"),
            symbol=symbol,
            market=data.get("market") or market_from_symbol(symbol),
            entry_date=parse_datetime(data.get("entry_date")),
            entry_price=_float(data.get("entry_price")),
            target_price=_float(data.get("target_price")),
            trade_size=_float(data.get("trade_size", data.get("investment_amount"))),
            currency=data.get("currency", ""),
            stop_loss_percent=_float(data.get("stop_loss_percent"), 5.0),
            status=data.get("status", TRADE_ACTIVE),
            notes=data.get("notes") or "",
            signal_date=parse_date(data.get("signal_date")),
            win_rate=_float(data.get("win_rate")),
            historical_signal_count=historical,
            auto_added=bool(data.get("auto_added", False)),
            entry_dti=_float(data.get("entry_dti")),
            entry_7day_dti=_float(data.get("entry_7day_dti")),
            prev_dti=_float(data.get("prev_dti")),
            prev_7day_dti=_float(data.get("prev_7day_dti")),
            shares=_optional_float(data.get("shares")),
            square_off_date=parse_date(data.get("square_off_date")),
            owner_ref=data.get("owner_ref"),
            exit_date=parse_date(data.get("exit_date")),
            exit_price=_optional_float(data.get("exit_price")),
            profit_loss=_optional_float(data.get("profit_loss")),
            profit_loss_percent=_optional_float(data.get("profit_loss_percent")),
            exit_reason=data.get("exit_reason"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {key: _iso(value) for key, value in asdict(self).items()}


@dataclass
class MarketCapital:
    """Capital row for one market. `available` is derived, never stored."""
    market: str
    currency: str
    initial: float
    realized: float = 0.0
    allocated: float = 0.0
    positions: int = 0
    max_positions: int = 10

    @property
    def available(self) -> float:
        return self.initial + self.realized - self.allocated

    @property
    def total_capital(self) -> float:
        return self.initial + self.realized

    @classmethod
    def from_dict(cls, market: str, data: Dict[str, Any]) -> "MarketCapital":
        return cls(
            market=market,
            currency=data.get("currency", ""),
            initial=_float(data.get("initial")),
            realized=_float(data.get("realized")),
            allocated=_float(data.get("allocated")),
            positions=int(data.get("positions", 0) or 0),
            max_positions=int(data.get("max_positions", 10) or 10),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currency": self.currency,
            "initial": self.initial,
            "realized": self.realized,
            "allocated": self.allocated,
            "positions": self.positions,
            "max_positions": self.max_positions,
            "available": self.available,
        }


@dataclass
class ExitCheckRecord:
    """One monitor evaluation of one trade (append-only)."""
    trade_id: int
    current_price: float
    pl_percent: float
    days_held: int
    target_reached: bool = False
    stop_loss_hit: bool = False
    max_days_reached: bool = False
    alert_sent: bool = False
    alert_type: Optional[str] = None
    check_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExitCheckRecord":
        return cls(
            trade_id=data["trade_id"],
            current_price=_float(data.get("current_price")),
            pl_percent=_float(data.get("pl_percent")),
            days_held=int(data.get("days_held", 0) or 0),
            target_reached=bool(data.get("target_reached", False)),
            stop_loss_hit=bool(data.get("stop_loss_hit", False)),
            max_days_reached=bool(data.get("max_days_reached", False)),
            alert_sent=bool(data.get("alert_sent", False)),
            alert_type=data.get("alert_type"),
            check_time=parse_datetime(data.get("check_time")) or datetime.now(timezone.utc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {key: _iso(value) for key, value in asdict(self).items()}
