"""
Trade Lifecycle Infrastructure: State Store

Persistent JSON state with atomic writes. Holds per-market capital rows,
signals, trades, notification subscribers and job leases, and implements
the SignalStore, TradeStore and PortfolioCapitalStore contracts used by the
ledger, executor and exit monitor.

Every read-modify-write runs under the process lock and an exclusive `flock`
on a sidecar lock file, so conditional updates (allocate-if-available,
close-if-active, lease acquisition) stay atomic across every process sharing
the state file.
"""

import copy
import fcntl
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
import logging

from core.exceptions import AllocationRejected, CriticalDataUnavailable, DataIntegrityError
from core.models import (
    SIGNAL_PENDING,
    TRADE_ACTIVE,
    TRADE_CLOSED,
    MarketCapital,
    Signal,
    Trade,
    market_from_symbol,
    parse_date,
    parse_datetime,
)

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "portfolio_capital": {},  # market -> {currency, initial, realized, allocated, positions, max_positions}
    "signals": {},  # str(id) -> signal row
    "next_signal_id": 1,
    "trades": {},  # str(id) -> trade row
    "next_trade_id": 1,
    "subscribers": {},  # str(chat_id) -> {chat_id, username, subscription_types, active, last_activity}
    "leases": {},  # lease name -> {owner, acquired_at, expires_at}
    "events": [],  # Recent events log
}


class StateStore:
    """
    Persistent state storage using a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Conditional capital allocation against position caps
    - One-way trade close (active -> closed)
    - Terminal signal transitions (pending -> added | dismissed)
    - Expiring named leases for cross-instance job exclusion
    """

    MAX_EVENTS = 100

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: data/.lifecycle_state.json)
        """
        if not state_file:
            state_file = os.getenv("STATE_FILE", "data/.lifecycle_state.json")
        self.state_file = Path(state_file)

        # Ensure directory exists
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

        self.lock_file = self.state_file.with_name(self.state_file.name + ".lock")
        self._lock = threading.RLock()
        self._lock_depth = 0
        logger.info(f"Initialized StateStore at {self.state_file}")

    # ------------------------------------------------------------------ #
    # Raw persistence
    # ------------------------------------------------------------------ #
    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Returns:
            State dict with defaults merged

        Raises:
            CriticalDataUnavailable: state file exists but cannot be read
        """
        with self._lock:
            if not self.state_file.exists():
                logger.debug("No state file found, using defaults")
                return copy.deepcopy(DEFAULT_STATE)

            try:
                with open(self.state_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise CriticalDataUnavailable(f"state file {self.state_file}", e) from e

            if not isinstance(data, dict):
                raise CriticalDataUnavailable(f"state file {self.state_file} has invalid format")

            state = copy.deepcopy(DEFAULT_STATE)
            state.update(data)
            return state

    def save(self, state: Dict[str, Any]) -> None:
        """
        Save state to file atomically.

        Raises:
            DataIntegrityError: the write could not be completed
        """
        with self._lock:
            temp_path = None
            try:
                temp_fd, temp_path = tempfile.mkstemp(
                    dir=self.state_file.parent,
                    prefix=".state_",
                    suffix=".json.tmp",
                )
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2)

                os.replace(temp_path, self.state_file)
                logger.debug("Saved state to file")
            except (OSError, TypeError, ValueError) as e:
                if temp_path and os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise DataIntegrityError(f"Failed to save state: {e}") from e

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        """Exclusive cross-process lock on the sidecar lock file (re-entrant per store)."""
        with self._lock:
            if self._lock_depth:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1
                return

            with open(self.lock_file, "a+") as lock_f:
                fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX)
                self._lock_depth = 1
                try:
                    yield
                finally:
                    self._lock_depth = 0
                    fcntl.flock(lock_f.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def _transaction(self) -> Iterator[Dict[str, Any]]:
        """Load, yield for mutation, then save; all under the store and file locks."""
        with self._file_lock():
            state = self.load()
            yield state
            self.save(state)

    @staticmethod
    def _row_order(row: Dict[str, Any]) -> tuple:
        try:
            return (0, int(row.get("id")))
        except (TypeError, ValueError):
            return (1, 0)

    def _parse_rows(self, rows: List[Dict[str, Any]], parser, kind: str) -> List[Any]:
        """Parse rows one at a time; malformed rows are logged and left out."""
        parsed = []
        for row in sorted(rows, key=self._row_order):
            try:
                parsed.append(parser(row))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.error(f"Skipping malformed {kind} row id={row.get('id')!r}: {e}")
        return parsed

    def _append_event(self, state: Dict[str, Any], event: str, **kwargs) -> None:
        state.setdefault("events", []).append({
            "at": datetime.now(timezone.utc).isoformat(),
            "event": event,
            **kwargs,
        })
        if len(state["events"]) > self.MAX_EVENTS:
            state["events"] = state["events"][-self.MAX_EVENTS:]

    def reset(self) -> Dict[str, Any]:
        """Wipe all state back to defaults."""
        logger.warning("Full state reset")
        state = copy.deepcopy(DEFAULT_STATE)
        self.save(state)
        return state

    # ------------------------------------------------------------------ #
    # Portfolio capital
    # ------------------------------------------------------------------ #
    def init_portfolio_capital(self, markets: Dict[str, Dict[str, Any]], max_positions: int) -> None:
        """
        Seed capital rows for markets that have none yet.

        Existing rows are left untouched so restarts never reset realized P/L.

        Args:
            markets: market -> {"currency": str, "initial": float}
            max_positions: per-market position cap stamped on new rows
        """
        with self._transaction() as state:
            capital = state.setdefault("portfolio_capital", {})
            for market, cfg in markets.items():
                if market in capital:
                    continue
                capital[market] = {
                    "currency": cfg["currency"],
                    "initial": float(cfg["initial"]),
                    "realized": 0.0,
                    "allocated": 0.0,
                    "positions": 0,
                    "max_positions": int(max_positions),
                }
                logger.info(f"Seeded capital for {market}: {cfg['initial']} {cfg['currency']}")

    def get_portfolio_capital(self) -> Dict[str, MarketCapital]:
        state = self.load()
        return {
            market: MarketCapital.from_dict(market, row)
            for market, row in state.get("portfolio_capital", {}).items()
        }

    def allocate_capital(
        self,
        market: str,
        amount: float,
        *,
        max_positions: Optional[int] = None,
        max_total_positions: Optional[int] = None,
    ) -> MarketCapital:
        """
        Atomically commit `amount` to a new position in `market`.

        The move is applied only if, inside the store lock, available capital
        still covers `amount` and neither position cap would be exceeded.

        Raises:
            AllocationRejected: a condition no longer holds
            DataIntegrityError: market row missing or write failed
        """
        if amount <= 0:
            raise DataIntegrityError(f"Invalid allocation amount {amount} for {market}")

        with self._transaction() as state:
            capital = state.setdefault("portfolio_capital", {})
            row = capital.get(market)
            if row is None:
                raise DataIntegrityError(f"No capital row for market {market}")

            current = MarketCapital.from_dict(market, row)
            if max_total_positions is not None:
                total_positions = sum(int(r.get("positions", 0) or 0) for r in capital.values())
                if total_positions >= max_total_positions:
                    raise AllocationRejected(
                        f"Total portfolio limit reached ({total_positions}/{max_total_positions})",
                        "TOTAL_LIMIT",
                    )
            cap = max_positions if max_positions is not None else current.max_positions
            if current.positions >= cap:
                raise AllocationRejected(
                    f"Market limit reached for {market} ({current.positions}/{cap})",
                    "MARKET_LIMIT",
                )
            if current.available < amount:
                raise AllocationRejected(
                    f"Insufficient capital in {market} market",
                    "INSUFFICIENT_CAPITAL",
                    {
                        "required": amount,
                        "available": current.available,
                        "shortfall": amount - current.available,
                    },
                )

            row["allocated"] = current.allocated + float(amount)
            row["positions"] = current.positions + 1
            self._append_event(state, "capital_allocated", market=market, amount=float(amount))
            return MarketCapital.from_dict(market, row)

    def release_capital(self, market: str, amount: float, pl_amount: float) -> MarketCapital:
        """
        Return a closed position's capital and book its realized P/L.

        Raises:
            DataIntegrityError: market row missing or write failed
        """
        with self._transaction() as state:
            row = state.setdefault("portfolio_capital", {}).get(market)
            if row is None:
                raise DataIntegrityError(f"No capital row for market {market}")

            current = MarketCapital.from_dict(market, row)
            row["allocated"] = max(0.0, current.allocated - float(amount))
            row["realized"] = current.realized + float(pl_amount)
            row["positions"] = max(0, current.positions - 1)
            self._append_event(
                state, "capital_released", market=market, amount=float(amount), pl=float(pl_amount)
            )
            return MarketCapital.from_dict(market, row)

    # ------------------------------------------------------------------ #
    # Signals
    # ------------------------------------------------------------------ #
    def add_signal(self, symbol: str, signal_date: Any, entry_price: float, target_price: float,
                   market: Optional[str] = None, **extra) -> Signal:
        """Insert a pending signal (used by the scanner and for seeding)."""
        with self._transaction() as state:
            signal_id = int(state.get("next_signal_id", 1))
            state["next_signal_id"] = signal_id + 1
            row = {
                **extra,
                "id": signal_id,
                "symbol": symbol,
                "market": market or market_from_symbol(symbol),
                "entry_price": float(entry_price),
                "target_price": float(target_price),
                "signal_date": parse_date(signal_date).isoformat(),
                "status": SIGNAL_PENDING,
                "linked_trade_id": None,
            }
            state.setdefault("signals", {})[str(signal_id)] = row
            return Signal.from_dict(row)

    def get_signal(self, signal_id: int) -> Optional[Signal]:
        row = self.load().get("signals", {}).get(str(signal_id))
        return Signal.from_dict(row) if row else None

    def get_pending_signals(self, status: str = SIGNAL_PENDING, market: Optional[str] = None) -> List[Signal]:
        """Signals with `status` (optionally for one market), in insertion order."""
        rows = [
            row for row in self.load().get("signals", {}).values()
            if isinstance(row, dict)
            and row.get("status") == status
            and (market is None or row.get("market") == market)
        ]
        return self._parse_rows(rows, Signal.from_dict, "signal")

    def update_signal_status(self, signal_id: int, status: str, linked_trade_id: Optional[int] = None) -> Signal:
        """
        Move a pending signal to a terminal status.

        Raises:
            DataIntegrityError: signal missing or already terminal
        """
        with self._transaction() as state:
            row = state.setdefault("signals", {}).get(str(signal_id))
            if row is None:
                raise DataIntegrityError(f"Signal {signal_id} not found")
            if row.get("status") != SIGNAL_PENDING:
                raise DataIntegrityError(
                    f"Signal {signal_id} is already {row.get('status')}, cannot move to {status}"
                )
            row["status"] = status
            if linked_trade_id is not None:
                row["linked_trade_id"] = linked_trade_id
            row["updated_at"] = datetime.now(timezone.utc).isoformat()
            return Signal.from_dict(row)

    def delete_pending_signals_before(self, cutoff: date) -> List[Dict[str, Any]]:
        """Remove pending signals dated before `cutoff`; returns the removed rows."""
        with self._transaction() as state:
            signals = state.setdefault("signals", {})
            removed = []
            for key, row in list(signals.items()):
                if row.get("status") != SIGNAL_PENDING:
                    continue
                try:
                    signal_date = parse_date(row.get("signal_date"))
                except (TypeError, ValueError):
                    logger.warning(f"Signal {key} has unreadable signal_date {row.get('signal_date')!r}, keeping it")
                    continue
                if signal_date is not None and signal_date < cutoff:
                    removed.append({
                        "symbol": row.get("symbol"),
                        "signal_date": row.get("signal_date"),
                        "market": row.get("market"),
                    })
                    del signals[key]
            if removed:
                self._append_event(state, "signals_purged", count=len(removed))
            return removed

    # ------------------------------------------------------------------ #
    # Trades
    # ------------------------------------------------------------------ #
    def insert_trade(self, trade: Trade, owner_ref: Optional[str] = None) -> Trade:
        """Persist a new trade and return it with its assigned id."""
        with self._transaction() as state:
            trade_id = int(state.get("next_trade_id", 1))
            state["next_trade_id"] = trade_id + 1
            row = trade.to_dict()
            row["id"] = trade_id
            row["owner_ref"] = owner_ref or trade.owner_ref
            row["created_at"] = datetime.now(timezone.utc).isoformat()
            state.setdefault("trades", {})[str(trade_id)] = row
            self._append_event(state, "trade_opened", trade_id=trade_id, symbol=trade.symbol)
            return Trade.from_dict(row)

    def get_trade(self, trade_id: int) -> Optional[Trade]:
        row = self.load().get("trades", {}).get(str(trade_id))
        return Trade.from_dict(row) if row else None

    def get_active_trades(self) -> List[Trade]:
        rows = [
            row for row in self.load().get("trades", {}).values()
            if isinstance(row, dict) and row.get("status") == TRADE_ACTIVE
        ]
        return self._parse_rows(rows, Trade.from_dict, "trade")

    def get_active_trade_by_symbol(self, symbol: str) -> Optional[Trade]:
        for trade in self.get_active_trades():
            if trade.symbol == symbol:
                return trade
        return None

    def close_trade(
        self,
        trade_id: int,
        *,
        exit_date: Any,
        exit_price: float,
        profit_loss_percent: float,
        exit_reason: str,
        profit_loss: Optional[float] = None,
    ) -> Optional[Trade]:
        """
        Close an active trade.

        Returns:
            The closed trade, or None when no active trade matches `trade_id`
        """
        with self._transaction() as state:
            row = state.setdefault("trades", {}).get(str(trade_id))
            if row is None or row.get("status") != TRADE_ACTIVE:
                return None
            row["status"] = TRADE_CLOSED
            row["exit_date"] = parse_date(exit_date).isoformat()
            row["exit_price"] = float(exit_price)
            row["profit_loss_percent"] = float(profit_loss_percent)
            row["exit_reason"] = exit_reason
            if profit_loss is not None:
                row["profit_loss"] = float(profit_loss)
            row["closed_at"] = datetime.now(timezone.utc).isoformat()
            self._append_event(state, "trade_closed", trade_id=trade_id, reason=exit_reason)
            return Trade.from_dict(row)

    # ------------------------------------------------------------------ #
    # Subscribers
    # ------------------------------------------------------------------ #
    def add_subscriber(self, chat_id: Any, username: Optional[str] = None,
                       subscription_types: Optional[List[str]] = None) -> Dict[str, Any]:
        with self._transaction() as state:
            entry = {
                "chat_id": chat_id,
                "username": username,
                "subscription_types": list(subscription_types or ["all"]),
                "active": True,
                "last_activity": None,
            }
            state.setdefault("subscribers", {})[str(chat_id)] = entry
            return dict(entry)

    def get_active_subscribers(self, audience: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Active subscribers for an audience.

        `None` or "all" selects every active subscriber; any other audience
        selects subscribers who opted into it or into "all".
        """
        subscribers = self.load().get("subscribers", {}).values()
        selected = []
        for entry in subscribers:
            if not entry.get("active", True):
                continue
            types = entry.get("subscription_types") or ["all"]
            if audience in (None, "all") or audience in types or "all" in types:
                selected.append(dict(entry))
        return selected

    def update_subscriber_activity(self, chat_id: Any) -> None:
        with self._transaction() as state:
            entry = state.setdefault("subscribers", {}).get(str(chat_id))
            if entry is not None:
                entry["last_activity"] = datetime.now(timezone.utc).isoformat()

    # ------------------------------------------------------------------ #
    # Leases
    # ------------------------------------------------------------------ #
    def acquire_lease(self, name: str, owner: str, ttl_seconds: float,
                      now: Optional[datetime] = None) -> bool:
        """Take lease `name` if it is free, expired, or already ours."""
        now = now or datetime.now(timezone.utc)
        with self._transaction() as state:
            leases = state.setdefault("leases", {})
            current = leases.get(name)
            if current and current.get("owner") != owner:
                expires_at = parse_datetime(current.get("expires_at"))
                if expires_at is not None and expires_at > now:
                    return False
            leases[name] = {
                "owner": owner,
                "acquired_at": now.isoformat(),
                "expires_at": (now + timedelta(seconds=ttl_seconds)).isoformat(),
            }
            return True

    def release_lease(self, name: str, owner: str) -> bool:
        with self._transaction() as state:
            leases = state.setdefault("leases", {})
            current = leases.get(name)
            if not current or current.get("owner") != owner:
                return False
            del leases[name]
            return True
