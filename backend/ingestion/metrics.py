# ingestion/metrics.py
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.config import settings
from ingestion.models import field_of

DAYS_ORDER = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def _coerce_float(x: Any, default: float = 0.0) -> float:
    try:
        v = float(x)
        if not math.isfinite(v):
            return default
        return v
    except (TypeError, ValueError):
        return default


def _safe_div(num: float, den: float) -> float:
    if not den:
        return 0.0
    v = num / den
    return v if math.isfinite(v) else 0.0


def _parse_dt(v: Any) -> Optional[datetime]:
    if isinstance(v, datetime):
        dt = v
    else:
        s = str(v or "").strip()
        if not s:
            return None
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _bucket_rows(label: str, buckets: Dict[str, List[float]], order: Callable[[str], Any]) -> List[Dict[str, Any]]:
    rows = []
    for key in sorted(buckets, key=order):
        pnls = buckets[key]
        wins = sum(1 for p in pnls if p > 0)
        rows.append({
            label: key,
            "trades": len(pnls),
            "pnl": math.fsum(pnls),
            "win_rate": _safe_div(wins, len(pnls)) * 100.0,
        })
    return rows


def empty_metrics() -> Dict[str, Any]:
    return {
        "total_trades": 0,
        "total_pnl": 0.0,
        "win_rate": 0.0,
        "profit_factor": 0.0,
        "avg_win": 0.0,
        "avg_loss": 0.0,
        "largest_win": 0.0,
        "largest_loss": 0.0,
        "max_drawdown": 0.0,
        "max_win_streak": 0,
        "max_loss_streak": 0,
        "expectancy": 0.0,
        "reward_risk_ratio": 0.0,
        "equity_curve": [],
        "time_data": [],
        "trades_by_day": [],
        "trades_by_symbol": [],
        "daily_performance": [],
        "monthly_performance": [],
    }


def calculate_metrics(trades: Iterable[Any], *, profit_factor_sentinel: Optional[float] = None) -> Dict[str, Any]:
    """
    Aggregate performance for a flat list of trades.

    Pure: the input is never sorted or mutated. Equity curve, drawdown and
    streaks follow input order, so callers wanting chronological semantics
    sort by datetime first. Scalar sums use fsum so they do not depend on order.
    Every ratio guards its denominator and returns 0 (or the profit-factor
    sentinel when there are wins but no losses).
    """
    trades = list(trades)
    if not trades:
        return empty_metrics()

    sentinel = settings.PROFIT_FACTOR_SENTINEL if profit_factor_sentinel is None else profit_factor_sentinel

    pnls: List[float] = []
    wins: List[float] = []
    losses: List[float] = []

    equity_curve: List[Dict[str, Any]] = []
    cumulative = 0.0
    peak = 0.0
    max_drawdown = 0.0

    win_streak = loss_streak = 0
    max_win_streak = max_loss_streak = 0

    by_hour: Dict[str, List[float]] = {}
    by_weekday: Dict[str, List[float]] = {}
    by_symbol: Dict[str, List[float]] = {}
    by_date: Dict[str, List[float]] = {}
    by_month: Dict[str, List[float]] = {}

    for index, trade in enumerate(trades, start=1):
        pnl = _coerce_float(field_of(trade, "pnl"), 0.0)
        pnls.append(pnl)

        if pnl > 0:
            wins.append(pnl)
            win_streak += 1
            loss_streak = 0
        elif pnl < 0:
            losses.append(pnl)
            loss_streak += 1
            win_streak = 0
        else:
            win_streak = 0
            loss_streak = 0
        max_win_streak = max(max_win_streak, win_streak)
        max_loss_streak = max(max_loss_streak, loss_streak)

        cumulative += pnl
        equity_curve.append({"trade": index, "cumulative": cumulative})
        peak = max(peak, cumulative)
        max_drawdown = max(max_drawdown, peak - cumulative)

        symbol = str(field_of(trade, "symbol") or "").strip().upper()
        if symbol:
            by_symbol.setdefault(symbol, []).append(pnl)

        dt = _parse_dt(field_of(trade, "datetime"))
        if dt is not None:
            by_hour.setdefault(f"{dt.hour:02d}:00", []).append(pnl)
            by_weekday.setdefault(DAYS_ORDER[(dt.weekday() + 1) % 7], []).append(pnl)
            by_date.setdefault(dt.date().isoformat(), []).append(pnl)
            by_month.setdefault(f"{dt.year:04d}-{dt.month:02d}", []).append(pnl)

    total_trades = len(trades)
    total_pnl = math.fsum(pnls)
    gross_profit = math.fsum(wins)
    gross_loss = abs(math.fsum(losses))

    avg_win = _safe_div(gross_profit, len(wins))
    avg_loss = _safe_div(math.fsum(losses), len(losses))

    if gross_loss > 0:
        profit_factor = _safe_div(gross_profit, gross_loss)
    else:
        profit_factor = float(sentinel) if gross_profit > 0 else 0.0

    return {
        "total_trades": total_trades,
        "total_pnl": total_pnl,
        "win_rate": _safe_div(len(wins), total_trades) * 100.0,
        "profit_factor": profit_factor,
        "avg_win": avg_win,
        "avg_loss": avg_loss,
        "largest_win": max(wins) if wins else 0.0,
        "largest_loss": min(losses) if losses else 0.0,
        "max_drawdown": max_drawdown,
        "max_win_streak": max_win_streak,
        "max_loss_streak": max_loss_streak,
        "expectancy": _safe_div(total_pnl, total_trades),
        "reward_risk_ratio": _safe_div(avg_win, abs(avg_loss)),
        "equity_curve": equity_curve,
        "time_data": _bucket_rows("time", by_hour, lambda k: k),
        "trades_by_day": _bucket_rows("day", by_weekday, DAYS_ORDER.index),
        "trades_by_symbol": _bucket_rows("symbol", by_symbol, lambda k: k),
        "daily_performance": _bucket_rows("date", by_date, lambda k: k),
        "monthly_performance": _bucket_rows("month", by_month, lambda k: k),
    }


def sort_chronologically(trades: Iterable[Any]) -> List[Any]:
    """Stable datetime-ascending copy; unparseable datetimes sort last."""
    far_future = datetime.max.replace(tzinfo=timezone.utc)
    return sorted(trades, key=lambda t: _parse_dt(field_of(t, "datetime")) or far_future)
