from __future__ import annotations

from datetime import datetime, timezone

# Binance kline intervals; "1M" (month) is case-sensitive against "1m" (minute)
BINANCE_INTERVALS = ("1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w", "1M")


def check_intervals(intervals: list[str]) -> list[str]:
    unknown = [tf for tf in intervals if tf not in BINANCE_INTERVALS]
    if unknown:
        raise ValueError(f"Unsupported kline interval(s): {', '.join(unknown)}")
    return list(intervals)


def _iso_ms(value: object) -> str:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def kline_row_to_candle(row: list) -> dict:
    """Binance row: [open time, open, high, low, close, volume, close time, ...]."""
    return {
        "open_time": _iso_ms(row[0]),
        "open": float(row[1]),
        "high": float(row[2]),
        "low": float(row[3]),
        "close": float(row[4]),
        "volume": float(row[5]),
        "close_time": _iso_ms(row[6]),
    }


def candles_are_sane(candles: list[dict]) -> bool:
    if not candles:
        return False
    prev_open = ""
    for row in candles:
        o = float(row.get("open", 0) or 0)
        h = float(row.get("high", 0) or 0)
        l = float(row.get("low", 0) or 0)
        c = float(row.get("close", 0) or 0)
        if o <= 0 or h <= 0 or l <= 0 or c <= 0:
            return False
        if h < l:
            return False
        opened = str(row.get("open_time", ""))
        if prev_open and opened <= prev_open:
            return False
        prev_open = opened
    return True
