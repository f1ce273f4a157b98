import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import pandas as pd

from ingest.market_types import Candle


logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ('timestamp', 'open', 'high', 'low', 'close', 'volume')


def _to_epoch_ms(column: pd.Series) -> pd.Series:
    numeric = pd.to_numeric(column, errors='coerce')
    if numeric.notna().all():
        # Ten digits or fewer means seconds
        digits = column.astype(str).str.len()
        return numeric.where(digits > 10, numeric * 1000).astype('int64')
    parsed = pd.to_datetime(column, utc=True, errors='raise')
    epoch = pd.Timestamp(0, tz='UTC')
    return ((parsed - epoch) // pd.Timedelta(milliseconds=1)).astype('int64')


def load_candles_csv(path: Union[str, Path]) -> List[Candle]:
    """Load OHLCV bars from CSV, sorted by time.

    Raises ValueError on missing columns, inconsistent bars or duplicate
    timestamps.
    """
    df = pd.read_csv(path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"CSV {path} missing columns {missing}; available: {list(df.columns)}")
    if df.empty:
        raise ValueError(f"CSV {path} has no data rows")

    df = df.loc[:, list(REQUIRED_COLUMNS)].copy()
    df['timestamp'] = _to_epoch_ms(df['timestamp'])
    for col in REQUIRED_COLUMNS[1:]:
        df[col] = pd.to_numeric(df[col], errors='raise').astype(float)

    bad = df[(df['high'] < df['low']) | (df['open'] < 0) | (df['close'] < 0) | (df['volume'] < 0)]
    if not bad.empty:
        row = bad.index[0] + 2
        raise ValueError(f"CSV {path} line {row}: inconsistent OHLCV values")

    df = df.sort_values('timestamp', kind='mergesort').reset_index(drop=True)
    dupes = df['timestamp'].duplicated()
    if dupes.any():
        raise ValueError(f"Duplicate timestamp: {int(df.loc[dupes.idxmax(), 'timestamp'])}")

    candles = [
        Candle(int(r.timestamp), float(r.open), float(r.high), float(r.low), float(r.close), float(r.volume))
        for r in df.itertuples(index=False)
    ]
    logger.info("Loaded %s candles from %s", len(candles), path)
    return candles


def split_in_out_sample(candles: List[Candle], oos_ratio: float = 0.3) -> Tuple[List[Candle], List[Candle]]:
    """Split chronologically; the trailing ``oos_ratio`` share is out-of-sample."""
    if not 0 < oos_ratio < 1:
        raise ValueError("oos_ratio must be between 0 and 1 (exclusive)")
    split_idx = int(len(candles) * (1 - oos_ratio))
    return candles[:split_idx], candles[split_idx:]


def walk_forward_split(candles: List[Candle], train_bars: int, test_bars: int,
                       step_bars: Optional[int] = None) -> List[Tuple[List[Candle], List[Candle]]]:
    """Rolling (train, test) windows; the window advances by ``step_bars`` (default ``test_bars``)."""
    if step_bars is None:
        step_bars = test_bars
    if train_bars <= 0 or test_bars <= 0 or step_bars <= 0:
        raise ValueError("train_bars, test_bars and step_bars must be positive")

    windows = []
    start = 0
    while start + train_bars + test_bars <= len(candles):
        train_end = start + train_bars
        windows.append((candles[start:train_end], candles[train_end:train_end + test_bars]))
        start += step_bars
    return windows
