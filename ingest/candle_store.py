import logging
from typing import Dict, Iterable, List, Optional

import asyncpg

from config import config
from ingest.market_types import Candle


logger = logging.getLogger(__name__)

SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS candles (
    ts      BIGINT PRIMARY KEY,
    open    DOUBLE PRECISION NOT NULL,
    high    DOUBLE PRECISION NOT NULL,
    low     DOUBLE PRECISION NOT NULL,
    close   DOUBLE PRECISION NOT NULL,
    volume  DOUBLE PRECISION NOT NULL
);
CREATE TABLE IF NOT EXISTS audit_log (
    id      BIGSERIAL PRIMARY KEY,
    ts      BIGINT NOT NULL,
    level   TEXT NOT NULL,
    module  TEXT NOT NULL,
    action  TEXT NOT NULL,
    detail  TEXT,
    mode    TEXT
);
CREATE INDEX IF NOT EXISTS idx_audit_ts ON audit_log (ts);
'''

UPSERT_SQL = '''
INSERT INTO candles (ts, open, high, low, close, volume)
VALUES ($1, $2, $3, $4, $5, $6)
ON CONFLICT (ts) DO UPDATE SET
    open = EXCLUDED.open,
    high = GREATEST(candles.high, EXCLUDED.high),
    low = LEAST(candles.low, EXCLUDED.low),
    close = EXCLUDED.close,
    volume = EXCLUDED.volume
'''

OVERWRITE_SQL = '''
INSERT INTO candles (ts, open, high, low, close, volume)
VALUES ($1, $2, $3, $4, $5, $6)
ON CONFLICT (ts) DO UPDATE SET
    open = EXCLUDED.open,
    high = EXCLUDED.high,
    low = EXCLUDED.low,
    close = EXCLUDED.close,
    volume = EXCLUDED.volume
'''


def _row(candle: Candle):
    return (candle.timestamp, candle.open, candle.high, candle.low, candle.close, candle.volume)


def _merge(existing: Candle, incoming: Candle) -> Candle:
    return Candle(
        timestamp=incoming.timestamp,
        open=incoming.open,
        high=max(existing.high, incoming.high),
        low=min(existing.low, incoming.low),
        close=incoming.close,
        volume=incoming.volume,
    )


def _differs(local: Candle, remote: Candle, tolerance: float) -> bool:
    return (
        abs(local.close - remote.close) > tolerance
        or abs(local.high - remote.high) > tolerance
        or abs(local.low - remote.low) > tolerance
    )


class MemoryCandleStore:
    """In-process candle store keyed by bucket timestamp."""

    def __init__(self):
        self._candles: Dict[int, Candle] = {}
        self.audit_records: List[Dict] = []

    async def initialize(self):
        return None

    async def close(self):
        return None

    async def upsert_candle(self, candle: Candle) -> None:
        existing = self._candles.get(candle.timestamp)
        self._candles[candle.timestamp] = _merge(existing, candle) if existing else candle

    async def upsert_many(self, candles: Iterable[Candle]) -> int:
        count = 0
        for candle in candles:
            await self.upsert_candle(candle)
            count += 1
        return count

    async def get_latest(self, n: int) -> List[Candle]:
        keys = sorted(self._candles)[-n:] if n > 0 else []
        return [self._candles[k] for k in keys]

    async def get_max_high(self, n: int) -> float:
        latest = await self.get_latest(n)
        return max((c.high for c in latest), default=0.0)

    async def count(self) -> int:
        return len(self._candles)

    async def reconcile(self, candles: Iterable[Candle], tolerance: float = 1.0) -> int:
        fixed = 0
        for remote in candles:
            local = self._candles.get(remote.timestamp)
            if local is None or _differs(local, remote, tolerance):
                if local is not None:
                    logger.warning("Candle %s reconciled: local close %.0f, exchange close %.0f",
                                   remote.timestamp, local.close, remote.close)
                self._candles[remote.timestamp] = remote
                fixed += 1
        if fixed:
            logger.info("Reconciliation fixed %s candles", fixed)
        return fixed

    async def append_audit(self, record) -> None:
        self.audit_records.append(record.to_dict())


class PostgresCandleStore:
    """asyncpg-backed candle store; the schema is created on first connect."""

    def __init__(self, db_config: Optional[Dict] = None):
        self.db_config = db_config if db_config is not None else config.database
        self.pool = None

    async def initialize(self):
        db = self.db_config
        self.pool = await asyncpg.create_pool(
            host=db['host'],
            port=db['port'],
            database=db['database'],
            user=db['user'],
            password=db['password'],
            min_size=1,
            max_size=5,
        )
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Candle store connected to %s:%s/%s", db['host'], db['port'], db['database'])

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def upsert_candle(self, candle: Candle) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(UPSERT_SQL, *_row(candle))

    async def upsert_many(self, candles: Iterable[Candle]) -> int:
        rows = [_row(c) for c in candles]
        if not rows:
            return 0
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(UPSERT_SQL, rows)
        logger.debug("Batch upserted %s candles", len(rows))
        return len(rows)

    async def get_latest(self, n: int) -> List[Candle]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT ts, open, high, low, close, volume FROM candles ORDER BY ts DESC LIMIT $1', n,
            )
        return [self._to_candle(r) for r in reversed(rows)]

    async def get_max_high(self, n: int) -> float:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(
                'SELECT MAX(t.high) FROM (SELECT high FROM candles ORDER BY ts DESC LIMIT $1) AS t', n,
            )
        return float(value) if value is not None else 0.0

    async def count(self) -> int:
        async with self.pool.acquire() as conn:
            return int(await conn.fetchval('SELECT COUNT(*) FROM candles'))

    async def reconcile(self, candles: Iterable[Candle], tolerance: float = 1.0) -> int:
        remote = list(candles)
        if not remote:
            return 0
        fixed: List[Candle] = []
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    'SELECT ts, open, high, low, close, volume FROM candles WHERE ts = ANY($1::bigint[])',
                    [c.timestamp for c in remote],
                )
                local = {r['ts']: self._to_candle(r) for r in rows}
                for candle in remote:
                    existing = local.get(candle.timestamp)
                    if existing is None or _differs(existing, candle, tolerance):
                        if existing is not None:
                            logger.warning("Candle %s reconciled: local close %.0f, exchange close %.0f",
                                           candle.timestamp, existing.close, candle.close)
                        fixed.append(candle)
                if fixed:
                    await conn.executemany(OVERWRITE_SQL, [_row(c) for c in fixed])
        if fixed:
            logger.info("Reconciliation fixed %s candles", len(fixed))
        return len(fixed)

    async def append_audit(self, record) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO audit_log (ts, level, module, action, detail, mode)
                   VALUES ($1, $2, $3, $4, $5, $6)''',
                record.timestamp, record.level, record.module, record.action, record.detail, record.mode,
            )

    @staticmethod
    def _to_candle(row) -> Candle:
        return Candle(
            timestamp=int(row['ts']),
            open=float(row['open']),
            high=float(row['high']),
            low=float(row['low']),
            close=float(row['close']),
            volume=float(row['volume']),
        )


def create_candle_store():
    if config.database.get('enabled', False):
        return PostgresCandleStore()
    return MemoryCandleStore()
