import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional


logger = logging.getLogger(__name__)

AuditSink = Callable[['AuditRecord'], Awaitable[None]]


@dataclass(frozen=True)
class AuditRecord:
    timestamp: int
    level: str
    module: str
    action: str
    detail: Optional[str] = None
    mode: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLog:
    """Append-only audit trail of material trading events.

    Records are kept in a bounded in-memory ring for the dashboard and, when a
    sink is attached (e.g. the candle store's ``append_audit``), forwarded to it
    without awaiting the write.
    """

    def __init__(self, capacity: int = 1000, sink: Optional[AuditSink] = None):
        self._records: Deque[AuditRecord] = deque(maxlen=capacity)
        self._sink = sink
        self._pending: set = set()

    def attach_sink(self, sink: Optional[AuditSink]) -> None:
        self._sink = sink

    def log(self, level: str, module: str, action: str,
            detail: Any = None, mode: Optional[str] = None) -> AuditRecord:
        if detail is not None and not isinstance(detail, str):
            detail = json.dumps(detail, default=str, sort_keys=True)
        record = AuditRecord(
            timestamp=int(time.time() * 1000),
            level=level,
            module=module,
            action=action,
            detail=detail,
            mode=mode,
        )
        self._records.append(record)
        log_level = logging.INFO if level == 'INFO' else logging.WARNING
        if level in ('ERROR', 'CRITICAL'):
            log_level = logging.ERROR
        logger.log(log_level, "[audit] %s %s.%s %s", level, module, action, detail or '')
        self._forward(record)
        return record

    def _forward(self, record: AuditRecord) -> None:
        if self._sink is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, record: AuditRecord) -> None:
        try:
            await self._sink(record)
        except Exception as exc:
            logger.warning("Audit sink write failed for %s.%s: %s", record.module, record.action, exc)

    def info(self, module: str, action: str, detail: Any = None, mode: Optional[str] = None) -> AuditRecord:
        return self.log('INFO', module, action, detail, mode)

    def warn(self, module: str, action: str, detail: Any = None, mode: Optional[str] = None) -> AuditRecord:
        return self.log('WARN', module, action, detail, mode)

    def error(self, module: str, action: str, detail: Any = None, mode: Optional[str] = None) -> AuditRecord:
        return self.log('ERROR', module, action, detail, mode)

    def critical(self, module: str, action: str, detail: Any = None, mode: Optional[str] = None) -> AuditRecord:
        return self.log('CRITICAL', module, action, detail, mode)

    def recent(self, limit: int = 50) -> List[AuditRecord]:
        records = list(self._records)
        records.reverse()
        return records[:limit]

    def find(self, action: str) -> List[AuditRecord]:
        return [r for r in self._records if r.action == action]
