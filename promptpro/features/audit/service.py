"""
AuditRecorder: append-only record of who changed what.

Recording is fire-and-forget. A disabled, sampled-out or failed write never
reaches the caller; failed DB writes land in the in-process buffer instead,
which is also the only sink when no database is configured.
"""
import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import insert

from promptpro.core.config import settings
from promptpro.core.database import audit_events, create_all_tables, get_database_url, get_db_session
from promptpro.core.logging import get_request_id, safe_truncate

logger = logging.getLogger(__name__)

MAX_DETAIL_ITEMS = 50
MAX_DETAIL_ITEM_LENGTH = 200


def _sample_rate() -> float:
    try:
        return float(settings.AUDIT_SAMPLE_RATE)
    except (TypeError, ValueError):
        return 1.0


def _clean_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (set, frozenset)):
        value = sorted(value, key=str)
    if isinstance(value, (list, tuple)):
        return [safe_truncate(item, MAX_DETAIL_ITEM_LENGTH) for item in list(value)[:MAX_DETAIL_ITEMS]]
    return safe_truncate(value)


class AuditRecorder:
    def __init__(self):
        self._buffer: List[Dict[str, Any]] = []

    def _sampled_in(self) -> bool:
        rate = _sample_rate()
        return rate >= 1.0 or (rate > 0 and random.random() <= rate)

    def _build(self, actor_id, action, target_type, target_id, details, request_id) -> Dict[str, Any]:
        return {
            "ts": datetime.now(timezone.utc),
            "request_id": request_id or get_request_id(),
            "actor_id": actor_id,
            "action": action,
            "target_type": target_type,
            "target_id": target_id,
            "details": {k: _clean_value(v) for k, v in details.items()} if details else None,
        }

    def _write(self, record: Dict[str, Any]) -> None:
        if not get_database_url():
            self._buffer.append(record)
            return
        try:
            create_all_tables()
            with get_db_session() as session:
                session.execute(insert(audit_events).values(**record))
        except Exception as exc:
            logger.warning("audit.write_failed", extra={"error_code": type(exc).__name__,
                                                        "operation": record["action"]})
            self._buffer.append(record)

    def record(
        self,
        *,
        actor_id: Optional[str],
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> None:
        if not settings.AUDIT_ENABLED or not self._sampled_in():
            return
        try:
            record = self._build(actor_id, action, target_type, target_id, details, request_id)
        except Exception as exc:
            logger.warning("audit.dropped", extra={"error_code": type(exc).__name__, "operation": action})
            return
        self._write(record)

    def buffered(self) -> List[Dict[str, Any]]:
        return list(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()


_recorder = AuditRecorder()


def record_audit_event(**kwargs) -> None:
    _recorder.record(**kwargs)


def get_buffered_audit_events() -> List[Dict[str, Any]]:
    return _recorder.buffered()


def clear_buffered_audit_events() -> None:
    _recorder.clear()
