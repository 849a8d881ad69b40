# deal/audit.py
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

from psycopg.types.json import Jsonb

from util.db import db
from .models import OutcomeRecord

logger = logging.getLogger("deal.audit")


class AuditSink(ABC):
    @abstractmethod
    def append(self, record: OutcomeRecord) -> None: ...


class PgAuditSink(AuditSink):
    """deal_outcomes 一局一筆；同 round_id 重送會被忽略"""

    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout

    def append(self, record: OutcomeRecord) -> None:
        logger.info("[AUDIT] %s", json.dumps(record.model_dump(mode="json"), sort_keys=True))
        with db(self._timeout) as conn, conn.cursor() as cur:
            cur.execute("""
              INSERT INTO deal_outcomes (round_id, owner_id, bet_amount, payout, result, signature, created_at)
              VALUES (%s, %s, %s, %s, %s, %s, %s)
              ON CONFLICT (round_id) DO NOTHING;
            """, (record.round_id, record.owner_id, record.bet_amount, record.payout,
                  Jsonb(record.result), record.signature, record.created_at))
            conn.commit()

