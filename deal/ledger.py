# deal/ledger.py
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import psycopg

from util.db import db
from .errors import InsufficientFundsError, LedgerError, LedgerUnavailable

logger = logging.getLogger("deal.ledger")

T = TypeVar("T")


@dataclass
class LedgerReceipt:
    success: bool
    new_balance: int


class Ledger(ABC):
    """Balance source of truth. debit/credit are idempotent per (key, kind)."""

    @abstractmethod
    def get_balance(self, owner_id: int) -> int: ...

    @abstractmethod
    def debit(self, owner_id: int, amount: int, reason: str, idempotency_key: str) -> LedgerReceipt: ...

    @abstractmethod
    def credit(self, owner_id: int, amount: int, reason: str, idempotency_key: str) -> LedgerReceipt: ...


def with_retry(
    op: Callable[[], T],
    *,
    attempts: int = 3,
    backoff: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
    what: str = "ledger call",
) -> T:
    """Run op, retrying LedgerUnavailable with exponential backoff. Other errors pass straight through."""
    last: Optional[LedgerUnavailable] = None
    for attempt in range(1, attempts + 1):
        try:
            return op()
        except LedgerUnavailable as e:
            last = e
            logger.warning("%s failed (attempt %d/%d): %s", what, attempt, attempts, e)
            if attempt < attempts:
                sleep(backoff * (2 ** (attempt - 1)))
    assert last is not None
    raise last


class PgLedger(Ledger):
    """users.balance 直接扣加；wallet_tx 記冪等鍵，同一個 key 重送只回傳第一次的結果"""

    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout

    def _conn(self):
        try:
            return db(self._timeout)
        except psycopg.OperationalError as e:
            raise LedgerUnavailable(f"ledger connect failed: {e}")

    def get_balance(self, owner_id: int) -> int:
        try:
            with self._conn() as conn, conn.cursor() as cur:
                cur.execute("SELECT balance FROM users WHERE id=%s;", (owner_id,))
                row = cur.fetchone()
        except psycopg.OperationalError as e:
            raise LedgerUnavailable(f"balance lookup failed: {e}")
        if not row:
            raise LedgerError("wallet not found", owner_id=owner_id)
        return int(row["balance"] or 0)

    def debit(self, owner_id: int, amount: int, reason: str, idempotency_key: str) -> LedgerReceipt:
        return self._apply("debit", owner_id, amount, reason, idempotency_key)

    def credit(self, owner_id: int, amount: int, reason: str, idempotency_key: str) -> LedgerReceipt:
        return self._apply("credit", owner_id, amount, reason, idempotency_key)

    def _apply(self, kind: str, owner_id: int, amount: int, reason: str, key: str) -> LedgerReceipt:
        if amount < 0:
            raise LedgerError(f"negative {kind} amount", owner_id=owner_id)
        try:
            with self._conn() as conn, conn.cursor() as cur:
                cur.execute("""
                  INSERT INTO wallet_tx (idempotency_key, kind, user_id, amount, reason)
                  VALUES (%s, %s, %s, %s, %s)
                  ON CONFLICT (idempotency_key, kind) DO NOTHING
                  RETURNING idempotency_key;
                """, (key, kind, owner_id, amount, reason))
                if cur.fetchone() is None:
                    # 已經處理過
                    cur.execute("""
                      SELECT balance_after FROM wallet_tx
                      WHERE idempotency_key=%s AND kind=%s;
                    """, (key, kind))
                    row = cur.fetchone()
                    return LedgerReceipt(success=True, new_balance=int(row["balance_after"] or 0))

                if kind == "debit":
                    cur.execute("""
                      UPDATE users SET balance = balance - %s
                      WHERE id=%s AND balance >= %s
                      RETURNING balance;
                    """, (amount, owner_id, amount))
                else:
                    cur.execute("""
                      UPDATE users SET balance = balance + %s
                      WHERE id=%s
                      RETURNING balance;
                    """, (amount, owner_id))
                row = cur.fetchone()
                if row is None:
                    cur.execute("SELECT 1 FROM users WHERE id=%s;", (owner_id,))
                    exists = cur.fetchone() is not None
                    conn.rollback()
                    if exists and kind == "debit":
                        raise InsufficientFundsError("Insufficient balance", owner_id=owner_id)
                    raise LedgerError("wallet not found", owner_id=owner_id)

                balance = int(row["balance"])
                cur.execute("""
                  UPDATE wallet_tx SET balance_after=%s
                  WHERE idempotency_key=%s AND kind=%s;
                """, (balance, key, kind))
                conn.commit()
                return LedgerReceipt(success=True, new_balance=balance)
        except psycopg.OperationalError as e:
            raise LedgerUnavailable(f"{kind} failed: {e}", owner_id=owner_id)
