# deal/store.py
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from psycopg.types.json import Jsonb

from util.db import db
from .errors import ActiveGameExistsError, StaleRoundError
from .models import AuditStatus, CreditStatus, Phase, Round


class RoundStore(ABC):
    """
    Keyed round persistence plus the owner -> active round index.

    upsert() is version checked: the round passed in must carry the version it
    was read at (0 for a new round). The stored copy gets version + 1.
    """

    @abstractmethod
    def get(self, round_id: str) -> Optional[Round]: ...

    @abstractmethod
    def upsert(self, round: Round) -> Round: ...

    @abstractmethod
    def find_active_for_owner(self, owner_id: int) -> Optional[Round]: ...

    @abstractmethod
    def claim_owner(self, owner_id: int, round_id: str) -> bool: ...

    @abstractmethod
    def release_owner(self, owner_id: int, round_id: str) -> None: ...

    @abstractmethod
    def cleanup(self, max_completed: int) -> int: ...

    @abstractmethod
    def list_pending_credits(self) -> List[Round]: ...

    @abstractmethod
    def list_pending_audits(self) -> List[Round]: ...

    @abstractmethod
    def list_completed_for_owner(self, owner_id: int, limit: int = 10) -> List[Round]: ...


class MemoryRoundStore(RoundStore):
    """Single-process store; every read and write hands out a deep copy."""

    def __init__(self, claim_ttl: float = 60, clock: Callable[[], float] = time.monotonic):
        self._rounds: Dict[str, Round] = {}
        self._owners: Dict[int, Tuple[str, float]] = {}
        self._lock = threading.RLock()
        self._claim_ttl = claim_ttl
        self._clock = clock

    def get(self, round_id: str) -> Optional[Round]:
        with self._lock:
            r = self._rounds.get(round_id)
            return r.model_copy(deep=True) if r else None

    def upsert(self, round: Round) -> Round:
        with self._lock:
            current = self._rounds.get(round.id)
            stored_version = current.version if current else 0
            if round.version != stored_version:
                raise StaleRoundError(
                    f"round {round.id} changed (version {stored_version}, write based on {round.version})",
                    round_id=round.id, owner_id=round.owner_id,
                )
            if round.is_active:
                held = self._owners.get(round.owner_id)
                if held is not None and held[0] != round.id:
                    raise ActiveGameExistsError("You already have an active game", round_id=round.id, owner_id=round.owner_id)
                if held is None:
                    self._owners[round.owner_id] = (round.id, self._clock())
            else:
                held = self._owners.get(round.owner_id)
                if held is not None and held[0] == round.id:
                    del self._owners[round.owner_id]

            saved = round.model_copy(deep=True, update={"version": stored_version + 1})
            self._rounds[round.id] = saved
            return saved.model_copy(deep=True)

    def find_active_for_owner(self, owner_id: int) -> Optional[Round]:
        with self._lock:
            held = self._owners.get(owner_id)
            if held is None:
                return None
            r = self._rounds.get(held[0])
            if r is None or not r.is_active:
                return None
            return r.model_copy(deep=True)

    def claim_owner(self, owner_id: int, round_id: str) -> bool:
        with self._lock:
            held = self._owners.get(owner_id)
            if held is not None:
                held_id, claimed_at = held
                r = self._rounds.get(held_id)
                if r is not None and r.is_active:
                    return False
                # 佔位但還沒寫入局面：TTL 內視為有效
                if r is None and self._clock() - claimed_at < self._claim_ttl:
                    return False
            self._owners[owner_id] = (round_id, self._clock())
            return True

    def release_owner(self, owner_id: int, round_id: str) -> None:
        with self._lock:
            held = self._owners.get(owner_id)
            if held is not None and held[0] == round_id:
                del self._owners[owner_id]

    def cleanup(self, max_completed: int) -> int:
        with self._lock:
            done = sorted(
                (r for r in self._rounds.values()
                 if r.phase == Phase.completed and r.credit_status != CreditStatus.pending
                 and r.audit_status != AuditStatus.pending),
                key=lambda r: r.created_at,
            )
            evict = done[:max(0, len(done) - max_completed)]
            for r in evict:
                del self._rounds[r.id]
            return len(evict)

    def list_pending_credits(self) -> List[Round]:
        with self._lock:
            rows = [r for r in self._rounds.values() if r.credit_status == CreditStatus.pending]
            return [r.model_copy(deep=True) for r in sorted(rows, key=lambda r: r.created_at)]

    def list_pending_audits(self) -> List[Round]:
        with self._lock:
            rows = [r for r in self._rounds.values() if r.audit_status == AuditStatus.pending]
            return [r.model_copy(deep=True) for r in sorted(rows, key=lambda r: r.created_at)]

    def list_completed_for_owner(self, owner_id: int, limit: int = 10) -> List[Round]:
        with self._lock:
            rows = [r for r in self._rounds.values() if r.owner_id == owner_id and r.phase == Phase.completed]
            rows.sort(key=lambda r: r.created_at, reverse=True)
            return [r.model_copy(deep=True) for r in rows[:limit]]


def _row_to_round(row) -> Round:
    state = dict(row["state"])
    state["version"] = row["version"]
    return Round.model_validate(state)


class PgRoundStore(RoundStore):
    def __init__(self, claim_ttl: float = 60, timeout: Optional[float] = None):
        self._claim_ttl = claim_ttl
        self._timeout = timeout

    def _conn(self):
        return db(self._timeout)

    def get(self, round_id: str) -> Optional[Round]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("SELECT state, version FROM deal_rounds WHERE id=%s;", (round_id,))
            row = cur.fetchone()
            return _row_to_round(row) if row else None

    def upsert(self, round: Round) -> Round:
        new_version = round.version + 1
        saved = round.model_copy(update={"version": new_version})
        state = Jsonb(saved.model_dump(mode="json"))
        with self._conn() as conn, conn.cursor() as cur:
            if round.version == 0:
                cur.execute("""
                  INSERT INTO deal_rounds (id, owner_id, phase, credit_status, audit_status, version, state, created_at, completed_at)
                  VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                  ON CONFLICT (id) DO NOTHING;
                """, (round.id, round.owner_id, round.phase.value, round.credit_status.value,
                      round.audit_status.value, new_version, state, round.created_at, round.completed_at))
            else:
                cur.execute("""
                  UPDATE deal_rounds
                  SET phase=%s, credit_status=%s, audit_status=%s, version=%s, state=%s, completed_at=%s
                  WHERE id=%s AND version=%s;
                """, (round.phase.value, round.credit_status.value, round.audit_status.value, new_version, state,
                      round.completed_at, round.id, round.version))
            if cur.rowcount != 1:
                raise StaleRoundError(f"round {round.id} changed since version {round.version}",
                                      round_id=round.id, owner_id=round.owner_id)

            if round.is_active:
                cur.execute("""
                  INSERT INTO deal_active_owners (owner_id, round_id)
                  VALUES (%s, %s)
                  ON CONFLICT (owner_id) DO NOTHING;
                """, (round.owner_id, round.id))
                cur.execute("SELECT round_id FROM deal_active_owners WHERE owner_id=%s;", (round.owner_id,))
                held = cur.fetchone()
                if held is None or held["round_id"] != round.id:
                    # 丟例外 -> with 區塊 rollback，局面不會寫入
                    raise ActiveGameExistsError("You already have an active game",
                                                round_id=round.id, owner_id=round.owner_id)
            else:
                cur.execute("DELETE FROM deal_active_owners WHERE owner_id=%s AND round_id=%s;",
                            (round.owner_id, round.id))
            conn.commit()
        return saved

    def find_active_for_owner(self, owner_id: int) -> Optional[Round]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("""
              SELECT r.state, r.version
              FROM deal_active_owners a
              JOIN deal_rounds r ON r.id = a.round_id
              WHERE a.owner_id=%s AND r.phase <> 'completed';
            """, (owner_id,))
            row = cur.fetchone()
            return _row_to_round(row) if row else None

    def claim_owner(self, owner_id: int, round_id: str) -> bool:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("""
              INSERT INTO deal_active_owners (owner_id, round_id, claimed_at)
              VALUES (%s, %s, now())
              ON CONFLICT (owner_id) DO UPDATE
              SET round_id = EXCLUDED.round_id, claimed_at = now()
              WHERE EXISTS (
                      SELECT 1 FROM deal_rounds r
                      WHERE r.id = deal_active_owners.round_id AND r.phase = 'completed')
                 OR (deal_active_owners.claimed_at < now() - make_interval(secs => %s)
                     AND NOT EXISTS (
                       SELECT 1 FROM deal_rounds r WHERE r.id = deal_active_owners.round_id))
              RETURNING round_id;
            """, (owner_id, round_id, float(self._claim_ttl)))
            row = cur.fetchone()
            conn.commit()
            return row is not None and row["round_id"] == round_id

    def release_owner(self, owner_id: int, round_id: str) -> None:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("DELETE FROM deal_active_owners WHERE owner_id=%s AND round_id=%s;", (owner_id, round_id))
            conn.commit()

    def cleanup(self, max_completed: int) -> int:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("""
              DELETE FROM deal_rounds
              WHERE id IN (
                SELECT id FROM deal_rounds
                WHERE phase = 'completed' AND credit_status <> 'pending' AND audit_status <> 'pending'
                ORDER BY created_at DESC
                OFFSET %s
              );
            """, (max(0, max_completed),))
            deleted = cur.rowcount or 0
            conn.commit()
            return deleted

    def list_pending_credits(self) -> List[Round]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("""
              SELECT state, version FROM deal_rounds
              WHERE credit_status = 'pending'
              ORDER BY created_at;
            """)
            return [_row_to_round(r) for r in cur.fetchall()]

    def list_pending_audits(self) -> List[Round]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("""
              SELECT state, version FROM deal_rounds
              WHERE audit_status = 'pending'
              ORDER BY created_at;
            """)
            return [_row_to_round(r) for r in cur.fetchall()]

    def list_completed_for_owner(self, owner_id: int, limit: int = 10) -> List[Round]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("""
              SELECT state, version FROM deal_rounds
              WHERE owner_id=%s AND phase = 'completed'
              ORDER BY created_at DESC
              LIMIT %s;
            """, (owner_id, limit))
            return [_row_to_round(r) for r in cur.fetchall()]
