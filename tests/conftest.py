import random
from typing import Dict, List, Tuple

import jwt
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from auth.verifier import JwtVerifier
from deal.api import register_error_handlers, router as deal_router
from deal.audit import AuditSink
from deal.errors import InsufficientFundsError, LedgerError, LedgerUnavailable
from deal.ledger import Ledger, LedgerReceipt
from deal.models import OutcomeRecord
from deal.service import DealService
from deal.store import MemoryRoundStore

SECRET_KEY = "test-jwt-secret"
FAIRNESS_SECRET = "test-fairness-secret"


class FakeLedger(Ledger):
    """In-memory wallet. fail[kind] = n makes the next n calls of that kind raise LedgerUnavailable."""

    def __init__(self, balances: Dict[int, int] = None):
        self.balances: Dict[int, int] = dict(balances or {})
        self.applied: Dict[Tuple[str, str], int] = {}
        self.calls: List[Tuple[str, int, int, str]] = []
        self.fail = {"balance": 0, "debit": 0, "credit": 0}

    def _maybe_fail(self, kind: str):
        if self.fail[kind] > 0:
            self.fail[kind] -= 1
            raise LedgerUnavailable(f"{kind} timed out")

    def get_balance(self, owner_id: int) -> int:
        self._maybe_fail("balance")
        if owner_id not in self.balances:
            raise LedgerError("wallet not found", owner_id=owner_id)
        return self.balances[owner_id]

    def debit(self, owner_id, amount, reason, idempotency_key):
        self.calls.append(("debit", owner_id, amount, idempotency_key))
        self._maybe_fail("debit")
        if (idempotency_key, "debit") in self.applied:
            return LedgerReceipt(True, self.applied[(idempotency_key, "debit")])
        if self.balances.get(owner_id, 0) < amount:
            raise InsufficientFundsError("Insufficient balance", owner_id=owner_id)
        self.balances[owner_id] -= amount
        self.applied[(idempotency_key, "debit")] = self.balances[owner_id]
        return LedgerReceipt(True, self.balances[owner_id])

    def credit(self, owner_id, amount, reason, idempotency_key):
        self.calls.append(("credit", owner_id, amount, idempotency_key))
        self._maybe_fail("credit")
        if (idempotency_key, "credit") in self.applied:
            return LedgerReceipt(True, self.applied[(idempotency_key, "credit")])
        self.balances[owner_id] = self.balances.get(owner_id, 0) + amount
        self.applied[(idempotency_key, "credit")] = self.balances[owner_id]
        return LedgerReceipt(True, self.balances[owner_id])

    def applied_of(self, kind: str) -> List[str]:
        return [key for (key, k) in self.applied if k == kind]


class ListAuditSink(AuditSink):
    def __init__(self):
        self.records: List[OutcomeRecord] = []

    def append(self, record: OutcomeRecord) -> None:
        self.records.append(record)


@pytest.fixture
def store():
    return MemoryRoundStore()


@pytest.fixture
def ledger():
    return FakeLedger({1: 50000, 2: 50000, 3: 500})


@pytest.fixture
def audit():
    return ListAuditSink()


@pytest.fixture
def service(store, ledger, audit):
    rng = random.Random(1234)
    return DealService(
        store, ledger, audit, FAIRNESS_SECRET,
        max_completed=100,
        ledger_attempts=3,
        ledger_backoff=0,
        sleep=lambda s: None,
        randbelow=rng.randrange,
    )


def make_token(uid: int, secret: str = SECRET_KEY) -> str:
    return jwt.encode({"uid": uid}, secret, algorithm="HS256")


def auth(uid: int) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(uid)}"}


@pytest.fixture
def client(service):
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(deal_router)
    app.state.deal_service = service
    app.state.verifier = JwtVerifier(SECRET_KEY)
    with TestClient(app) as c:
        yield c


def open_until_offer(svc: DealService, owner_id: int, round_id: str) -> List[int]:
    """Open the lowest-numbered closed cases until the round asks for an offer."""
    opened = []
    while True:
        state = svc.get_state(owner_id, round_id)
        if state["game_phase"] != "opening":
            return opened
        n = state["remaining_case_numbers"][0]
        svc.open_case(owner_id, round_id, n)
        opened.append(n)
