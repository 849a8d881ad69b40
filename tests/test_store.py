import threading
from datetime import datetime, timedelta, timezone

import pytest

from deal.errors import ActiveGameExistsError, StaleRoundError
from deal.models import AuditStatus, CreditStatus, Phase, Round
from deal.store import MemoryRoundStore

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _round(rid: str, owner: int = 1, minutes: int = 0, **overrides) -> Round:
    fields = dict(
        id=rid,
        owner_id=owner,
        buy_in=1000,
        difficulty="casual",
        banker_personality="fair",
        case_values=[0.01, 1, 5, 10, 25, 50, 75, 100, 200, 300, 400, 500],
        player_case=1,
        cases_to_open_this_round=6,
        balance_before_start=5000,
        commitment="c",
        created_at=T0 + timedelta(minutes=minutes),
    )
    fields.update(overrides)
    return Round(**fields)


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_get_returns_copies():
    store = MemoryRoundStore()
    store.upsert(_round("a"))
    got = store.get("a")
    got.opened_cases.append(2)
    assert store.get("a").opened_cases == []


def test_version_check_rejects_stale_writes():
    store = MemoryRoundStore()
    saved = store.upsert(_round("a"))
    assert saved.version == 1
    store.upsert(saved.model_copy(update={"current_round": 1}))
    with pytest.raises(StaleRoundError):
        store.upsert(saved.model_copy(update={"current_round": 5}))
    assert store.get("a").current_round == 1


def test_new_round_cannot_overwrite_existing():
    store = MemoryRoundStore()
    store.upsert(_round("a"))
    with pytest.raises(StaleRoundError):
        store.upsert(_round("a"))


def test_active_index_follows_completion():
    store = MemoryRoundStore()
    assert store.claim_owner(1, "a")
    saved = store.upsert(_round("a"))
    assert store.find_active_for_owner(1).id == "a"

    store.upsert(saved.model_copy(update={"phase": Phase.completed}))
    assert store.find_active_for_owner(1) is None
    assert store.claim_owner(1, "b")


def test_second_active_round_for_owner_rejected():
    store = MemoryRoundStore()
    store.upsert(_round("a"))
    assert not store.claim_owner(1, "b")
    with pytest.raises(ActiveGameExistsError):
        store.upsert(_round("b"))
    assert store.get("b") is None


def test_claim_is_compare_and_set():
    store = MemoryRoundStore()
    results = []
    barrier = threading.Barrier(8)

    def claim(i):
        barrier.wait()
        results.append(store.claim_owner(1, f"r{i}"))

    threads = [threading.Thread(target=claim, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1


def test_unused_claim_expires_after_ttl():
    clock = Clock()
    store = MemoryRoundStore(claim_ttl=60, clock=clock)
    assert store.claim_owner(1, "a")
    clock.now = 30
    assert not store.claim_owner(1, "b")
    clock.now = 61
    assert store.claim_owner(1, "b")


def test_release_only_drops_own_claim():
    store = MemoryRoundStore()
    store.claim_owner(1, "a")
    store.release_owner(1, "other")
    assert not store.claim_owner(1, "b")
    store.release_owner(1, "a")
    assert store.claim_owner(1, "b")


def test_cleanup_evicts_oldest_completed_and_keeps_pending():
    store = MemoryRoundStore()
    for i in range(5):
        store.upsert(_round(f"done{i}", owner=10 + i, minutes=i, phase=Phase.completed))
    store.upsert(_round("pending", owner=20, minutes=-10, phase=Phase.completed,
                        credit_status=CreditStatus.pending))
    store.upsert(_round("unaudited", owner=22, minutes=-5, phase=Phase.completed,
                        audit_status=AuditStatus.pending))
    store.upsert(_round("live", owner=21, minutes=-20))

    assert store.cleanup(2) == 3
    assert store.get("done0") is None
    assert store.get("done2") is None
    assert store.get("done3") is not None
    assert store.get("done4") is not None
    assert store.get("pending") is not None
    assert store.get("unaudited") is not None
    assert store.get("live") is not None
    assert store.cleanup(2) == 0


def test_listings():
    store = MemoryRoundStore()
    store.upsert(_round("old", minutes=1, phase=Phase.completed))
    store.upsert(_round("new", minutes=2, phase=Phase.completed, credit_status=CreditStatus.pending))
    store.upsert(_round("other", owner=2, minutes=3, phase=Phase.completed))

    assert [r.id for r in store.list_completed_for_owner(1)] == ["new", "old"]
    assert [r.id for r in store.list_completed_for_owner(1, limit=1)] == ["new"]
    assert [r.id for r in store.list_pending_credits()] == ["new"]
    assert store.list_pending_audits() == []
    store.upsert(_round("late", owner=3, minutes=4, phase=Phase.completed, audit_status=AuditStatus.pending))
    assert [r.id for r in store.list_pending_audits()] == ["late"]
