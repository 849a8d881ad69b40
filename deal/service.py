# deal/service.py
import logging
import secrets
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from math import floor
from typing import Any, Callable, Dict, List, Optional, TypeVar
from uuid import uuid4

import pytz

from .audit import AuditSink
from .banker import Personality, banker_offer, expected_value, offer_percentage, remaining_values
from .errors import (
    ActiveGameExistsError,
    DealError,
    InsufficientFundsError,
    InternalError,
    LedgerError,
    LedgerUnavailable,
    NotFoundError,
    OwnershipError,
    ValidationError,
)
from .fairness import commit_layout, sign_outcome
from .ledger import Ledger, with_retry
from .logic import TIERS, generate_cases, get_tier, round_quota, scale_factor, to_money
from .machine import Event, transition
from .models import AuditStatus, CreditStatus, Decision, OutcomeRecord, Phase, Round
from .store import RoundStore

logger = logging.getLogger("deal")

T = TypeVar("T")


class RoundLocks:
    """One lock per round id; entries disappear when nobody holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class DealService:
    def __init__(
        self,
        store: RoundStore,
        ledger: Ledger,
        audit: AuditSink,
        fairness_secret: str,
        *,
        max_completed: int = 100,
        ledger_attempts: int = 3,
        ledger_backoff: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
        tz=pytz.utc,
        randbelow: Callable[[int], int] = secrets.randbelow,
        new_id: Callable[[], str] = lambda: str(uuid4()),
    ):
        if not fairness_secret:
            raise RuntimeError("fairness secret not configured")
        self.store = store
        self.ledger = ledger
        self.audit = audit
        self._secret = fairness_secret
        self._max_completed = max_completed
        self._attempts = ledger_attempts
        self._backoff = ledger_backoff
        self._sleep = sleep
        self._tz = tz
        self._randbelow = randbelow
        self._new_id = new_id
        self._locks = RoundLocks()

    # ===== helpers =====

    def _now(self) -> datetime:
        return datetime.now(self._tz)

    def _ledger(self, op: Callable[[], T], what: str, owner_id: int, round_id: Optional[str] = None) -> T:
        try:
            return with_retry(op, attempts=self._attempts, backoff=self._backoff, sleep=self._sleep, what=what)
        except LedgerUnavailable as e:
            logger.error("%s gave up: round=%s owner=%s err=%s", what, round_id, owner_id, e)
            raise InternalError("ledger unavailable, try again later", round_id=round_id, owner_id=owner_id)

    def _load(self, owner_id: int, round_id: str) -> Round:
        r = self.store.get(round_id)
        if r is None:
            raise NotFoundError("Game not found", round_id=round_id, owner_id=owner_id)
        if r.owner_id != owner_id:
            raise OwnershipError("Not your game", round_id=round_id, owner_id=owner_id)
        return r

    @staticmethod
    def _scaled(r: Round) -> List[float]:
        k = scale_factor(r.buy_in)
        return [v * k for v in r.case_values]

    # ===== start =====

    def start(self, owner_id: int, buy_in: int, difficulty: str = "standard", personality: str = "fair") -> Dict[str, Any]:
        if difficulty not in TIERS:
            raise ValidationError("Invalid difficulty level", owner_id=owner_id)
        try:
            personality = Personality(personality)
        except ValueError:
            raise ValidationError("Invalid banker personality", owner_id=owner_id)
        tier = get_tier(difficulty)
        if isinstance(buy_in, bool) or not isinstance(buy_in, int):
            raise ValidationError("Buy-in must be a whole number", owner_id=owner_id)
        if buy_in < tier.min_buy_in or buy_in > tier.max_buy_in:
            raise ValidationError(
                f"Buy-in must be between {tier.min_buy_in:,} and {tier.max_buy_in:,}", owner_id=owner_id
            )

        active = self.store.find_active_for_owner(owner_id)
        if active is not None:
            raise ActiveGameExistsError("You already have an active game", round_id=active.id, owner_id=owner_id)

        balance = self._ledger(lambda: self.ledger.get_balance(owner_id), "balance lookup", owner_id)
        if balance < buy_in:
            raise InsufficientFundsError("Insufficient balance", owner_id=owner_id)

        round_id = self._new_id()
        if not self.store.claim_owner(owner_id, round_id):
            raise ActiveGameExistsError("You already have an active game", owner_id=owner_id)

        try:
            receipt = self._ledger(
                lambda: self.ledger.debit(owner_id, buy_in, "Deal or No Deal buy-in", round_id),
                "buy-in debit", owner_id, round_id,
            )
        except Exception:
            self.store.release_owner(owner_id, round_id)
            raise
        if not receipt.success:
            self.store.release_owner(owner_id, round_id)
            logger.warning("buy-in debit declined: round=%s owner=%s buy_in=%s", round_id, owner_id, buy_in)
            raise LedgerError("buy-in debit declined", round_id=round_id, owner_id=owner_id)

        cases, player_case = generate_cases(tier, self._randbelow)
        r = Round(
            id=round_id,
            owner_id=owner_id,
            buy_in=buy_in,
            difficulty=difficulty,
            banker_personality=personality,
            case_values=cases,
            player_case=player_case,
            cases_to_open_this_round=round_quota(tier, 0, tier.case_count - 1),
            balance_before_start=balance,
            balance_after=receipt.new_balance,
            commitment=commit_layout(round_id, player_case, [float(v) for v in cases], self._secret),
            created_at=self._now(),
        )
        try:
            r = self.store.upsert(r)
        except Exception:
            logger.exception("round write failed after debit, refunding: round=%s owner=%s", round_id, owner_id)
            self.store.release_owner(owner_id, round_id)
            self._ledger(
                lambda: self.ledger.credit(owner_id, buy_in, "Deal or No Deal buy-in refund", f"refund:{round_id}"),
                "buy-in refund", owner_id, round_id,
            )
            raise

        logger.info("deal started: round=%s owner=%s buy_in=%s tier=%s banker=%s",
                    round_id, owner_id, buy_in, difficulty, personality.value)
        # 局已成立、錢已扣：清理失敗不能讓開局回報失敗，留給背景循環
        try:
            self.cleanup()
        except Exception:
            logger.exception("cleanup after start failed: round=%s owner=%s", round_id, owner_id)

        return {
            "round_id": r.id,
            "difficulty": r.difficulty,
            "banker_personality": r.banker_personality.value,
            "case_count": r.case_count,
            "player_case": r.player_case,
            "balance_before": balance,
            "balance_after": receipt.new_balance,
            "cases_to_open_this_round": r.cases_to_open_this_round,
            "commitment": r.commitment,
            "created_at": r.created_at,
        }

    # ===== open case =====

    def open_case(self, owner_id: int, round_id: str, case_number: int) -> Dict[str, Any]:
        with self._locks.hold(round_id):
            r = transition(self._load(owner_id, round_id).model_copy(deep=True), Event.open_case)

            if isinstance(case_number, bool) or not isinstance(case_number, int) \
                    or case_number < 1 or case_number > r.case_count:
                raise ValidationError("Invalid case number", round_id=round_id, owner_id=owner_id)
            if case_number in r.opened_cases:
                raise ValidationError("Case already opened", round_id=round_id, owner_id=owner_id)
            if case_number == r.player_case:
                raise ValidationError("Cannot open your own case yet", round_id=round_id, owner_id=owner_id)

            r.opened_cases.append(case_number)
            remaining = r.cases_to_open_this_round - r.opened_this_round
            ready = remaining <= 0
            if ready:
                r = transition(r, Event.quota_met)
            r = self.store.upsert(r)

        return {
            "round_id": r.id,
            "case_number": case_number,
            "revealed_value": to_money(r.case_values[case_number - 1], r.buy_in),
            "opened_cases": list(r.opened_cases),
            "remaining_cases_to_open": max(0, remaining),
            "ready_for_offer": ready,
        }

    # ===== banker offer =====

    def request_offer(self, owner_id: int, round_id: str) -> Dict[str, Any]:
        with self._locks.hold(round_id):
            r = transition(self._load(owner_id, round_id).model_copy(deep=True), Event.offer_made)
            tier = get_tier(r.difficulty)
            scaled = self._scaled(r)
            offer = banker_offer(scaled, r.opened_cases, r.banker_personality, r.current_round, tier.total_rounds)
            ev = expected_value(scaled, r.opened_cases)
            r.banker_offer = offer
            r = self.store.upsert(r)

        logger.info("banker offer: round=%s owner=%s round_index=%s offer=%s ev=%.2f",
                    r.id, owner_id, r.current_round, offer, ev)
        return {
            "round_id": r.id,
            "current_round": r.current_round + 1,
            "banker_offer": offer,
            "expected_value": floor(ev),
            "offer_percentage": offer_percentage(offer, ev),
            "remaining_values": sorted(floor(v) for v in remaining_values(scaled, r.opened_cases)),
            "final_choice": r.live_cases <= 2,
        }

    # ===== decision =====

    def decide(self, owner_id: int, round_id: str, decision: str) -> Dict[str, Any]:
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError("Invalid decision", round_id=round_id, owner_id=owner_id)

        with self._locks.hold(round_id):
            current = self._load(owner_id, round_id)
            if decision == Decision.no_deal:
                return self._no_deal(current.model_copy(deep=True))
            return self._finish(current.model_copy(deep=True), decision)

    def _no_deal(self, r: Round) -> Dict[str, Any]:
        if r.live_cases <= 2:
            # 只剩玩家箱 + 1：不再開新一輪，保留最後報價
            r = transition(r, Event.final_round)
            r.final_choice = True
            r = self.store.upsert(r)
            logger.info("final choice: round=%s owner=%s", r.id, r.owner_id)
            return {
                "round_id": r.id,
                "decision": Decision.no_deal.value,
                "game_complete": False,
                "cases_to_open_next_round": 0,
                "final_choice": True,
                "banker_offer": r.banker_offer,
            }

        r = transition(r, Event.no_deal)
        tier = get_tier(r.difficulty)
        r.current_round += 1
        r.opened_at_round_start = len(r.opened_cases)
        r.cases_to_open_this_round = round_quota(tier, r.current_round, len(r.unopened_others))
        r.banker_offer = None
        r = self.store.upsert(r)
        return {
            "round_id": r.id,
            "decision": Decision.no_deal.value,
            "game_complete": False,
            "cases_to_open_next_round": r.cases_to_open_this_round,
            "final_choice": False,
            "banker_offer": None,
        }

    def _finish(self, r: Round, decision: Decision) -> Dict[str, Any]:
        r = transition(r, Event.deal if decision == Decision.deal else Event.reveal)

        player_case_value = to_money(r.case_values[r.player_case - 1], r.buy_in)
        last_offer = r.banker_offer
        if decision == Decision.deal:
            payout = last_offer
            r.accepted_offer = payout
        else:
            payout = player_case_value

        now = self._now()
        result = {
            "decision": decision.value,
            "player_case": r.player_case,
            "player_case_value": player_case_value,
            "accepted_offer": r.accepted_offer,
            "last_offer": last_offer,
            "profit": payout - r.buy_in,
            "difficulty": r.difficulty,
            "banker_personality": r.banker_personality.value,
            "opened_cases": list(r.opened_cases),
            "case_values": [float(v) for v in r.case_values],
            "commitment": r.commitment,
        }
        record = OutcomeRecord(
            round_id=r.id,
            owner_id=r.owner_id,
            bet_amount=r.buy_in,
            payout=payout,
            result=result,
            signature=sign_outcome(r.id, r.owner_id, r.buy_in, payout, result, self._secret),
            created_at=now,
        )
        r.final_value = player_case_value
        r.decision = decision
        r.payout = payout
        r.banker_offer = None
        r.completed_at = now
        r.credit_status = CreditStatus.pending
        r.audit_status = AuditStatus.pending
        r.outcome = record

        # 先落地終局狀態，之後不論派彩成敗都不能再被決定一次
        r = self.store.upsert(r)
        logger.info("deal completed: round=%s owner=%s decision=%s payout=%s",
                    r.id, r.owner_id, decision.value, payout)

        r = self._write_audit(r)
        r = self._credit(r)
        return {
            "round_id": r.id,
            "decision": decision.value,
            "game_complete": True,
            "accepted_offer": r.accepted_offer,
            "player_case_value": player_case_value,
            "final_payout": payout,
            "balance_after": r.balance_after,
            "credit_status": r.credit_status.value,
            "case_values": [to_money(v, r.buy_in) for v in r.case_values],
            "signature": record.signature,
        }

    def _write_audit(self, r: Round) -> Round:
        """Append the outcome; on failure the round stays audit-pending for the settlement loop."""
        try:
            self.audit.append(r.outcome)
        except Exception:
            logger.exception("audit append failed, left pending: round=%s owner=%s", r.id, r.owner_id)
            return r
        r.audit_status = AuditStatus.written
        return self.store.upsert(r)

    def _credit(self, r: Round) -> Round:
        """Pay a terminal round. Key is the round id, so a retry can never pay twice."""
        reason = "Deal or No Deal - Accepted offer" if r.decision == Decision.deal else "Deal or No Deal - Opened case"
        try:
            receipt = self._ledger(
                lambda: self.ledger.credit(r.owner_id, r.payout, reason, r.id),
                "payout credit", r.owner_id, r.id,
            )
        except DealError as e:
            logger.error("payout left pending: round=%s owner=%s payout=%s err=%s", r.id, r.owner_id, r.payout, e)
            if isinstance(e, LedgerError):
                raise
            raise InternalError("payout pending, it will be retried", round_id=r.id, owner_id=r.owner_id)
        if not receipt.success:
            logger.error("payout declined, left pending: round=%s owner=%s payout=%s", r.id, r.owner_id, r.payout)
            raise InternalError("payout pending, it will be retried", round_id=r.id, owner_id=r.owner_id)

        r.credit_status = CreditStatus.settled
        r.balance_after = receipt.new_balance
        return self.store.upsert(r)

    # ===== read side =====

    def get_state(self, owner_id: int, round_id: Optional[str] = None) -> Dict[str, Any]:
        if round_id:
            r = self._load(owner_id, round_id)
        else:
            r = self.store.find_active_for_owner(owner_id)
            if r is None:
                raise NotFoundError("No active game found", owner_id=owner_id)

        state = {
            "round_id": r.id,
            "game_phase": r.phase.value,
            "player_case": r.player_case,
            "opened_cases": [
                {"case_number": n, "value": to_money(r.case_values[n - 1], r.buy_in)} for n in r.opened_cases
            ],
            "remaining_case_numbers": r.unopened_others,
            "current_round": r.current_round + 1,
            "cases_to_open_this_round": r.cases_to_open_this_round,
            "banker_offer": r.banker_offer,
            "final_choice": r.final_choice,
            "buy_in": r.buy_in,
            "difficulty": r.difficulty,
            "banker_personality": r.banker_personality.value,
            "commitment": r.commitment,
            "created_at": r.created_at,
        }
        if r.phase == Phase.completed:
            state.update({
                "decision": r.decision.value if r.decision else None,
                "accepted_offer": r.accepted_offer,
                "final_value": r.final_value,
                "payout": r.payout,
                "balance_after": r.balance_after,
                "credit_status": r.credit_status.value,
                "case_values": [to_money(v, r.buy_in) for v in r.case_values],
                "completed_at": r.completed_at,
            })
        return state

    def history(self, owner_id: int, limit: int = 10) -> List[Dict[str, Any]]:
        if limit < 1 or limit > 50:
            raise ValidationError("limit must be between 1 and 50", owner_id=owner_id)
        return [
            r.outcome.model_dump(mode="json")
            for r in self.store.list_completed_for_owner(owner_id, limit)
            if r.outcome is not None
        ]

    # ===== maintenance =====

    def settle_pending_credits(self) -> int:
        settled = 0
        for pending in self.store.list_pending_credits():
            with self._locks.hold(pending.id):
                r = self.store.get(pending.id)
                if r is None or r.credit_status != CreditStatus.pending:
                    continue
                try:
                    self._credit(r)
                except DealError:
                    # _credit 已記錄；下一輪再試
                    continue
                settled += 1
                logger.info("pending payout settled: round=%s owner=%s payout=%s", r.id, r.owner_id, r.payout)
        return settled

    def settle_pending_audits(self) -> int:
        written = 0
        for pending in self.store.list_pending_audits():
            with self._locks.hold(pending.id):
                r = self.store.get(pending.id)
                if r is None or r.audit_status != AuditStatus.pending or r.outcome is None:
                    continue
                if self._write_audit(r).audit_status == AuditStatus.written:
                    written += 1
        return written

    def cleanup(self) -> int:
        evicted = self.store.cleanup(self._max_completed)
        if evicted:
            logger.info("evicted %d completed rounds", evicted)
        return evicted
