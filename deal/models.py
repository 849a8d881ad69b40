# deal/models.py
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .banker import Personality


class Phase(str, Enum):
    opening = "opening"
    offer = "offer"
    decision = "decision"
    completed = "completed"


class Decision(str, Enum):
    deal = "deal"
    no_deal = "no_deal"
    open_case = "open_case"


class CreditStatus(str, Enum):
    none = "none"
    pending = "pending"
    settled = "settled"


class AuditStatus(str, Enum):
    none = "none"
    pending = "pending"
    written = "written"


class OutcomeRecord(BaseModel):
    round_id: str
    owner_id: int
    bet_amount: int
    payout: int
    result: Dict[str, Any]
    signature: str
    created_at: datetime


class Round(BaseModel):
    id: str
    owner_id: int
    buy_in: int
    difficulty: str
    banker_personality: Personality
    case_values: List[float]          # case n -> case_values[n-1]，以 1000 為基準
    player_case: int
    opened_cases: List[int] = Field(default_factory=list)
    current_round: int = 0
    cases_to_open_this_round: int
    opened_at_round_start: int = 0
    phase: Phase = Phase.opening
    banker_offer: Optional[int] = None
    final_choice: bool = False
    accepted_offer: Optional[int] = None
    final_value: Optional[int] = None
    decision: Optional[Decision] = None
    payout: Optional[int] = None
    balance_before_start: int
    balance_after: Optional[int] = None
    credit_status: CreditStatus = CreditStatus.none
    audit_status: AuditStatus = AuditStatus.none
    commitment: str
    outcome: Optional[OutcomeRecord] = None
    version: int = 0
    created_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def case_count(self) -> int:
        return len(self.case_values)

    @property
    def live_cases(self) -> int:
        return self.case_count - len(self.opened_cases)

    @property
    def unopened_others(self) -> List[int]:
        opened = set(self.opened_cases)
        return [n for n in range(1, self.case_count + 1) if n not in opened and n != self.player_case]

    @property
    def opened_this_round(self) -> int:
        return len(self.opened_cases) - self.opened_at_round_start

    @property
    def is_active(self) -> bool:
        return self.phase != Phase.completed
