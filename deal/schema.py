# deal/schema.py
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class StartReq(BaseModel):
    buy_in: int = Field(..., examples=[1000])
    difficulty: Literal["casual", "standard", "highroller"] = "standard"
    banker_personality: Literal["conservative", "fair", "aggressive"] = "fair"


class StartResp(BaseModel):
    round_id: str
    difficulty: str
    banker_personality: str
    case_count: int
    player_case: int
    balance_before: int
    balance_after: int
    cases_to_open_this_round: int
    commitment: str
    created_at: datetime


class OpenCaseReq(BaseModel):
    round_id: str
    case_number: int


class OpenCaseResp(BaseModel):
    round_id: str
    case_number: int
    revealed_value: int
    opened_cases: List[int]
    remaining_cases_to_open: int
    ready_for_offer: bool


class OfferReq(BaseModel):
    round_id: str


class OfferResp(BaseModel):
    round_id: str
    current_round: int     # 1 起算，給前端顯示
    banker_offer: int
    expected_value: int
    offer_percentage: int
    remaining_values: List[int]
    final_choice: bool


class DecisionReq(BaseModel):
    round_id: str
    decision: Literal["deal", "no_deal", "open_case"]


class DecisionResp(BaseModel):
    round_id: str
    decision: str
    game_complete: bool
    # no_deal
    cases_to_open_next_round: Optional[int] = None
    final_choice: Optional[bool] = None
    banker_offer: Optional[int] = None
    # deal / open_case
    accepted_offer: Optional[int] = None
    player_case_value: Optional[int] = None
    final_payout: Optional[int] = None
    balance_after: Optional[int] = None
    credit_status: Optional[str] = None
    case_values: Optional[List[int]] = None
    signature: Optional[str] = None


class OpenedCase(BaseModel):
    case_number: int
    value: int


class StateResp(BaseModel):
    round_id: str
    game_phase: str        # 'opening'|'offer'|'decision'|'completed'
    player_case: int
    opened_cases: List[OpenedCase]
    remaining_case_numbers: List[int]
    current_round: int
    cases_to_open_this_round: int
    banker_offer: Optional[int] = None
    final_choice: bool
    buy_in: int
    difficulty: str
    banker_personality: str
    commitment: str
    created_at: datetime
    # 結束後才公開
    decision: Optional[str] = None
    accepted_offer: Optional[int] = None
    final_value: Optional[int] = None
    payout: Optional[int] = None
    balance_after: Optional[int] = None
    credit_status: Optional[str] = None
    case_values: Optional[List[int]] = None
    completed_at: Optional[datetime] = None


class HistoryResp(BaseModel):
    items: List[Dict[str, Any]]
