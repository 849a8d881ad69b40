"""
Phase transitions for a round.

All phase checks go through `transition`; handlers never compare phase strings
themselves. A rejected event raises PhaseConflictError and the input round is
returned to the caller untouched.
"""
from enum import Enum
from typing import Callable, Dict, Tuple

from .errors import PhaseConflictError
from .models import Phase, Round


class Event(str, Enum):
    open_case = "open_case"
    quota_met = "quota_met"
    offer_made = "offer_made"
    no_deal = "no_deal"
    final_round = "final_round"
    deal = "deal"
    reveal = "reveal"


TRANSITIONS: Dict[Tuple[Phase, Event], Phase] = {
    (Phase.opening, Event.open_case): Phase.opening,
    (Phase.opening, Event.quota_met): Phase.offer,
    (Phase.offer, Event.offer_made): Phase.decision,
    (Phase.decision, Event.no_deal): Phase.opening,
    (Phase.decision, Event.final_round): Phase.decision,
    (Phase.decision, Event.deal): Phase.completed,
    (Phase.decision, Event.reveal): Phase.completed,
}

# 兩箱以下（玩家箱 + 1）只能成交或開自己的箱
GUARDS: Dict[Event, Tuple[Callable[[Round], bool], str]] = {
    Event.no_deal: (lambda r: r.live_cases > 2, "only the final case choice remains"),
    Event.final_round: (lambda r: r.live_cases <= 2 and not r.final_choice, "final case choice already started"),
    Event.reveal: (lambda r: r.live_cases <= 2, "cases remain to be opened"),
    Event.deal: (lambda r: r.banker_offer is not None, "no banker offer on the table"),
}


def transition(round: Round, event: Event) -> Round:
    nxt = TRANSITIONS.get((round.phase, event))
    if nxt is None:
        raise PhaseConflictError(
            f"cannot {event.value} in {round.phase.value} phase",
            round_id=round.id, owner_id=round.owner_id,
        )
    guard = GUARDS.get(event)
    if guard is not None and not guard[0](round):
        raise PhaseConflictError(guard[1], round_id=round.id, owner_id=round.owner_id)
    return round.model_copy(update={"phase": nxt})
