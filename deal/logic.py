# deal/logic.py
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Sequence, Tuple

# 案值以買入 1000 為基準；實際金額 = 值 * buy_in / 1000
BASE_BUY_IN = 1000

_CASUAL = (
    0.01, 1, 5, 10, 25, 50,
    75, 100, 200, 300, 400, 500,
)
_STANDARD = _CASUAL + (
    750, 1000, 2500, 5000, 7500, 10000,
)
_HIGHROLLER = _STANDARD + (
    25000, 50000, 75000, 100000, 200000, 500000,
    750000, 1000000,
)


@dataclass(frozen=True)
class DifficultyTier:
    name: str
    ladder: Tuple[float, ...]
    schedule: Tuple[int, ...]
    min_buy_in: int = 100
    max_buy_in: int = 100000

    @property
    def case_count(self) -> int:
        return len(self.ladder)

    @property
    def total_rounds(self) -> int:
        return len(self.schedule)


TIERS: Dict[str, DifficultyTier] = {
    "casual": DifficultyTier("casual", _CASUAL, (6, 3, 2, 1)),
    "standard": DifficultyTier("standard", _STANDARD, (6, 5, 4, 3, 2, 1)),
    "highroller": DifficultyTier("highroller", _HIGHROLLER, (6, 5, 4, 3, 2, 1, 1, 1, 1)),
}


def get_tier(name: str) -> DifficultyTier:
    tier = TIERS.get(name)
    if tier is None:
        raise KeyError(name)
    return tier


def scale_factor(buy_in: int) -> float:
    return buy_in / BASE_BUY_IN


def to_money(value: float, buy_in: int) -> int:
    # 顯示與派彩一律無條件捨去到整數，以 Decimal 計算不受浮點誤差影響
    return int(Decimal(str(value)) * buy_in // BASE_BUY_IN)


# ===== 發案 =====

def shuffle(values: Sequence[float], randbelow: Callable[[int], int] = secrets.randbelow) -> List[float]:
    """Fisher-Yates; randbelow(n) must return a uniform int in [0, n)."""
    out = list(values)
    for i in range(len(out) - 1, 0, -1):
        j = randbelow(i + 1)
        out[i], out[j] = out[j], out[i]
    return out


def generate_cases(tier: DifficultyTier, randbelow: Callable[[int], int] = secrets.randbelow) -> Tuple[List[float], int]:
    """
    回傳 (case_values, player_case)：
      case_values[n-1] 是第 n 號箱的值，為該難度獎金表的一個排列
      player_case 獨立均勻抽於 1..N
    """
    values = shuffle(tier.ladder, randbelow)
    player_case = randbelow(tier.case_count) + 1
    return values, player_case


# ===== 每輪開箱數 =====

def cases_to_open(tier: DifficultyTier, round_index: int) -> int:
    schedule = tier.schedule
    return schedule[min(max(round_index, 0), len(schedule) - 1)]


def round_quota(tier: DifficultyTier, round_index: int, unopened_others: int) -> int:
    """
    本輪實際要開的箱數：照表，但至少留一個非玩家箱不開。
    unopened_others <= 1 時已進入最後抉擇，回傳 0。
    """
    if unopened_others <= 1:
        return 0
    return max(1, min(cases_to_open(tier, round_index), unopened_others - 1))
