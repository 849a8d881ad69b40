# deal/fairness.py
import hashlib
import hmac
import json
from typing import Any, Dict, Sequence

SIGNED_FIELDS = ("round_id", "owner_id", "bet_amount", "payout", "result")


def canonical(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def sign(data: Dict[str, Any], secret: str) -> str:
    if not secret:
        raise RuntimeError("fairness secret not configured")
    return hmac.new(secret.encode(), canonical(data), hashlib.sha256).hexdigest()


def outcome_payload(round_id: str, owner_id: int, bet_amount: int, payout: int, result: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "round_id": round_id,
        "owner_id": owner_id,
        "bet_amount": bet_amount,
        "payout": payout,
        "result": result,
    }


def sign_outcome(round_id: str, owner_id: int, bet_amount: int, payout: int, result: Dict[str, Any], secret: str) -> str:
    return sign(outcome_payload(round_id, owner_id, bet_amount, payout, result), secret)


def verify_outcome(record, secret: str) -> bool:
    """record: OutcomeRecord or a dict with the same fields (e.g. a row read back from deal_outcomes)."""
    data = record if isinstance(record, dict) else record.model_dump(mode="json")
    expected = sign({k: data[k] for k in SIGNED_FIELDS}, secret)
    return hmac.compare_digest(expected, str(data.get("signature", "")))


# 開局時先給玩家一個承諾值，結束時公開整個佈局就能對照
def commit_layout(round_id: str, player_case: int, case_values: Sequence[float], secret: str) -> str:
    return sign({"round_id": round_id, "player_case": player_case, "case_values": list(case_values)}, secret)


def verify_commitment(round_id: str, player_case: int, case_values: Sequence[float], commitment: str, secret: str) -> bool:
    return hmac.compare_digest(commit_layout(round_id, player_case, case_values, secret), commitment)
