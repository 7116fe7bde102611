# billing_db.py
from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import uuid4

from app.core.log import log_evt
from db_supabase import get_supabase, now_iso

logger = logging.getLogger("billing")

PAYMENTS_TABLE = "payments_v2"

# Debits of one user go one at a time: read balance, compare, insert.
# An entry lives only while a debit holds or awaits the lock.
_user_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()


class InsufficientFundsError(RuntimeError):
    def __init__(self, *, telegram_id: int, balance: int, required: int):
        super().__init__(f"Insufficient balance: have {balance}, need {required}")
        self.telegram_id = telegram_id
        self.balance = balance
        self.required = required


@dataclass(frozen=True)
class DebitResult:
    success: bool
    new_balance: int
    reason: Optional[str] = None
    transaction_id: Optional[str] = None
    duplicate: bool = False


def _user_lock(telegram_id: int) -> asyncio.Lock:
    lock = _user_locks.get(telegram_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[telegram_id] = lock
    return lock


def _inv_id(reason: str, ref_id: str) -> str:
    return f"{reason}:{ref_id}"


def get_balance(telegram_id: int) -> int:
    """Stars balance: COMPLETED income minus COMPLETED outcome (rpc get_user_balance)."""
    sb = get_supabase()
    r = sb.rpc("get_user_balance", {"user_telegram_id": str(telegram_id)}).execute()
    data = getattr(r, "data", None)
    if isinstance(data, list):
        data = data[0] if data else 0
    if isinstance(data, dict):
        data = data.get("get_user_balance") or data.get("balance") or 0
    try:
        return int(data or 0)
    except Exception:
        return 0


def ledger_ref_exists(*, reason: str, ref_id: str) -> bool:
    """Проверка идемпотентности: уже есть завершённое списание по (reason, ref_id)."""
    sb = get_supabase()
    r = (
        sb.table(PAYMENTS_TABLE)
        .select("id")
        .eq("inv_id", _inv_id(reason, ref_id))
        .eq("status", "COMPLETED")
        .limit(1)
        .execute()
    )
    return bool(getattr(r, "data", None))


def _completed_ref_rows(*, reason: str, ref_id: str) -> List[str]:
    sb = get_supabase()
    r = (
        sb.table(PAYMENTS_TABLE)
        .select("id")
        .eq("inv_id", _inv_id(reason, ref_id))
        .eq("status", "COMPLETED")
        .execute()
    )
    return [str(row.get("id")) for row in (getattr(r, "data", None) or [])]


def _set_payment_status(tx_id: str, status: str) -> None:
    sb = get_supabase()
    sb.table(PAYMENTS_TABLE).update({"status": status}).eq("id", tx_id).execute()


def _insert_payment(
    *,
    telegram_id: int,
    stars: int,
    op_type: str,
    status: str,
    reason: str,
    ref_id: str,
    bot_name: str,
    service_type: str,
    description: str,
    meta: Optional[Dict[str, Any]],
) -> str:
    sb = get_supabase()
    tx_id = str(uuid4())
    sb.table(PAYMENTS_TABLE).insert(
        {
            "id": tx_id,
            "telegram_id": str(telegram_id),
            "bot_name": bot_name,
            "amount": int(stars),
            "stars": int(stars),
            "currency": "STARS",
            "status": status,
            "type": op_type,
            "payment_method": "System",
            "service_type": service_type,
            "description": description,
            "inv_id": _inv_id(reason, ref_id),
            "metadata": {"ref_id": ref_id, "reason": reason, **(meta or {})},
            "payment_date": now_iso(),
        }
    ).execute()
    return tx_id


async def debit(
    telegram_id: int,
    amount: int,
    *,
    reason: str,
    ref_id: str,
    bot_name: str,
    service_type: str = "text_to_video",
    description: str = "",
    meta: Optional[Dict[str, Any]] = None,
) -> DebitResult:
    """
    Списание звёзд. Никогда не уводит баланс в минус.
    Повтор с тем же (reason, ref_id) ничего не пишет и возвращает duplicate=True.
    """
    stars = int(amount)
    if stars <= 0:
        raise ValueError("debit amount must be > 0")
    uid = int(telegram_id)

    async with _user_lock(uid):
        if await asyncio.to_thread(ledger_ref_exists, reason=reason, ref_id=ref_id):
            bal = await asyncio.to_thread(get_balance, uid)
            log_evt(logger, "DEBIT_DUPLICATE", telegram_id=uid, ref_id=ref_id, reason=reason)
            return DebitResult(success=True, new_balance=bal, reason="duplicate", duplicate=True)

        bal = await asyncio.to_thread(get_balance, uid)
        if stars > bal:
            log_evt(
                logger,
                "DEBIT_INSUFFICIENT",
                level=logging.WARNING,
                telegram_id=uid,
                ref_id=ref_id,
                balance=bal,
                required=stars,
            )
            return DebitResult(success=False, new_balance=bal, reason="insufficient_funds")

        tx_id = await asyncio.to_thread(
            _insert_payment,
            telegram_id=uid,
            stars=stars,
            op_type="MONEY_OUTCOME",
            status="COMPLETED",
            reason=reason,
            ref_id=ref_id,
            bot_name=bot_name,
            service_type=service_type,
            description=description or f"{service_type} ({reason})",
            meta=meta,
        )
        # the lock covers this process only; re-check what landed in the ledger
        others = [i for i in await asyncio.to_thread(_completed_ref_rows, reason=reason, ref_id=ref_id) if i != tx_id]
        if others:
            await asyncio.to_thread(_set_payment_status, tx_id, "DUPLICATE")
            bal = await asyncio.to_thread(get_balance, uid)
            log_evt(logger, "DEBIT_DUPLICATE", level=logging.WARNING, telegram_id=uid, ref_id=ref_id, reason=reason, reverted=tx_id)
            return DebitResult(success=True, new_balance=bal, reason="duplicate", duplicate=True)

        new_bal = await asyncio.to_thread(get_balance, uid)
        if new_bal < 0:
            await asyncio.to_thread(_set_payment_status, tx_id, "REVERTED")
            bal = await asyncio.to_thread(get_balance, uid)
            log_evt(
                logger,
                "DEBIT_OVERDRAW_REVERTED",
                level=logging.WARNING,
                telegram_id=uid,
                ref_id=ref_id,
                balance=bal,
                required=stars,
            )
            return DebitResult(success=False, new_balance=bal, reason="insufficient_funds")

        log_evt(logger, "DEBIT_OK", telegram_id=uid, ref_id=ref_id, stars=stars, new_balance=new_bal)
        return DebitResult(success=True, new_balance=new_bal, transaction_id=tx_id)


async def credit(
    telegram_id: int,
    amount: int,
    *,
    reason: str,
    ref_id: str,
    bot_name: str,
    description: str = "",
    meta: Optional[Dict[str, Any]] = None,
) -> str:
    stars = int(amount)
    if stars <= 0:
        raise ValueError("credit amount must be > 0")
    async with _user_lock(int(telegram_id)):
        return await asyncio.to_thread(
            _insert_payment,
            telegram_id=int(telegram_id),
            stars=stars,
            op_type="MONEY_INCOME",
            status="COMPLETED",
            reason=reason,
            ref_id=ref_id,
            bot_name=bot_name,
            service_type="balance",
            description=description or reason,
            meta=meta,
        )


def record_failed_settlement(
    *,
    telegram_id: int,
    stars: int,
    reason: str,
    ref_id: str,
    bot_name: str,
    service_type: str = "text_to_video",
    meta: Optional[Dict[str, Any]] = None,
) -> str:
    """Audit row for a generated asset that could not be paid for (not counted in balance)."""
    return _insert_payment(
        telegram_id=int(telegram_id),
        stars=max(int(stars), 0),
        op_type="MONEY_OUTCOME",
        status="FAILED",
        reason=reason,
        ref_id=ref_id,
        bot_name=bot_name,
        service_type=service_type,
        description=f"Unsettled {service_type}: insufficient balance",
        meta=meta,
    )


async def ensure_can_afford(telegram_id: int, stars: int) -> int:
    """Pre-flight check. Returns current balance or raises InsufficientFundsError."""
    bal = await asyncio.to_thread(get_balance, int(telegram_id))
    if int(stars) > bal:
        raise InsufficientFundsError(telegram_id=int(telegram_id), balance=bal, required=int(stars))
    return bal
