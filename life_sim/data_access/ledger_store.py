"""资金账本：追加式流水 + 每个用户的最新余额快照。

账本文档的逻辑结构::

    {
        "users": {user_id: {username, lastMoney, lastBank, updatedAt}},
        "movements": [{ts, userId, username, delta, money, bank, reason}, ...]
    }

流水只追加不修改，持久化时仅保留最近 ``max_movements`` 条。``reason`` 同时
充当幂等键：``credit_once`` 在任何已有流水携带相同 reason 时拒绝重复入账。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Set

from .document_store import DocumentStore
from .models import CreditResult, LedgerMovement, LedgerSnapshot, Progress
from .write_queue import DebouncedWriter

logger = logging.getLogger(__name__)

LEDGER_DOCUMENT_KEY = "ledger"


class BalanceAccounts(Protocol):
    """账本回写余额所需的协作方（由 ProfileStore 实现并绑定）。"""

    def ensure_progress(self, user_id: str) -> Progress: ...

    def add_money(self, user_id: str, delta: int, reason: str = "credit") -> Optional[int]: ...

    def username_for(self, user_id: str) -> Optional[str]: ...

    def schedule_persist(self) -> None: ...


class LedgerStore:
    """追加式资金流水与余额快照存储。"""

    def __init__(
        self,
        store: DocumentStore,
        *,
        key: str = LEDGER_DOCUMENT_KEY,
        max_movements: int = 20000,
        debounce_seconds: float = 0.2,
    ) -> None:
        self._store = store
        self._key = key
        self._max_movements = max_movements
        self._movements: List[LedgerMovement] = []
        self._snapshots: Dict[str, LedgerSnapshot] = {}
        self._reasons: Set[str] = set()
        self._accounts: Optional[BalanceAccounts] = None
        self._writer = DebouncedWriter(
            store, key, self.to_document, delay=debounce_seconds
        )

    def bind_accounts(self, accounts: BalanceAccounts) -> None:
        self._accounts = accounts

    @property
    def writer(self) -> DebouncedWriter:
        return self._writer

    async def load(self) -> None:
        document = await self._store.load(self._key)
        if not document:
            logger.info("Ledger document %s not found; starting empty", self._key)
            return
        self._snapshots = {
            str(user_id): LedgerSnapshot.model_validate(raw)
            for user_id, raw in (document.get("users") or {}).items()
            if isinstance(raw, dict)
        }
        movements: List[LedgerMovement] = []
        for raw in document.get("movements") or []:
            try:
                movements.append(LedgerMovement.model_validate(raw))
            except Exception:
                logger.warning("Skipping malformed ledger movement: %r", raw)
        self._movements = movements
        self._reasons = {movement.reason for movement in movements}
        logger.info(
            "Ledger loaded: %d users, %d movements",
            len(self._snapshots),
            len(self._movements),
        )

    def to_document(self) -> Dict[str, Any]:
        if len(self._movements) > self._max_movements:
            del self._movements[: len(self._movements) - self._max_movements]
            self._reasons = {movement.reason for movement in self._movements}
        return {
            "users": {
                user_id: snapshot.model_dump(mode="json", by_alias=True)
                for user_id, snapshot in self._snapshots.items()
            },
            "movements": [
                movement.model_dump(mode="json", by_alias=True)
                for movement in self._movements
            ],
        }

    def record_movement(
        self,
        user_id: Optional[str],
        username_hint: Optional[str],
        delta: int,
        new_money: int,
        new_bank: int,
        reason: str = "update",
    ) -> Optional[LedgerMovement]:
        """追加一条流水并覆盖该用户的快照；``user_id`` 为空时不做任何事。"""

        if not user_id:
            return None
        previous = self._snapshots.get(user_id)
        username = username_hint or (previous.username if previous else None)
        movement = LedgerMovement(
            user_id=user_id,
            username=username,
            delta=int(delta or 0),
            money=max(0, int(new_money or 0)),
            bank=max(0, int(new_bank or 0)),
            reason=reason or "update",
        )
        self._movements.append(movement)
        self._reasons.add(movement.reason)
        self._snapshots[user_id] = LedgerSnapshot(
            username=username,
            last_money=movement.money,
            last_bank=movement.bank,
            updated_at=movement.ts,
        )
        self._writer.schedule()
        return movement

    def has_reason(self, reason: str) -> bool:
        return reason in self._reasons

    def credit_once(self, user_id: str, delta: Any, reason_key: str) -> CreditResult:
        """按 reason_key 幂等入账：同一键至多生效一次。"""

        reason = str(reason_key or "credit:once")
        if self.has_reason(reason):
            return CreditResult(applied=False, duplicated=True)
        if not user_id or self._accounts is None:
            return CreditResult(applied=False)
        if isinstance(delta, bool) or not isinstance(delta, (int, float)):
            return CreditResult(applied=False)
        if int(delta) != delta or delta <= 0:
            return CreditResult(applied=False)
        money = self._accounts.add_money(user_id, int(delta), reason)
        if money is None:
            return CreditResult(applied=False)
        return CreditResult(applied=True, money=money)

    def latest_balance(self, user_id: str) -> Optional[Dict[str, int]]:
        snapshot = self._snapshots.get(user_id)
        if snapshot is None:
            return None
        return {"money": snapshot.last_money, "bank": snapshot.last_bank}

    def restore_from_snapshot(self, user_id: str) -> Optional[Dict[str, int]]:
        """把最新快照写回 Progress，并记录一条零额度的审计流水。"""

        snapshot = self._snapshots.get(user_id)
        if snapshot is None or self._accounts is None:
            return None
        progress = self._accounts.ensure_progress(user_id)
        progress.money = max(0, snapshot.last_money)
        progress.bank = max(0, snapshot.last_bank)
        self._accounts.schedule_persist()
        self.record_movement(
            user_id,
            self._accounts.username_for(user_id),
            0,
            progress.money,
            progress.bank,
            "login-restore",
        )
        return {"money": progress.money, "bank": progress.bank}

    def movements_for(self, user_id: str, limit: int = 50) -> List[LedgerMovement]:
        matches = [m for m in self._movements if m.user_id == user_id]
        if limit > 0:
            matches = matches[-limit:]
        return [m.model_copy() for m in matches]

    @property
    def movement_count(self) -> int:
        return len(self._movements)

    def schedule_persist(self) -> None:
        self._writer.schedule()

    async def flush(self) -> None:
        await self._writer.flush()

    async def close(self) -> None:
        await self._writer.close()


__all__ = ["BalanceAccounts", "LEDGER_DOCUMENT_KEY", "LedgerStore"]
