"""内存中的在线世界：玩家/代理表与快照组装。"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional

from ..data_access.models import LivePlayer, Progress, dump_structure
from ..data_access.treasury import GovernmentTreasury
from ..data_access.world_registry import WorldRegistry

logger = logging.getLogger(__name__)


class LiveWorld:
    """在线玩家与服务器代理的唯一内存表，按 id 索引。"""

    def __init__(self, registry: WorldRegistry, treasury: GovernmentTreasury) -> None:
        self._registry = registry
        self._treasury = treasury
        self.players: Dict[str, LivePlayer] = {}

    def __contains__(self, player_id: object) -> bool:
        return player_id in self.players

    def __iter__(self) -> Iterator[LivePlayer]:
        return iter(list(self.players.values()))

    def __len__(self) -> int:
        return len(self.players)

    def get(self, player_id: Optional[str]) -> Optional[LivePlayer]:
        if player_id is None:
            return None
        return self.players.get(player_id)

    def add(self, player: LivePlayer) -> LivePlayer:
        self.players[player.id] = player
        return player

    def remove(self, player_id: str) -> Optional[LivePlayer]:
        return self.players.pop(player_id, None)

    def humans(self) -> List[LivePlayer]:
        return [p for p in self.players.values() if not p.is_bot]

    def bots(self) -> List[LivePlayer]:
        return [p for p in self.players.values() if p.is_bot]

    def find_by_name(self, name: Optional[str]) -> Optional[LivePlayer]:
        """按显示名（不区分大小写）解析玩家，用于私聊的 ``toName``。"""

        if not name:
            return None
        wanted = name.strip().lower()
        for player in self.players.values():
            if player.code.strip().lower() == wanted:
                return player
        return None

    @staticmethod
    def sync_from_progress(player: LivePlayer, progress: Progress) -> None:
        player.money = progress.money
        player.bank = progress.bank
        player.vehicle = progress.vehicle
        player.state = progress.state
        player.spouse_id = progress.spouse_id

    def snapshot(self) -> Dict[str, Any]:
        """广播给所有连接的完整世界状态。"""

        return {
            "players": [p.as_public_dict() for p in self.players.values()],
            "shops": [dump_structure(s) for s in self._registry.all_shops()],
            "houses": [dump_structure(h) for h in self._registry.houses()],
            "government": self._treasury.snapshot(),
        }


__all__ = ["LiveWorld"]
