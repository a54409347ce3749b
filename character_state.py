# -*- coding: utf-8 -*-
"""人物生死状态时间线

每个人物从第 0 个场景的 alive 开始，状态只能随场景向前更新，永不回滚。
死亡后的人物只有在显式标记为闪回时才能重新以非死亡状态出现。
"""
from typing import Dict, Iterable, List, Optional

from models import CharacterStateEntry, CharacterStatus


class CharacterStateTracker:
    """人物状态追踪器"""

    def __init__(self, character_ids: Iterable[str],
                 timeline: Optional[Dict[str, List[CharacterStateEntry]]] = None):
        self.timeline: Dict[str, List[CharacterStateEntry]] = {}
        for char_id in character_ids:
            entries = (timeline or {}).get(char_id)
            self.timeline[char_id] = list(entries) if entries else [CharacterStateEntry()]

    def apply(self, character_id: str, scene_index: int, status: CharacterStatus,
              note: str = "", flashback: bool = False) -> bool:
        """记录一次状态转换

        Returns:
            是否被记录（未知人物、时间倒退、无变化、死而复生都会被拒绝）
        """
        entries = self.timeline.get(character_id)
        if entries is None:
            print(f"[WARN] 状态变化引用了未知人物 {character_id}，已忽略")
            return False

        current = entries[-1]
        if scene_index < current.changed_at_scene:
            return False
        if status == current.status:
            return False
        if current.status == CharacterStatus.DEAD and not flashback:
            print(f"[WARN] {character_id} 已在场景 {current.changed_at_scene} 死亡，"
                  f"忽略场景 {scene_index} 的 {status.value} 状态")
            return False

        entries.append(CharacterStateEntry(status=status, changed_at_scene=scene_index, note=note))
        return True

    def status_at(self, character_id: str, scene_index: int) -> CharacterStateEntry:
        """返回人物在指定场景时的状态"""
        entries = self.timeline.get(character_id) or [CharacterStateEntry()]
        result = entries[0]
        for entry in entries:
            if entry.changed_at_scene <= scene_index:
                result = entry
            else:
                break
        return result

    def current(self) -> Dict[str, CharacterStateEntry]:
        return {cid: entries[-1] for cid, entries in self.timeline.items()}

    def retain(self, character_ids: Iterable[str]) -> None:
        """审批后的人物集合：删除被移除的人物，为新增人物初始化状态"""
        keep = list(character_ids)
        self.timeline = {
            cid: self.timeline.get(cid) or [CharacterStateEntry()]
            for cid in keep
        }
