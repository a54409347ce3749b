# -*- coding: utf-8 -*-
"""进度快照持久化

每个场景（或并行批次）完成后保存一次，中断后可以从快照继续。
写入先落到临时文件再替换，进程中途退出不会留下半个 JSON。
"""
import json
import os
from datetime import datetime
from typing import Optional

from models import ProjectSnapshot


class SnapshotStore:
    """单文件快照存储"""

    def __init__(self, file_path: str = ".progress_snapshot.json"):
        self.file_path = file_path

    def save(self, snapshot: ProjectSnapshot) -> bool:
        """保存快照

        同一次运行中 next_index 只能前进：比已保存快照更旧的写入会被忽略。

        Returns:
            是否实际写入
        """
        existing = self.load()
        if existing is not None and existing.run_id == snapshot.run_id \
                and existing.next_index > snapshot.next_index:
            print(f"[WARN] 忽略过期快照：next_index {snapshot.next_index} < {existing.next_index}")
            return False

        snapshot.saved_at = datetime.now().isoformat(timespec="seconds")
        directory = os.path.dirname(os.path.abspath(self.file_path))
        os.makedirs(directory, exist_ok=True)

        tmp_path = self.file_path + ".tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(snapshot.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.file_path)
        return True

    def load(self) -> Optional[ProjectSnapshot]:
        """读取快照，文件不存在时返回 None"""
        if not os.path.exists(self.file_path):
            return None

        with open(self.file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return ProjectSnapshot.from_dict(data)

    def clear(self) -> None:
        if os.path.exists(self.file_path):
            os.remove(self.file_path)
            print(f"[SAVE] 已删除快照：{self.file_path}")
