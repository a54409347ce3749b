# -*- coding: utf-8 -*-
"""人物姓名与符号 ID 之间的替换

发送给远程服务的场景请求中不出现真实姓名（以减少针对历史人物的内容策略），
只在响应被接受之后才把符号 ID 换回真实姓名。
"""
import re
from typing import Dict, List, Tuple

from models import CharacterIdentity


_CHARACTER_ID = re.compile(r"\bCHAR_[A-Z]{1,2}\b")


def _name_patterns(characters: Dict[str, CharacterIdentity]) -> List[Tuple[re.Pattern, str]]:
    """全名优先，其次是长度大于 3 的首字母大写的姓名部分"""
    full: List[Tuple[str, str]] = []
    parts: List[Tuple[str, str]] = []
    for char_id, identity in characters.items():
        name = identity.name.strip()
        if not name:
            continue
        full.append((name, char_id))
        tokens = name.split()
        if len(tokens) > 1:
            for token in tokens:
                if len(token) > 3 and token[0].isupper():
                    parts.append((token, char_id))

    ordered = sorted(full, key=lambda item: -len(item[0])) + sorted(parts, key=lambda item: -len(item[0]))
    return [
        (re.compile(r"(?<!\w)" + re.escape(text) + r"(?!\w)", re.IGNORECASE), char_id)
        for text, char_id in ordered
    ]


def mask_names(text: str, characters: Dict[str, CharacterIdentity]) -> str:
    """把文本中的人物姓名替换为符号 ID"""
    for pattern, char_id in _name_patterns(characters):
        text = pattern.sub(char_id, text)
    return text


def unmask_ids(text: str, characters: Dict[str, CharacterIdentity]) -> str:
    """把文本中的符号 ID 替换回真实姓名，未知 ID 保持原样"""
    def replace(match: re.Match) -> str:
        identity = characters.get(match.group(0))
        return identity.name if identity else match.group(0)

    return _CHARACTER_ID.sub(replace, text)
