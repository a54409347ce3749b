# -*- coding: utf-8 -*-
"""Phase 2: 人物身份提取引擎 - 两轮 LLM 调用

第一轮只提取反复出现的人物名单与年代；第二轮为名单中的每个人物生成一套
完整、自洽的视觉身份，并分配稳定的符号 ID (CHAR_A, CHAR_B, ...)。
两轮严格顺序执行，任何一轮解析失败都直接抛出：身份是之后所有场景的锚点。
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from llm_client import LLMClient, MockLLMClient, user_message
from models import CharacterIdentity, RecurringCharacter
from schemas import NamePassPayload, VisualPassPayload, parse_payload


# ==================== Prompt 模板 ====================

NAME_PASS_PROMPT = """TASK: RECURRING CHARACTER LIST
You are a casting director preparing a narrated video. Read the narration script below.

List ONLY the recurring characters: people (or creatures) who appear or act in at least 2 different moments of the script.
Do NOT list anonymous or one-off figures (crowds, "a soldier", "a merchant", messengers, passers-by).
Order the list by importance, most important first. Give each one a short role tag (protagonist, antagonist, ally, mentor, ...).
Also state the historical era / setting of the story in a few words.

Return JSON only, no markdown:
{{"characters": [{{"name": "Full Name", "role": "protagonist"}}], "era": "Late Roman Republic, 1st century BC"}}

SCRIPT:
{script}
"""

VISUAL_PASS_PROMPT = """TASK: VISUAL IDENTITY LOCK
ERA / SETTING: {era}

CHARACTERS (ordered by importance):
{character_list}

Invent ONE complete, era-accurate and internally consistent visual identity for each character above.
These identities will be copied verbatim into every scene, so be concrete and short (5-10 words per field).
Assign ids in the SAME order: the first character is CHAR_A, the second CHAR_B, and so on.

Return JSON only, no markdown:
{{"characters": {{"CHAR_A": {{"name": "Full Name", "species": "Human", "gender": "male", "age": "40s",
"body_build": "lean, tall", "face_shape": "long, hawk nose", "hair": "short receding brown",
"facial_hair": "none", "skin_or_fur_color": "olive", "eye_color": "dark brown",
"signature_feature": "thin scar on left cheek", "outfit_top": "white wool tunic with purple border",
"outfit_bottom": "knee-length tunic hem", "helmet_or_hat": "none", "shoes_or_footwear": "leather sandals",
"accessories": "gold signet ring", "texture_detail": "coarse wool, worn leather",
"material_reference": "wool, leather, gold", "voice_personality": "deep, measured, authoritative"}}}}}}
"""


@dataclass
class IdentityExtraction:
    """身份提取结果"""
    characters: Dict[str, CharacterIdentity]
    era: str
    recurring: List[RecurringCharacter] = field(default_factory=list)


def _id_sort_key(char_id: str) -> Tuple[int, str]:
    suffix = char_id.split("_", 1)[1]
    return len(suffix), suffix


class IdentityExtractor:
    """人物身份提取器 - 使用 LLM 进行两轮提取"""

    def __init__(self, llm_client: Optional[LLMClient] = None,
                 max_script_chars: int = 60000, max_tokens: int = 4096):
        """
        初始化身份提取器

        Args:
            llm_client: LLM 客户端实例，如果为 None 则使用 MockLLMClient
            max_script_chars: 名单提取时发送的脚本最大字符数
            max_tokens: 每次调用的 token 预算
        """
        self.llm_client = llm_client or MockLLMClient()
        self.max_script_chars = max_script_chars
        self.max_tokens = max_tokens

    async def extract(self, script: str) -> IdentityExtraction:
        """执行两轮提取"""
        recurring, era = await self.extract_recurring(script)
        print(f"[INFO] 识别到 {len(recurring)} 个反复出现的人物，年代：{era}")

        if not recurring:
            return IdentityExtraction(characters={}, era=era, recurring=[])

        characters = await self.extract_identities(recurring, era)
        print(f"[OK] 已锁定 {len(characters)} 个人物身份：{', '.join(characters)}")
        return IdentityExtraction(characters=characters, era=era, recurring=recurring)

    async def extract_recurring(self, script: str) -> Tuple[List[RecurringCharacter], str]:
        """第一轮：反复出现的人物名单 + 年代"""
        prompt = NAME_PASS_PROMPT.format(script=script[:self.max_script_chars])
        response = await self.llm_client.chat(user_message(prompt), temperature=0.3,
                                              max_tokens=self.max_tokens)
        payload = parse_payload(response, NamePassPayload)

        recurring: List[RecurringCharacter] = []
        seen = set()
        for item in payload.characters:
            key = item.name.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            recurring.append(RecurringCharacter(name=item.name.strip(), role=item.role.strip()))
        return recurring, payload.era.strip()

    async def extract_identities(self, recurring: List[RecurringCharacter],
                                 era: str) -> Dict[str, CharacterIdentity]:
        """第二轮：为每个人物生成锁定的视觉身份"""
        character_list = "\n".join(
            f"{i + 1}. {c.name}" + (f" ({c.role})" if c.role else "")
            for i, c in enumerate(recurring)
        )
        prompt = VISUAL_PASS_PROMPT.format(era=era, character_list=character_list)
        response = await self.llm_client.chat(user_message(prompt), temperature=0.7,
                                              max_tokens=self.max_tokens)
        payload = parse_payload(response, VisualPassPayload)

        characters: Dict[str, CharacterIdentity] = {}
        for char_id in sorted(payload.characters, key=_id_sort_key):
            identity = payload.characters[char_id]
            characters[char_id] = CharacterIdentity.from_dict(identity.model_dump())
        return characters
