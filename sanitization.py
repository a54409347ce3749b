# -*- coding: utf-8 -*-
"""净化检测策略

远程服务有时会在不报错的情况下把血腥、暴力、死亡的内容悄悄替换成平和的画面
（例如把"燃烧的城市"写成"安静的工坊"）。检测策略是可替换的接口，默认实现是
基于关键词的启发式规则，只是尽力而为的保护，不是证明。
"""
import re
from typing import Iterable, List, Optional

from models import FullScenePrompt


# 正则片段，整词匹配（burn -> burning / burned，但不匹配 warm 之类的词）
SEVERITY_KEYWORDS = (
    # English
    r"burn(?:s|ed|ing|t)?", r"fires?", r"flames?", r"blaz(?:e|es|ed|ing)", r"blood\w*", r"bleed\w*",
    r"kill\w*", r"murder\w*", r"slaughter\w*", r"massacre\w*", r"execut\w*", r"behead\w*",
    r"dead", r"death\w*", r"die(?:s|d)?", r"dying", r"corpses?", r"wars?", r"battle\w*",
    r"attack\w*", r"stab(?:s|bed|bing)?", r"wound\w*", r"scream\w*", r"tortur\w*", r"hanged",
    r"strangl\w*", r"poison\w*", r"drown\w*", r"sieges?", r"plague\w*", r"famine\w*",
    r"riot\w*", r"violen\w*", r"agony", r"crucif\w*", r"destroy\w*",
    # Español
    r"quem\w*", r"incendi\w*", r"fuego\w*", r"llamas", r"sangr\w*",
    r"mat(?:ar|ó|aron|an|ando|ado|ados)", r"asesin\w*", r"muert\w*", r"muri\w*", r"cad[aá]ver\w*",
    r"guerra\w*", r"batalla\w*", r"herid\w*", r"grit(?:o|os|ar|aba|aron)", r"envenen\w*",
    r"ahorc\w*", r"ahog\w*", r"asedio\w*", r"peste", r"hambruna", r"destru\w*",
)

MUNDANE_KEYWORDS = (
    # English
    r"workshops?", r"calm\w*", r"peaceful\w*", r"seren\w*", r"quiet\w*", r"tranquil\w*",
    r"relax\w*", r"gentl\w*", r"observ\w*", r"contemplat\w*", r"stud(?:y|ies|ying)",
    r"reading", r"writing", r"librar\w*", r"offices?", r"gardens?", r"smil\w*", r"chatting",
    r"conversation\w*", r"workbench\w*", r"crafting", r"tinker\w*", r"sunny", r"idyllic",
    # Español
    r"taller(?:es)?", r"pac[ií]fic\w*", r"observa\w*", r"contempla\w*", r"estudi\w*",
    r"biblioteca\w*", r"oficina\w*", r"jard[ií]n\w*", r"sonri\w*", r"charla\w*",
)


def _compile(patterns: Iterable[str]) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(patterns) + r")\b", re.IGNORECASE)


class SanitizationPolicy:
    """净化检测策略接口 - 可替换为更强的分类器"""

    def is_sanitized(self, narration: str, prompt: FullScenePrompt) -> bool:
        raise NotImplementedError("子类必须实现 is_sanitized 方法")


class NullSanitizationPolicy(SanitizationPolicy):
    """从不标记"""

    def is_sanitized(self, narration: str, prompt: FullScenePrompt) -> bool:
        return False


class KeywordSanitizationDetector(SanitizationPolicy):
    """关键词启发式检测

    旁白包含严重性词汇，而合成结果的场景/动作摘要却是平和画面且不含任何
    严重性词汇时，判定为被净化。
    """

    def __init__(self, severity_keywords: Optional[Iterable[str]] = None,
                 mundane_keywords: Optional[Iterable[str]] = None):
        self._severity = _compile(severity_keywords or SEVERITY_KEYWORDS)
        self._mundane = _compile(mundane_keywords or MUNDANE_KEYWORDS)

    def severity_terms(self, text: str) -> List[str]:
        return [m.group(0).lower() for m in self._severity.finditer(text or "")]

    def mundane_terms(self, text: str) -> List[str]:
        return [m.group(0).lower() for m in self._mundane.finditer(text or "")]

    def is_sanitized(self, narration: str, prompt: FullScenePrompt) -> bool:
        if not self.severity_terms(narration):
            return False

        output = " ".join([
            prompt.background_lock.setting,
            prompt.background_lock.scenery,
            prompt.action_summary,
        ])
        if self.severity_terms(output):
            return False

        mundane = self.mundane_terms(output)
        if mundane:
            print(f"[WARN] {prompt.scene_id} 疑似被净化：旁白含 {self.severity_terms(narration)[:3]}，"
                  f"画面却是 {mundane[:3]}")
            return True
        return False
