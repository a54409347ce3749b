# -*- coding: utf-8 -*-
"""文本分段引擎 - 按朗读语速把脚本切分为定时片段

完全是算术运算，不调用任何远程服务：给定脚本和目标时长，场景数量是确定的。
"""
import re
from typing import List

from models import TextFragment


DEFAULT_WORDS_PER_SECOND = 2.5
MIN_FRAGMENT_DURATION = 4.0

# 句末标点，后面可以跟引号或右括号
_SENTENCE_END = re.compile(r"[.!?…]+[\"'”’)\]»]*$")


def split_sentences(script: str) -> List[str]:
    """按句子边界切分，换行同样视为句子边界

    以空白为单位处理单词，保证切分前后单词不丢失、不重复。
    """
    sentences: List[str] = []
    for line in script.splitlines():
        current: List[str] = []
        for word in line.split():
            current.append(word)
            if _SENTENCE_END.search(word):
                sentences.append(" ".join(current))
                current = []
        if current:
            sentences.append(" ".join(current))
    return sentences


def fragment_duration(word_count: int, words_per_second: float,
                      min_duration: float = MIN_FRAGMENT_DURATION) -> float:
    """根据实际单词数计算片段时长，下限为 min_duration"""
    return round(max(min_duration, word_count / words_per_second), 1)


def segment_script(script: str, scene_duration: float,
                   words_per_second: float = DEFAULT_WORDS_PER_SECOND,
                   min_duration: float = MIN_FRAGMENT_DURATION) -> List[TextFragment]:
    """把脚本切分为定时片段

    逐句累积时间缓冲，缓冲达到或超过目标时长时输出一个片段；片段时长使用
    实际累积的单词数计算（而不是名义目标时长），最后剩余部分单独成为一个片段。

    Args:
        script: 原始脚本
        scene_duration: 目标场景时长（秒）
        words_per_second: 朗读语速
        min_duration: 片段时长下限（秒）

    Returns:
        按顺序排列的 TextFragment 列表
    """
    if scene_duration <= 0:
        raise ValueError("scene_duration 必须大于 0")
    if words_per_second <= 0:
        raise ValueError("words_per_second 必须大于 0")

    fragments: List[TextFragment] = []
    buffer: List[str] = []
    buffer_words = 0
    position = 0

    def flush() -> None:
        nonlocal buffer, buffer_words, position
        fragments.append(TextFragment(
            text=" ".join(buffer),
            word_count=buffer_words,
            duration_sec=fragment_duration(buffer_words, words_per_second, min_duration),
            start_word=position,
            end_word=position + buffer_words
        ))
        position += buffer_words
        buffer = []
        buffer_words = 0

    for sentence in split_sentences(script):
        buffer.append(sentence)
        buffer_words += len(sentence.split())
        if buffer_words / words_per_second >= scene_duration:
            flush()

    if buffer:
        flush()

    return fragments
