# -*- coding: utf-8 -*-
"""本地回退构建 - 不依赖远程服务构造场景提示词

当场景合成在重试后仍失败 ([BLOCKED])，或被净化检测标记 ([SANITIZED]) 时使用。
沿用上一个已接受场景的背景和镜头以保持视觉连续性，并在动作摘要前加上标记，
方便人工审阅时定位和修正。
"""
import copy
from typing import Dict, Optional

from models import (
    ActionFlow, BackgroundLock, BLOCKED_MARKER, Camera, CharacterLock, CharacterPerformance,
    FoleyAndAmbience, FullScenePrompt, SceneSegment, StoryAnalysis
)
from naming import unmask_ids


def default_background(era: str) -> BackgroundLock:
    return BackgroundLock(
        setting=f"Location consistent with the story era ({era})" if era else "Location consistent with the story",
        scenery="Period-accurate environment matching the narration",
        lighting="Natural, motivated lighting"
    )


def default_camera() -> Camera:
    return Camera(
        framing="Medium shot",
        angle="Eye-level",
        movement="Slow push-in",
        focus="Subject in focus, soft background"
    )


def placeholder_performance(action_hint: str) -> CharacterPerformance:
    """由动作提示生成的通用表演占位"""
    return CharacterPerformance(
        position="Center of frame",
        orientation="Facing the action",
        pose=f"Body engaged in: {action_hint}",
        expression="Emotion matching the narration",
        action_flow=ActionFlow(
            pre_action="Prepares for the moment",
            main_action=action_hint,
            post_action="Holds the final beat"
        )
    )


def build_fallback_scene(segment: SceneSegment, index: int, analysis: StoryAnalysis,
                         previous: Optional[FullScenePrompt] = None,
                         marker: str = BLOCKED_MARKER) -> FullScenePrompt:
    """构造本地回退场景

    Args:
        segment: 场景片段
        index: 场景序号（从 0 开始）
        analysis: 冻结的故事分析
        previous: 上一个已接受的场景，为 None 时使用通用默认值
        marker: [BLOCKED] 或 [SANITIZED]
    """
    action_hint = unmask_ids(segment.action_hint, analysis.characters)

    character_lock: Dict[str, CharacterLock] = {}
    for char_id in segment.characters_present:
        identity = analysis.characters.get(char_id)
        if identity is None:
            continue
        character_lock[char_id] = CharacterLock(
            identity=identity,
            performance=placeholder_performance(action_hint)
        )

    if previous is not None:
        background = copy.deepcopy(previous.background_lock)
        camera = copy.deepcopy(previous.camera)
    else:
        background = default_background(analysis.era)
        camera = default_camera()

    print(f"[WARN] S{index + 1} 使用本地回退构建 {marker}")
    return FullScenePrompt(
        scene_id=f"S{index + 1}",
        duration_sec=segment.duration_sec,
        visual_style=analysis.visual_style_lock,
        character_lock=character_lock,
        background_lock=background,
        camera=camera,
        foley_and_ambience=FoleyAndAmbience(),
        dialogue=[],
        action_summary=f"{marker} {action_hint}",
        lip_sync_director_note="",
        source_text=segment.text
    )
