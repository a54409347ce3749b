# -*- coding: utf-8 -*-
"""Phase 4: 场景提示词合成模块 - LLM 驱动版本

每个 SceneSegment 调用一次远程服务，得到场景专属的表演、背景、镜头、音效和对白；
锁定的人物身份由本地"盖章"写入，远程服务永远不会改写外观描述。

发送的请求中不出现真实姓名，只有符号 ID 和外观描述；响应被接受后再把 ID 换回姓名。
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from character_state import CharacterStateTracker
from errors import ContentBlockedError, EmptyResponseError, ResponseParseError
from fallback import build_fallback_scene
from llm_client import LLMClient, MockLLMClient, user_message
from models import (
    ActionFlow, BackgroundLock, BLOCKED_MARKER, Camera, CharacterLock, CharacterPerformance,
    CharacterStateEntry, CharacterStatus, DialogueLine, FoleyAndAmbience, FullScenePrompt,
    SANITIZED_MARKER, SceneSegment, StoryAnalysis
)
from naming import mask_names, unmask_ids
from sanitization import NullSanitizationPolicy, SanitizationPolicy
from schemas import PerformancePayload, ScenePayload, parse_payload


# 建议镜头轮换，按场景序号取模
CAMERA_ROTATION = [
    "Wide establishing shot",
    "Medium shot",
    "Close-up",
    "Over-the-shoulder shot",
    "Low-angle shot",
    "High-angle shot",
    "Tracking shot",
    "Extreme close-up",
]


# ==================== Prompt 模板 ====================

SCENE_PROMPT = """TASK: SCENE PROMPT
You are a film director writing one shot of an {duration}-second video clip.
Era: {era}
Visual style (fixed for the whole film): {visual_style}

NARRATION (characters appear as ids):
{narration}

MAIN ACTION: {action_hint}

CHARACTERS IN THIS SCENE (appearance is locked, do not describe it again):
{character_list}

CHARACTER STATUS:
{status_list}

CAMERA: suggested shot is "{suggested_shot}".{framing_rule}

Rules:
- Refer to characters only by their ids (CHAR_A, CHAR_B ...).
- Give a performance for EVERY character listed above.
- Depict the narration faithfully, including its dramatic or violent moments.
- Dialogue is optional; only include lines a listed character would say in this moment.

Return JSON only, no markdown:
{{"character_performances": {{"CHAR_A": {{"position": "...", "orientation": "...", "pose": "...", "expression": "...",
"action_flow": {{"pre_action": "...", "main_action": "...", "post_action": "..."}}}}}},
"background_lock": {{"setting": "...", "scenery": "...", "lighting": "..."}},
"camera": {{"framing": "...", "angle": "...", "movement": "...", "focus": "..."}},
"foley_and_ambience": {{"ambience": ["..."], "fx": ["..."], "music": "..."}},
"dialogue": [{{"speaker": "CHAR_A", "language": "...", "line": "..."}}],
"action_summary": "...",
"lip_sync_director_note": "..."}}
"""


class ScenePromptSynthesizer:
    """场景提示词合成器 - 使用 LLM 按场景生成"""

    def __init__(self, llm_client: Optional[LLMClient] = None,
                 detector: Optional[SanitizationPolicy] = None,
                 max_retries: int = 2, retry_backoff: float = 1.5,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 max_tokens: int = 4096):
        """
        初始化场景合成器

        Args:
            llm_client: LLM 客户端实例，如果为 None 则使用 MockLLMClient
            detector: 净化检测策略，为 None 时不检测
            max_retries: 解析失败/空响应的最大重试次数
            retry_backoff: 退避基数（秒），第 n 次重试等待 retry_backoff * 2**n
            sleep: 可注入的等待函数
            max_tokens: 每次调用的 token 预算
        """
        self.llm_client = llm_client or MockLLMClient()
        self.detector = detector or NullSanitizationPolicy()
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.sleep = sleep
        self.max_tokens = max_tokens

    async def synthesize(self, segment: SceneSegment, index: int, analysis: StoryAnalysis,
                         previous: Optional[FullScenePrompt] = None,
                         enforce_framing_variety: bool = True,
                         tracker: Optional[CharacterStateTracker] = None) -> FullScenePrompt:
        """合成单个场景

        Args:
            segment: 已标注的场景片段
            index: 场景序号（从 0 开始）
            analysis: 冻结的故事分析
            previous: 上一个已接受的场景，用于镜头多样性和回退时的背景延续
            enforce_framing_variety: 是否要求不重复上一个场景的景别
            tracker: 人物状态追踪器，为 None 时使用 analysis.state_timeline

        Returns:
            FullScenePrompt；失败或被净化时返回带标记的本地回退场景

        Raises:
            AllKeysFailedError: 所有密钥耗尽，由编排器处理
        """
        prompt = self._build_prompt(segment, index, analysis, previous, enforce_framing_variety, tracker)
        scene_id = f"S{index + 1}"

        result: Optional[FullScenePrompt] = None
        for attempt in range(self.max_retries + 1):
            try:
                response = await self.llm_client.chat(user_message(prompt), temperature=0.7,
                                                      max_tokens=self.max_tokens)
                result = self._stamp(parse_payload(response, ScenePayload), segment, index, analysis)
                break
            except ContentBlockedError as e:
                print(f"[WARN] {scene_id} 被内容策略拦截：{e}")
                break
            except (ResponseParseError, EmptyResponseError) as e:
                if attempt < self.max_retries:
                    delay = self.retry_backoff * (2 ** attempt)
                    print(f"[RETRY] {scene_id} 第 {attempt + 1} 次失败（{e}），{delay:.1f}秒后重试...")
                    await self.sleep(delay)
                else:
                    print(f"[ERROR] {scene_id} 重试 {self.max_retries} 次后仍失败：{e}")

        if result is None:
            return build_fallback_scene(segment, index, analysis, previous, BLOCKED_MARKER)

        if self.detector.is_sanitized(segment.text, result):
            return build_fallback_scene(segment, index, analysis, previous, SANITIZED_MARKER)

        return result

    # ==================== 请求构建 ====================

    def _build_prompt(self, segment: SceneSegment, index: int, analysis: StoryAnalysis,
                      previous: Optional[FullScenePrompt], enforce_framing_variety: bool,
                      tracker: Optional[CharacterStateTracker]) -> str:
        characters = analysis.characters

        character_list = "\n".join(
            f"- {char_id}: {characters[char_id].visual_descriptor()}"
            for char_id in segment.characters_present if char_id in characters
        ) or "- (no recurring characters on screen)"

        status_lines = []
        for char_id in segment.characters_present:
            entry = self._status_at(char_id, index, analysis, tracker)
            if entry.status != CharacterStatus.ALIVE:
                note = f" ({mask_names(entry.note, characters)})" if entry.note else ""
                status_lines.append(f"- {char_id} is {entry.status.value} since scene {entry.changed_at_scene + 1}{note}")
        for change in segment.state_changes:
            note = f" ({mask_names(change.note, characters)})" if change.note else ""
            status_lines.append(f"- {change.character_id} becomes {change.status.value} in this scene{note}")

        framing_rule = ""
        if enforce_framing_variety and previous is not None and previous.camera.framing:
            framing_rule = f' Do not repeat the previous framing "{previous.camera.framing}".'

        return SCENE_PROMPT.format(
            duration=segment.duration_sec,
            era=analysis.era or "unspecified",
            visual_style=analysis.visual_style_lock,
            narration=mask_names(segment.text, characters),
            action_hint=mask_names(segment.action_hint, characters),
            character_list=character_list,
            status_list="\n".join(status_lines) or "- all present characters are alive and well",
            suggested_shot=CAMERA_ROTATION[index % len(CAMERA_ROTATION)],
            framing_rule=framing_rule
        )

    @staticmethod
    def _status_at(char_id: str, index: int, analysis: StoryAnalysis,
                   tracker: Optional[CharacterStateTracker]) -> CharacterStateEntry:
        if tracker is not None:
            return tracker.status_at(char_id, index)
        result = CharacterStateEntry()
        for entry in analysis.state_timeline.get(char_id, []):
            if entry.changed_at_scene > index:
                break
            result = entry
        return result

    # ==================== 身份盖章 ====================

    @staticmethod
    def _stamp(payload: ScenePayload, segment: SceneSegment, index: int,
               analysis: StoryAnalysis) -> FullScenePrompt:
        """把锁定身份与返回的表演合并，并把 ID 换回姓名

        Raises:
            ResponseParseError: 出场人物缺少表演数据
        """
        characters = analysis.characters

        def text(value: str) -> str:
            return unmask_ids(value, characters)

        character_lock: Dict[str, CharacterLock] = {}
        for char_id in segment.characters_present:
            identity = characters.get(char_id)
            if identity is None:
                continue
            performance: Optional[PerformancePayload] = payload.character_performances.get(char_id)
            if performance is None:
                raise ResponseParseError(f"缺少 {char_id} 的表演数据")
            flow = performance.action_flow
            character_lock[char_id] = CharacterLock(
                identity=identity,
                performance=CharacterPerformance(
                    position=text(performance.position),
                    orientation=text(performance.orientation),
                    pose=text(performance.pose),
                    expression=text(performance.expression),
                    action_flow=ActionFlow(
                        pre_action=text(flow.pre_action),
                        main_action=text(flow.main_action),
                        post_action=text(flow.post_action)
                    )
                )
            )

        dialogue: List[DialogueLine] = []
        for line in payload.dialogue:
            speaker = characters.get(line.speaker)
            dialogue.append(DialogueLine(
                speaker=line.speaker,
                voice=speaker.voice_personality if speaker else "",
                language=line.language,
                line=text(line.line)
            ))

        background = payload.background_lock
        camera = payload.camera
        foley = payload.foley_and_ambience
        return FullScenePrompt(
            scene_id=f"S{index + 1}",
            duration_sec=segment.duration_sec,
            visual_style=analysis.visual_style_lock,
            character_lock=character_lock,
            background_lock=BackgroundLock(
                setting=text(background.setting),
                scenery=text(background.scenery),
                lighting=text(background.lighting)
            ),
            camera=Camera(
                framing=camera.framing,
                angle=camera.angle,
                movement=camera.movement,
                focus=text(camera.focus)
            ),
            foley_and_ambience=FoleyAndAmbience(
                ambience=[text(a) for a in foley.ambience],
                fx=[text(f) for f in foley.fx],
                music=text(foley.music)
            ),
            dialogue=dialogue,
            action_summary=text(payload.action_summary),
            lip_sync_director_note=text(payload.lip_sync_director_note),
            source_text=segment.text
        )
