# -*- coding: utf-8 -*-
"""Phase 3: 场景标注模块 - 批量 LLM 标注

按固定大小的批次（而不是逐条）请求远程服务，为每个片段标注出场人物、
简短的动作提示以及人物状态变化。单个批次失败时，该批次的片段使用安全的
默认标注，整个运行不会中断。
"""
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from character_state import CharacterStateTracker
from errors import ContentBlockedError, EmptyResponseError, ResponseParseError
from llm_client import LLMClient, MockLLMClient, user_message
from models import CharacterIdentity, CharacterStatus, SceneSegment, StateChange, TextFragment
from schemas import AnnotationBatchPayload, SceneAnnotationPayload, parse_payload


DEFAULT_ACTION_HINT = "Figures react to the narrated events"


# ==================== Prompt 模板 ====================

ANNOTATION_PROMPT = """TASK: SCENE ANNOTATION
You are a script supervisor. Below are consecutive narration fragments, each one becomes a short video scene.

KNOWN CHARACTERS (use these ids only, never invent new ids):
{character_list}

For EVERY numbered fragment report:
1. characters_present: ids of the known characters physically visible in that fragment (may be empty)
2. action_hint: the main physical action to show, max 15 words
3. state_changes: only if a known character dies, is wounded, leaves / disappears, or recovers IN that fragment.
   status is one of alive, dead, wounded, absent. Set "flashback": true only when the fragment is a memory of the past.

FRAGMENTS:
{fragments}

Return JSON only, no markdown, one entry per fragment index:
{{"scenes": [{{"index": {first_index}, "characters_present": ["CHAR_A"], "action_hint": "rides through the gate",
"state_changes": [{{"character_id": "CHAR_A", "status": "wounded", "note": "arrow in the shoulder", "flashback": false}}]}}]}}
"""


class SceneAnnotator:
    """场景标注器 - 使用 LLM 批量标注"""

    def __init__(self, llm_client: Optional[LLMClient] = None, batch_size: int = 10,
                 max_tokens: int = 8192):
        """
        初始化场景标注器

        Args:
            llm_client: LLM 客户端实例，如果为 None 则使用 MockLLMClient
            batch_size: 每批次的片段数，限制单次请求和响应的大小
            max_tokens: 每次调用的 token 预算
        """
        if batch_size < 1:
            raise ValueError("batch_size 必须至少为 1")
        self.llm_client = llm_client or MockLLMClient()
        self.batch_size = batch_size
        self.max_tokens = max_tokens

    async def annotate(self, fragments: List[TextFragment], characters: Dict[str, CharacterIdentity],
                       tracker: Optional[CharacterStateTracker] = None,
                       before_batch: Optional[Callable[[], Awaitable[None]]] = None
                       ) -> Tuple[List[SceneSegment], CharacterStateTracker]:
        """标注所有片段

        Args:
            fragments: 分段器输出
            characters: 锁定的人物身份
            tracker: 人物状态追踪器，为 None 时新建
            before_batch: 每个批次开始前调用的检查点（用于取消/暂停）

        Returns:
            (按顺序排列的 SceneSegment 列表, 状态追踪器)
        """
        tracker = tracker or CharacterStateTracker(characters.keys())
        segments: List[SceneSegment] = []

        for offset in range(0, len(fragments), self.batch_size):
            if before_batch is not None:
                await before_batch()
            batch = fragments[offset:offset + self.batch_size]
            print(f"  → 标注片段 {offset + 1}-{offset + len(batch)} / {len(fragments)}")
            segments.extend(await self.annotate_batch(batch, offset, characters, tracker))

        return segments, tracker

    async def annotate_batch(self, batch: List[TextFragment], offset: int,
                             characters: Dict[str, CharacterIdentity],
                             tracker: CharacterStateTracker) -> List[SceneSegment]:
        """标注单个批次；解析失败或被拦截时使用默认标注"""
        prompt = self._build_prompt(batch, offset, characters)
        try:
            response = await self.llm_client.chat(user_message(prompt), temperature=0.3,
                                                  max_tokens=self.max_tokens)
            payload = parse_payload(response, AnnotationBatchPayload)
        except (ResponseParseError, EmptyResponseError, ContentBlockedError) as e:
            print(f"[WARN] 批次 {offset + 1}-{offset + len(batch)} 标注失败（{e}），使用默认标注")
            return [self._default_segment(fragment, characters) for fragment in batch]

        by_index: Dict[int, SceneAnnotationPayload] = {}
        for entry in payload.scenes:
            by_index.setdefault(entry.index, entry)

        segments = []
        for position, fragment in enumerate(batch):
            scene_index = offset + position
            entry = by_index.get(scene_index)
            if entry is None:
                print(f"[WARN] 片段 {scene_index} 缺少标注，使用默认标注")
                segments.append(self._default_segment(fragment, characters))
                continue
            segments.append(self._build_segment(fragment, scene_index, entry, characters, tracker))
        return segments

    def _build_segment(self, fragment: TextFragment, scene_index: int,
                       entry: SceneAnnotationPayload, characters: Dict[str, CharacterIdentity],
                       tracker: CharacterStateTracker) -> SceneSegment:
        present: List[str] = []
        for char_id in entry.characters_present:
            if char_id not in characters:
                print(f"[WARN] 片段 {scene_index} 引用了未知人物 {char_id}，已忽略")
                continue
            if char_id not in present:
                present.append(char_id)

        changes: List[StateChange] = []
        for change in entry.state_changes:
            status = CharacterStatus(change.status)
            if tracker.apply(change.character_id, scene_index, status, change.note, change.flashback):
                changes.append(StateChange(
                    character_id=change.character_id,
                    status=status,
                    note=change.note,
                    flashback=change.flashback
                ))

        return SceneSegment.from_fragment(
            fragment,
            characters_present=present,
            action_hint=entry.action_hint.strip() or DEFAULT_ACTION_HINT,
            state_changes=changes
        )

    @staticmethod
    def _default_segment(fragment: TextFragment,
                         characters: Dict[str, CharacterIdentity]) -> SceneSegment:
        first = next(iter(characters), None)
        return SceneSegment.from_fragment(
            fragment,
            characters_present=[first] if first else [],
            action_hint=DEFAULT_ACTION_HINT
        )

    @staticmethod
    def _build_prompt(batch: List[TextFragment], offset: int,
                      characters: Dict[str, CharacterIdentity]) -> str:
        character_list = "\n".join(
            f"- {char_id} = {identity.name}" for char_id, identity in characters.items()
        ) or "- (none)"
        fragments = "\n".join(
            f"[{offset + i}] {fragment.text}" for i, fragment in enumerate(batch)
        )
        return ANNOTATION_PROMPT.format(
            character_list=character_list,
            fragments=fragments,
            first_index=offset
        )
