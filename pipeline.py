# -*- coding: utf-8 -*-
"""Phase 5: 流水线编排器

状态机：idle → analyzing → awaiting_approval → generating ⇄ paused → idle(complete|cancelled|error)

- analyzing: 分段 → 身份提取 → 批量标注，完成后把 (人物, 年代, 场景) 交给审批方
- awaiting_approval: 挂起直到审批方批准（可附带修改后的人物身份）或取消
- generating: 按场景合成提示词；配置了付费密钥时按批并发，否则顺序执行并按限速间隔等待
- paused: 在开始下一个场景/批次之前挂起，不会中断正在进行的远程调用

取消是协作式的：在下一个检查点（每个标注批次前、每个场景/批次前、暂停等待中）生效。
"""
import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from annotator import SceneAnnotator
from character_state import CharacterStateTracker
from config import PipelineConfig
from errors import GenerationCancelled, InvalidStateError
from extractor import IdentityExtractor
from llm_client import LLMClient
from models import (
    CharacterIdentity, FullScenePrompt, GenerationPhase, GenerationState, ProjectSnapshot,
    RunOutcome, StoryAnalysis
)
from sanitization import KeywordSanitizationDetector, SanitizationPolicy
from scene_generator import ScenePromptSynthesizer
from schemas import CHARACTER_ID_PATTERN, IdentityPayload
from segmenter import segment_script
from snapshot_store import SnapshotStore


DEFAULT_VISUAL_STYLE = "Cinematic realism, natural lighting, 35mm film look"

EditedCharacters = Mapping[str, Union[CharacterIdentity, Dict[str, Any]]]
ApprovalHandler = Callable[[StoryAnalysis], Awaitable[Optional[EditedCharacters]]]
ProgressCallback = Callable[[List[FullScenePrompt]], None]
StateCallback = Callable[[GenerationState], None]


@dataclass
class RunResult:
    """一次运行的结果"""
    outcome: RunOutcome
    prompts: List[FullScenePrompt] = field(default_factory=list)
    analysis: Optional[StoryAnalysis] = None


def validate_identities(characters: EditedCharacters) -> Dict[str, CharacterIdentity]:
    """校验审批方修改后的人物身份

    Raises:
        ValueError: 人物 ID 非法或身份字段不合法（pydantic ValidationError 也是 ValueError）
    """
    validated: Dict[str, CharacterIdentity] = {}
    for char_id, identity in characters.items():
        if not CHARACTER_ID_PATTERN.match(char_id):
            raise ValueError(f"非法的人物 ID：{char_id}")
        data = identity.to_dict() if isinstance(identity, CharacterIdentity) else identity
        payload = IdentityPayload.model_validate(data)
        validated[char_id] = CharacterIdentity.from_dict(payload.model_dump())
    return validated


class PipelineOrchestrator:
    """流水线编排器 - 串联所有阶段并管理运行状态"""

    def __init__(self, llm_client: LLMClient, config: Optional[PipelineConfig] = None,
                 snapshot_store: Optional[SnapshotStore] = None,
                 approval_handler: Optional[ApprovalHandler] = None,
                 on_progress: Optional[ProgressCallback] = None,
                 on_state_change: Optional[StateCallback] = None,
                 detector: Optional[SanitizationPolicy] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """
        初始化编排器

        Args:
            llm_client: 远程文本服务（通常是 KeyRotator）
            config: 流水线配置，为 None 时使用默认值
            snapshot_store: 进度快照存储，为 None 时不持久化
            approval_handler: 审批协作方；返回 None 表示原样批准，返回人物映射表示修改后批准，
                抛出 GenerationCancelled 表示取消。为 None 时需由外部调用 approve()/cancel()
            on_progress: 每个场景/批次完成后以完整的有序 prompts 列表调用
            on_state_change: 阶段变化时调用
            detector: 净化检测策略，默认关键词检测
            sleep: 可注入的等待函数
        """
        self.llm_client = llm_client
        self.config = config or PipelineConfig()
        self.snapshot_store = snapshot_store
        self.approval_handler = approval_handler
        self.on_progress = on_progress
        self.on_state_change = on_state_change
        self.sleep = sleep

        self.extractor = IdentityExtractor(llm_client, max_tokens=self.config.max_tokens)
        self.annotator = SceneAnnotator(llm_client, batch_size=self.config.annotation_batch_size,
                                        max_tokens=max(self.config.max_tokens, 8192))
        self.synthesizer = ScenePromptSynthesizer(
            llm_client,
            detector=detector or KeywordSanitizationDetector(),
            max_retries=self.config.synthesis_max_retries,
            retry_backoff=self.config.retry_backoff,
            sleep=sleep,
            max_tokens=self.config.max_tokens
        )

        self.state = GenerationState()
        self.analysis: Optional[StoryAnalysis] = None
        self.prompts: List[FullScenePrompt] = []
        self.snapshot: Optional[ProjectSnapshot] = None
        self._tracker: Optional[CharacterStateTracker] = None
        self._cancelled = False
        self._approval: Optional[asyncio.Future] = None
        self._resume_event: Optional[asyncio.Event] = None
        self._last_saved_index = -1
        self._regenerate_lock = asyncio.Lock()

    # ==================== 外部控制 ====================

    def approve(self, characters: Optional[EditedCharacters] = None) -> None:
        """批准分析结果，可选地替换人物身份映射

        Raises:
            InvalidStateError: 当前不在等待审批
            ValueError: 修改后的身份不合法
        """
        if self._approval is None or self._approval.done():
            raise InvalidStateError(f"当前阶段 {self.state.phase.value} 不能审批")
        edited = validate_identities(characters) if characters is not None else None
        self._approval.set_result(edited)

    def cancel(self) -> None:
        """请求取消，在下一个检查点生效；立即解除审批等待和暂停等待"""
        if self.state.phase == GenerationPhase.IDLE:
            return
        print("[STATE] 收到取消请求")
        self._cancelled = True
        if self._approval is not None and not self._approval.done():
            self._approval.set_result(None)
        if self._resume_event is not None:
            self._resume_event.set()

    def pause(self) -> None:
        if self.state.phase != GenerationPhase.GENERATING:
            raise InvalidStateError(f"当前阶段 {self.state.phase.value} 不能暂停")
        self._resume_event.clear()
        self._set_phase(GenerationPhase.PAUSED)

    def resume(self) -> None:
        if self.state.phase != GenerationPhase.PAUSED:
            raise InvalidStateError(f"当前阶段 {self.state.phase.value} 不能恢复")
        self._set_phase(GenerationPhase.GENERATING)
        self._resume_event.set()

    # ==================== 运行入口 ====================

    async def run(self, script: str, style: str = "",
                  scene_duration: Optional[float] = None) -> RunResult:
        """完整运行：分析 → 审批 → 生成

        Returns:
            RunResult；取消时 outcome 为 cancelled（不抛出）

        Raises:
            NoCredentialsError: 没有配置任何密钥
            AllKeysFailedError: 所有密钥耗尽
            ResponseParseError: 身份提取的响应无法解析
        """
        self._begin()
        duration = scene_duration or self.config.scene_duration
        try:
            analysis = await self._analyze(script, style, duration)
            edited = await self._await_approval(analysis)
            if edited is not None:
                self._apply_edits(analysis, edited)

            self.snapshot = ProjectSnapshot(
                run_id=uuid.uuid4().hex,
                script=script,
                style=analysis.visual_style_lock,
                scene_duration=duration,
                analysis=analysis
            )
            prompts = await self._generate(self.snapshot)
            return self._finish(RunOutcome.COMPLETE, prompts)
        except GenerationCancelled:
            return self._finish(RunOutcome.CANCELLED, self.prompts)
        except Exception as e:
            self._fail(e)
            raise

    async def analyze(self, script: str, style: str = "",
                      scene_duration: Optional[float] = None) -> StoryAnalysis:
        """只执行分析阶段，不进入审批和生成"""
        self._begin()
        try:
            analysis = await self._analyze(script, style, scene_duration or self.config.scene_duration)
        except GenerationCancelled:
            self._finish(RunOutcome.CANCELLED, [])
            raise
        except Exception as e:
            self._fail(e)
            raise
        self._finish(RunOutcome.COMPLETE, [])
        return analysis

    async def continue_from_progress(self, snapshot: ProjectSnapshot) -> RunResult:
        """从快照的 next_index 继续生成，复用冻结的分析结果"""
        self._begin()
        self.restore(snapshot)

        print(f"[INFO] 从快照继续：已完成 {snapshot.next_index}/{len(snapshot.analysis.scenes)} 个场景")
        try:
            self.llm_client.ensure_configured()
            prompts = await self._generate(snapshot)
            return self._finish(RunOutcome.COMPLETE, prompts)
        except GenerationCancelled:
            return self._finish(RunOutcome.CANCELLED, self.prompts)
        except Exception as e:
            self._fail(e)
            raise

    def restore(self, snapshot: ProjectSnapshot) -> None:
        """载入快照中冻结的分析结果和已完成的场景，不触发任何远程调用"""
        if self.state.phase != GenerationPhase.IDLE:
            raise InvalidStateError(f"当前阶段 {self.state.phase.value} 不能载入快照")
        self.snapshot = snapshot
        self.analysis = snapshot.analysis
        self._tracker = CharacterStateTracker(snapshot.analysis.characters.keys(),
                                              snapshot.analysis.state_timeline)
        snapshot.analysis.state_timeline = self._tracker.timeline
        self._last_saved_index = snapshot.next_index
        self.prompts = list(snapshot.prompts[:snapshot.next_index])

    async def regenerate_scene(self, index: int, prompts: List[FullScenePrompt]) -> List[FullScenePrompt]:
        """重新合成单个场景

        使用冻结的分析结果和当前已接受的前一个场景，不重新分析也不重新标注。
        同一编排器上的重新生成依次执行；prompts 与编排器当前持有的列表长度相同时
        视为同一次运行，以当前列表为基础，先完成的重新生成不会被后完成的覆盖。

        Returns:
            新列表，只有第 index 个元素被替换
        """
        if self.state.phase != GenerationPhase.IDLE:
            raise InvalidStateError(f"当前阶段 {self.state.phase.value} 不能重新生成场景")
        if self.analysis is None:
            raise InvalidStateError("没有可用的分析结果，请先运行或从快照继续")
        if index < 0 or index >= len(prompts) or index >= len(self.analysis.scenes):
            raise IndexError(f"场景索引越界：{index}")

        self.llm_client.ensure_configured()
        tracker = self._tracker or CharacterStateTracker(self.analysis.characters.keys(),
                                                         self.analysis.state_timeline)

        async with self._regenerate_lock:
            base = self.prompts if len(self.prompts) == len(prompts) else prompts
            previous = base[index - 1] if index > 0 else None
            print(f"[INFO] 重新生成场景 S{index + 1}")
            prompt = await self.synthesizer.synthesize(
                self.analysis.scenes[index], index, self.analysis,
                previous=previous, enforce_framing_variety=True, tracker=tracker
            )

            result = list(base)
            result[index] = prompt
            self.prompts = result
            if self.snapshot is not None:
                self.snapshot.prompts = list(result)
                self._save_snapshot(self.snapshot)
            self._emit_progress(result)
        return result

    # ==================== 各阶段实现 ====================

    async def _analyze(self, script: str, style: str, duration: float) -> StoryAnalysis:
        if not script or not script.strip():
            raise ValueError("脚本内容为空")
        self.llm_client.ensure_configured()
        self._set_phase(GenerationPhase.ANALYZING)

        fragments = segment_script(script, duration, self.config.words_per_second,
                                   self.config.min_scene_duration)
        print(f"[INFO] 分段完成：{len(fragments)} 个场景片段，目标时长 {duration} 秒")

        await self._checkpoint()
        extraction = await self.extractor.extract(script)

        await self._checkpoint()
        scenes, tracker = await self.annotator.annotate(
            fragments, extraction.characters, before_batch=self._checkpoint
        )
        self._tracker = tracker

        self.analysis = StoryAnalysis(
            characters=extraction.characters,
            era=extraction.era,
            visual_style_lock=style.strip() or DEFAULT_VISUAL_STYLE,
            scenes=scenes,
            state_timeline=tracker.timeline
        )
        self.state.total_scenes = len(scenes)
        print(f"[OK] 分析完成：{len(extraction.characters)} 个人物，{len(scenes)} 个场景")
        return self.analysis

    async def _await_approval(self, analysis: StoryAnalysis) -> Optional[Dict[str, CharacterIdentity]]:
        self._approval = asyncio.get_running_loop().create_future()
        self._set_phase(GenerationPhase.AWAITING_APPROVAL)

        handler_task = None
        if self.approval_handler is not None:
            handler_task = asyncio.ensure_future(self._consult_handler(analysis))
        try:
            edited = await self._approval
        finally:
            self._approval = None
            if handler_task is not None and not handler_task.done():
                handler_task.cancel()

        await self._checkpoint()
        return edited

    async def _consult_handler(self, analysis: StoryAnalysis) -> None:
        """审批协作方返回的修改同样经过校验，校验失败时让运行以错误结束"""
        try:
            edited = await self.approval_handler(analysis)
            if self._approval is not None and not self._approval.done():
                self.approve(edited)
        except GenerationCancelled:
            self.cancel()
        except Exception as e:
            if self._approval is not None and not self._approval.done():
                self._approval.set_exception(e)

    def _apply_edits(self, analysis: StoryAnalysis, characters: Dict[str, CharacterIdentity]) -> None:
        """用审批后的身份替换人物映射，并移除场景中对已删除人物的引用"""
        analysis.characters = characters
        for scene in analysis.scenes:
            scene.characters_present = [cid for cid in scene.characters_present if cid in characters]
            scene.state_changes = [c for c in scene.state_changes if c.character_id in characters]
        self._tracker.retain(characters.keys())
        analysis.state_timeline = self._tracker.timeline
        print(f"[OK] 已应用审批修改：{len(characters)} 个人物")

    async def _generate(self, snapshot: ProjectSnapshot) -> List[FullScenePrompt]:
        analysis = snapshot.analysis
        total = len(analysis.scenes)
        prompts = list(snapshot.prompts[:snapshot.next_index])
        index = snapshot.next_index

        self.prompts = prompts
        self.state.total_scenes = total
        self.state.current_scene = index
        self._set_phase(GenerationPhase.GENERATING)

        parallel = self.llm_client.supports_parallel
        if parallel:
            print(f"[INFO] 付费档：每批并发 {self.config.parallel_batch_size} 个场景")
        else:
            print(f"[INFO] 免费档：顺序生成，间隔 {self.llm_client.pacing_delay():.1f} 秒")

        while index < total:
            await self._checkpoint()
            previous = prompts[-1] if prompts else None

            if parallel:
                end = min(total, index + max(1, self.config.parallel_batch_size))
                print(f"  → 并发生成场景 {index + 1}-{end} / {total}")
                prompts.extend(await self._synthesize_batch(analysis, index, end, previous))
            else:
                end = index + 1
                print(f"  → 生成场景 {end} / {total}")
                prompts.append(await self.synthesizer.synthesize(
                    analysis.scenes[index], index, analysis,
                    previous=previous, enforce_framing_variety=True, tracker=self._tracker
                ))

            index = end
            self.state.current_scene = index
            snapshot.prompts = list(prompts)
            snapshot.next_index = index
            snapshot.is_complete = index >= total
            self._save_snapshot(snapshot)
            self._emit_progress(prompts)
            self._notify_state()

            if not parallel and index < total:
                await self.sleep(self.llm_client.pacing_delay())

        return prompts

    async def _synthesize_batch(self, analysis: StoryAnalysis, start: int, end: int,
                                previous: Optional[FullScenePrompt]) -> List[FullScenePrompt]:
        """并发合成一批场景，全部结束后按原始顺序返回；有异常时抛出第一个"""
        results = await asyncio.gather(*[
            self.synthesizer.synthesize(
                analysis.scenes[i], i, analysis,
                previous=previous, enforce_framing_variety=False, tracker=self._tracker
            )
            for i in range(start, end)
        ], return_exceptions=True)

        for result in results:
            if isinstance(result, BaseException):
                raise result

        # 批内场景并发合成，回退场景的背景和镜头在这里按顺序接上前一个场景
        prompts = list(results)
        for offset, prompt in enumerate(prompts):
            if prompt.fallback_marker is None:
                continue
            source = prompts[offset - 1] if offset > 0 else previous
            if source is not None:
                prompt.background_lock = copy.deepcopy(source.background_lock)
                prompt.camera = copy.deepcopy(source.camera)
        return prompts

    # ==================== 检查点与状态 ====================

    async def _checkpoint(self) -> None:
        if self._cancelled:
            raise GenerationCancelled()
        if not self._resume_event.is_set():
            print("[STATE] 已暂停，等待恢复...")
            await self._resume_event.wait()
            if self._cancelled:
                raise GenerationCancelled()

    def _begin(self) -> None:
        if self.state.phase != GenerationPhase.IDLE:
            raise InvalidStateError(f"已有运行处于 {self.state.phase.value} 阶段")
        self._cancelled = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._last_saved_index = -1
        self.prompts = []
        self.state = GenerationState()

    def _finish(self, outcome: RunOutcome, prompts: List[FullScenePrompt]) -> RunResult:
        self.prompts = list(prompts)
        self.state.outcome = outcome
        self._set_phase(GenerationPhase.IDLE)
        if outcome == RunOutcome.COMPLETE:
            print(f"[OK] 生成完成：{len(prompts)} 个场景")
        else:
            print(f"[STATE] 运行已取消，保留 {len(prompts)} 个已完成场景")
        return RunResult(outcome=outcome, prompts=list(prompts), analysis=self.analysis)

    def _fail(self, error: Exception) -> None:
        print(f"[ERROR] 运行失败：{error}")
        self.state.error = str(error)
        self.state.outcome = RunOutcome.ERROR
        self._set_phase(GenerationPhase.IDLE)

    def _set_phase(self, phase: GenerationPhase) -> None:
        self.state.phase = phase
        print(f"[STATE] {phase.value}")
        self._notify_state()

    def _notify_state(self) -> None:
        if self.on_state_change is not None:
            self.on_state_change(self.state)

    def _emit_progress(self, prompts: List[FullScenePrompt]) -> None:
        if self.on_progress is not None:
            self.on_progress(list(prompts))

    def _save_snapshot(self, snapshot: ProjectSnapshot) -> None:
        if self.snapshot_store is None:
            return
        if snapshot.next_index < self._last_saved_index:
            return
        if self.snapshot_store.save(snapshot):
            self._last_saved_index = snapshot.next_index
            print(f"[SAVE] 进度快照：{snapshot.next_index}/{len(snapshot.analysis.scenes)}")
