# -*- coding: utf-8 -*-
"""Phase 1: 核心数据结构定义

场景提示词流水线中所有阶段共享的数据实体。每个实体都提供 to_dict / from_dict，
用于进度快照的 JSON 持久化。
"""
from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import List, Optional, Dict, Any


BLOCKED_MARKER = "[BLOCKED]"
SANITIZED_MARKER = "[SANITIZED]"
FALLBACK_MARKERS = (BLOCKED_MARKER, SANITIZED_MARKER)


# ==================== 文本片段 ====================

@dataclass(frozen=True)
class TextFragment:
    """分段器产出的定时文本片段（不可变）"""
    text: str
    word_count: int
    duration_sec: float
    start_word: int
    end_word: int  # 不包含

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TextFragment":
        return cls(
            text=data["text"],
            word_count=int(data["word_count"]),
            duration_sec=float(data["duration_sec"]),
            start_word=int(data["start_word"]),
            end_word=int(data["end_word"])
        )


# ==================== 人物身份 ====================

IDENTITY_FIELDS = (
    "name", "species", "gender", "age", "body_build", "face_shape", "hair",
    "facial_hair", "skin_or_fur_color", "eye_color", "signature_feature",
    "outfit_top", "outfit_bottom", "helmet_or_hat", "shoes_or_footwear",
    "accessories", "texture_detail", "material_reference", "voice_personality",
)


@dataclass(frozen=True)
class CharacterIdentity:
    """锁定的人物视觉身份 - 在所有场景中逐字节一致"""
    name: str
    species: str = ""
    gender: str = ""
    age: str = ""
    body_build: str = ""
    face_shape: str = ""
    hair: str = ""
    facial_hair: str = ""
    skin_or_fur_color: str = ""
    eye_color: str = ""
    signature_feature: str = ""
    outfit_top: str = ""
    outfit_bottom: str = ""
    helmet_or_hat: str = ""
    shoes_or_footwear: str = ""
    accessories: str = ""
    texture_detail: str = ""
    material_reference: str = ""
    voice_personality: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CharacterIdentity":
        return cls(**{key: str(data.get(key) or "") for key in IDENTITY_FIELDS})

    def visual_descriptor(self) -> str:
        """不含姓名的外观描述，用于发送给远程服务"""
        parts = [
            f"{self.gender} {self.species}".strip(),
            self.age,
            f"{self.body_build} build" if self.body_build else "",
            f"{self.face_shape} face" if self.face_shape else "",
            f"{self.hair} hair" if self.hair else "",
            self.facial_hair if self.facial_hair and self.facial_hair.lower() != "none" else "",
            f"{self.skin_or_fur_color} skin" if self.skin_or_fur_color else "",
            f"{self.eye_color} eyes" if self.eye_color else "",
            self.signature_feature,
            f"wearing {self.outfit_top}" if self.outfit_top else "",
            self.outfit_bottom,
            self.helmet_or_hat if self.helmet_or_hat and self.helmet_or_hat.lower() != "none" else "",
            self.shoes_or_footwear,
            self.accessories,
        ]
        return ", ".join(p for p in parts if p)


@dataclass
class RecurringCharacter:
    """名单提取阶段的结果：只有姓名和角色定位"""
    name: str
    role: str = ""


# ==================== 人物状态 ====================

class CharacterStatus(str, Enum):
    """人物生死状态"""
    ALIVE = "alive"
    DEAD = "dead"
    WOUNDED = "wounded"
    ABSENT = "absent"


@dataclass
class CharacterStateEntry:
    """人物状态条目，只能随场景向前更新"""
    status: CharacterStatus = CharacterStatus.ALIVE
    changed_at_scene: int = 0
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "changed_at_scene": self.changed_at_scene,
            "note": self.note
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CharacterStateEntry":
        return cls(
            status=CharacterStatus(data.get("status", "alive")),
            changed_at_scene=int(data.get("changed_at_scene", 0)),
            note=data.get("note", "")
        )


@dataclass
class StateChange:
    """标注阶段发现的状态转换事件"""
    character_id: str
    status: CharacterStatus
    note: str = ""
    flashback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "character_id": self.character_id,
            "status": self.status.value,
            "note": self.note,
            "flashback": self.flashback
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateChange":
        return cls(
            character_id=data["character_id"],
            status=CharacterStatus(data["status"]),
            note=data.get("note", ""),
            flashback=bool(data.get("flashback", False))
        )


# ==================== 场景片段 ====================

@dataclass
class SceneSegment:
    """标注后的场景片段 = TextFragment + 出场人物/动作提示/状态变化"""
    text: str
    word_count: int
    duration_sec: float
    start_word: int
    end_word: int
    characters_present: List[str] = field(default_factory=list)
    action_hint: str = ""
    state_changes: List[StateChange] = field(default_factory=list)

    @classmethod
    def from_fragment(cls, fragment: TextFragment, characters_present: Optional[List[str]] = None,
                      action_hint: str = "",
                      state_changes: Optional[List[StateChange]] = None) -> "SceneSegment":
        return cls(
            text=fragment.text,
            word_count=fragment.word_count,
            duration_sec=fragment.duration_sec,
            start_word=fragment.start_word,
            end_word=fragment.end_word,
            characters_present=list(characters_present or []),
            action_hint=action_hint,
            state_changes=list(state_changes or [])
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "word_count": self.word_count,
            "duration_sec": self.duration_sec,
            "start_word": self.start_word,
            "end_word": self.end_word,
            "characters_present": list(self.characters_present),
            "action_hint": self.action_hint,
            "state_changes": [c.to_dict() for c in self.state_changes]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SceneSegment":
        return cls(
            text=data["text"],
            word_count=int(data["word_count"]),
            duration_sec=float(data["duration_sec"]),
            start_word=int(data["start_word"]),
            end_word=int(data["end_word"]),
            characters_present=list(data.get("characters_present", [])),
            action_hint=data.get("action_hint", ""),
            state_changes=[StateChange.from_dict(c) for c in data.get("state_changes", [])]
        )


# ==================== 场景提示词 ====================

@dataclass
class ActionFlow:
    pre_action: str = ""
    main_action: str = ""
    post_action: str = ""


@dataclass
class CharacterPerformance:
    """每个场景独立的人物表演数据"""
    position: str = ""
    orientation: str = ""
    pose: str = ""
    expression: str = ""
    action_flow: ActionFlow = field(default_factory=ActionFlow)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CharacterPerformance":
        flow = data.get("action_flow") or {}
        return cls(
            position=data.get("position", ""),
            orientation=data.get("orientation", ""),
            pose=data.get("pose", ""),
            expression=data.get("expression", ""),
            action_flow=ActionFlow(
                pre_action=flow.get("pre_action", ""),
                main_action=flow.get("main_action", ""),
                post_action=flow.get("post_action", "")
            )
        )


@dataclass
class CharacterLock:
    """锁定身份 ⊕ 场景表演，序列化时展开为一个平铺的字典"""
    identity: CharacterIdentity
    performance: CharacterPerformance

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = self.identity.to_dict()
        data.update(self.performance.to_dict())
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CharacterLock":
        return cls(
            identity=CharacterIdentity.from_dict(data),
            performance=CharacterPerformance.from_dict(data)
        )


@dataclass
class BackgroundLock:
    setting: str = ""
    scenery: str = ""
    lighting: str = ""


@dataclass
class Camera:
    framing: str = ""
    angle: str = ""
    movement: str = ""
    focus: str = ""


@dataclass
class FoleyAndAmbience:
    ambience: List[str] = field(default_factory=list)
    fx: List[str] = field(default_factory=list)
    music: str = ""


@dataclass
class DialogueLine:
    speaker: str  # CHAR_A, CHAR_B ...
    voice: str = ""
    language: str = ""
    line: str = ""


@dataclass
class FullScenePrompt:
    """最终输出单元：每个 SceneSegment 对应一个"""
    scene_id: str
    duration_sec: float
    visual_style: str
    character_lock: Dict[str, CharacterLock] = field(default_factory=dict)
    background_lock: BackgroundLock = field(default_factory=BackgroundLock)
    camera: Camera = field(default_factory=Camera)
    foley_and_ambience: FoleyAndAmbience = field(default_factory=FoleyAndAmbience)
    dialogue: List[DialogueLine] = field(default_factory=list)
    action_summary: str = ""
    lip_sync_director_note: str = ""
    source_text: str = ""

    @property
    def fallback_marker(self) -> Optional[str]:
        """若该场景由本地回退构建，返回对应标记"""
        for marker in FALLBACK_MARKERS:
            if self.action_summary.startswith(marker):
                return marker
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scene_id": self.scene_id,
            "duration_sec": self.duration_sec,
            "visual_style": self.visual_style,
            "character_lock": {cid: lock.to_dict() for cid, lock in self.character_lock.items()},
            "background_lock": asdict(self.background_lock),
            "camera": asdict(self.camera),
            "foley_and_ambience": asdict(self.foley_and_ambience),
            "dialogue": [asdict(d) for d in self.dialogue],
            "action_summary": self.action_summary,
            "lip_sync_director_note": self.lip_sync_director_note,
            "source_text": self.source_text
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FullScenePrompt":
        foley = data.get("foley_and_ambience") or {}
        return cls(
            scene_id=data["scene_id"],
            duration_sec=float(data["duration_sec"]),
            visual_style=data.get("visual_style", ""),
            character_lock={
                cid: CharacterLock.from_dict(lock)
                for cid, lock in (data.get("character_lock") or {}).items()
            },
            background_lock=BackgroundLock(**_known(BackgroundLock, data.get("background_lock"))),
            camera=Camera(**_known(Camera, data.get("camera"))),
            foley_and_ambience=FoleyAndAmbience(
                ambience=list(foley.get("ambience", [])),
                fx=list(foley.get("fx", [])),
                music=foley.get("music", "")
            ),
            dialogue=[DialogueLine(**_known(DialogueLine, d)) for d in data.get("dialogue", [])],
            action_summary=data.get("action_summary", ""),
            lip_sync_director_note=data.get("lip_sync_director_note", ""),
            source_text=data.get("source_text", "")
        )


def _known(cls, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


# ==================== 故事分析 ====================

@dataclass
class StoryAnalysis:
    """一次运行的事实来源：人物、年代、风格、场景与人物状态时间线"""
    characters: Dict[str, CharacterIdentity]
    era: str
    visual_style_lock: str
    scenes: List[SceneSegment] = field(default_factory=list)
    state_timeline: Dict[str, List[CharacterStateEntry]] = field(default_factory=dict)

    @property
    def character_states(self) -> Dict[str, CharacterStateEntry]:
        """每个人物的最新状态"""
        return {cid: entries[-1] for cid, entries in self.state_timeline.items() if entries}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "characters": {cid: ident.to_dict() for cid, ident in self.characters.items()},
            "era": self.era,
            "visual_style_lock": self.visual_style_lock,
            "scenes": [s.to_dict() for s in self.scenes],
            "state_timeline": {
                cid: [e.to_dict() for e in entries]
                for cid, entries in self.state_timeline.items()
            }
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoryAnalysis":
        return cls(
            characters={
                cid: CharacterIdentity.from_dict(ident)
                for cid, ident in data.get("characters", {}).items()
            },
            era=data.get("era", ""),
            visual_style_lock=data.get("visual_style_lock", ""),
            scenes=[SceneSegment.from_dict(s) for s in data.get("scenes", [])],
            state_timeline={
                cid: [CharacterStateEntry.from_dict(e) for e in entries]
                for cid, entries in data.get("state_timeline", {}).items()
            }
        )


# ==================== 生成状态与快照 ====================

class GenerationPhase(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    AWAITING_APPROVAL = "awaiting_approval"
    GENERATING = "generating"
    PAUSED = "paused"


class RunOutcome(str, Enum):
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class GenerationState:
    """面向 UI 的瞬时状态"""
    phase: GenerationPhase = GenerationPhase.IDLE
    current_scene: int = 0
    total_scenes: int = 0
    error: Optional[str] = None
    outcome: Optional[RunOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "current_scene": self.current_scene,
            "total_scenes": self.total_scenes,
            "error": self.error,
            "outcome": self.outcome.value if self.outcome else None
        }


@dataclass
class ProjectSnapshot:
    """可序列化的进度快照，用于中断后恢复"""
    run_id: str
    script: str
    style: str
    scene_duration: float
    analysis: StoryAnalysis
    prompts: List[FullScenePrompt] = field(default_factory=list)
    next_index: int = 0
    is_complete: bool = False
    saved_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "script": self.script,
            "style": self.style,
            "scene_duration": self.scene_duration,
            "analysis": self.analysis.to_dict(),
            "prompts": [p.to_dict() for p in self.prompts],
            "next_index": self.next_index,
            "is_complete": self.is_complete,
            "saved_at": self.saved_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectSnapshot":
        return cls(
            run_id=data["run_id"],
            script=data.get("script", ""),
            style=data.get("style", ""),
            scene_duration=float(data.get("scene_duration", 0)),
            analysis=StoryAnalysis.from_dict(data["analysis"]),
            prompts=[FullScenePrompt.from_dict(p) for p in data.get("prompts", [])],
            next_index=int(data.get("next_index", 0)),
            is_complete=bool(data.get("is_complete", False)),
            saved_at=data.get("saved_at")
        )
