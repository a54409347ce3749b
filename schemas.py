# -*- coding: utf-8 -*-
"""远程响应的严格 schema

远程文本服务的输出不可信。所有结构化数据在边界处用 pydantic 校验，
任何偏差都转换为 ResponseParseError，交给既有的重试/回退路径处理。
"""
import re
from typing import Annotated, Dict, List, Type, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator

from errors import ResponseParseError
from llm_client import extract_json_block


CHARACTER_ID_PATTERN = re.compile(r"^CHAR_[A-Z]{1,2}$")
CHARACTER_STATUSES = ("alive", "dead", "wounded", "absent")

T = TypeVar("T", bound=BaseModel)


def _as_text(value):
    # 远程服务偶尔返回 null 或数字
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return value


Text = Annotated[str, BeforeValidator(_as_text)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ==================== 身份提取 ====================

class RecurringCharacterPayload(_Payload):
    name: str = Field(..., min_length=1)
    role: Text = ""


class NamePassPayload(_Payload):
    characters: List[RecurringCharacterPayload] = Field(default_factory=list)
    era: str = Field(..., min_length=1)


class IdentityPayload(_Payload):
    name: str = Field(..., min_length=1)
    species: Text = ""
    gender: Text = ""
    age: Text = ""
    body_build: Text = ""
    face_shape: Text = ""
    hair: Text = ""
    facial_hair: Text = ""
    skin_or_fur_color: Text = ""
    eye_color: Text = ""
    signature_feature: Text = ""
    outfit_top: Text = ""
    outfit_bottom: Text = ""
    helmet_or_hat: Text = ""
    shoes_or_footwear: Text = ""
    accessories: Text = ""
    texture_detail: Text = ""
    material_reference: Text = ""
    voice_personality: Text = ""


class VisualPassPayload(_Payload):
    characters: Dict[str, IdentityPayload]

    @field_validator("characters")
    @classmethod
    def check_ids(cls, value: Dict[str, IdentityPayload]) -> Dict[str, IdentityPayload]:
        for char_id in value:
            if not CHARACTER_ID_PATTERN.match(char_id):
                raise ValueError(f"非法的人物 ID：{char_id}")
        return value


# ==================== 场景标注 ====================

class StateChangePayload(_Payload):
    character_id: str
    status: str
    note: Text = ""
    flashback: bool = False

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        value = str(value or "").strip().lower()
        if value not in CHARACTER_STATUSES:
            raise ValueError(f"未知的人物状态：{value}")
        return value


class SceneAnnotationPayload(_Payload):
    index: int
    characters_present: List[str] = Field(default_factory=list)
    action_hint: Text = ""
    state_changes: List[StateChangePayload] = Field(default_factory=list)


class AnnotationBatchPayload(_Payload):
    scenes: List[SceneAnnotationPayload]


# ==================== 场景合成 ====================

class ActionFlowPayload(_Payload):
    pre_action: Text = ""
    main_action: Text = ""
    post_action: Text = ""


class PerformancePayload(_Payload):
    position: Text = ""
    orientation: Text = ""
    pose: Text = ""
    expression: Text = ""
    action_flow: ActionFlowPayload = Field(default_factory=ActionFlowPayload)


class BackgroundPayload(_Payload):
    setting: str = Field(..., min_length=1)
    scenery: Text = ""
    lighting: Text = ""


class CameraPayload(_Payload):
    framing: str = Field(..., min_length=1)
    angle: Text = ""
    movement: Text = ""
    focus: Text = ""


class FoleyPayload(_Payload):
    ambience: List[str] = Field(default_factory=list)
    fx: List[str] = Field(default_factory=list)
    music: Text = ""


class DialoguePayload(_Payload):
    speaker: str
    language: Text = ""
    line: str = Field(..., min_length=1)


class ScenePayload(_Payload):
    character_performances: Dict[str, PerformancePayload] = Field(default_factory=dict)
    background_lock: BackgroundPayload
    camera: CameraPayload
    foley_and_ambience: FoleyPayload = Field(default_factory=FoleyPayload)
    dialogue: List[DialoguePayload] = Field(default_factory=list)
    action_summary: str = Field(..., min_length=1)
    lip_sync_director_note: Text = ""


# ==================== 解析入口 ====================

def parse_payload(response: str, schema: Type[T]) -> T:
    """提取响应中的第一个 JSON 对象并按 schema 校验

    Raises:
        ResponseParseError: 没有 JSON 或校验失败
    """
    data = extract_json_block(response)
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise ResponseParseError(
            f"响应不符合 {schema.__name__} schema：{e.error_count()} 处错误",
            raw=response
        ) from e
