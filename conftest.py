# -*- coding: utf-8 -*-
"""测试共用的 Mock 响应与 fixture

远程服务的响应按请求开头的 TASK 标记路由，和真实流水线的调用顺序无关。
"""
import asyncio
import json
import re
from typing import Callable, Dict, List, Optional

import pytest

from models import (
    CharacterIdentity, CharacterStateEntry, SceneSegment, StoryAnalysis, TextFragment
)


SAMPLE_SCRIPT = """Captain Elena Marsh rode into the harbor town at dawn. The fishermen stopped their work to watch her pass.
Tomas Reed waited at the forge with a sealed letter. He handed it to Elena without a word.
She read the letter twice and folded it into her coat. Then she turned her horse toward the cliffs.
By nightfall the warehouses along the docks were burning. Elena ran through the smoke shouting for Tomas.
"""


# ==================== Mock LLM 响应数据 ====================

def name_pass_response() -> str:
    return json.dumps({
        "characters": [
            {"name": "Elena Marsh", "role": "protagonist, a cavalry captain"},
            {"name": "Tomas Reed", "role": "the town blacksmith"},
        ],
        "era": "Late 18th century coastal town"
    })


def visual_pass_response() -> str:
    return json.dumps({
        "characters": {
            "CHAR_A": sample_identities()["CHAR_A"].to_dict(),
            "CHAR_B": sample_identities()["CHAR_B"].to_dict(),
        }
    })


def annotation_response(prompt: str) -> str:
    """对请求中列出的每个片段返回一条标注"""
    indices = [int(i) for i in re.findall(r"^\[(\d+)\]", prompt, re.MULTILINE)]
    scenes = []
    for index in indices:
        present = ["CHAR_A", "CHAR_B"] if index % 2 else ["CHAR_A"]
        scenes.append({
            "index": index,
            "characters_present": present,
            "action_hint": "CHAR_A moves through the harbor",
            "state_changes": []
        })
    return json.dumps({"scenes": scenes})


def scene_response(prompt: str, setting: str = "Harbor market at dawn",
                   action_summary: str = "CHAR_A crosses the crowded square") -> str:
    """为请求中列出的每个出场人物返回表演数据"""
    present = re.findall(r"^- (CHAR_[A-Z]{1,2}): ", prompt, re.MULTILINE)
    shot = re.search(r'suggested shot is "(.*?)"', prompt)
    return json.dumps({
        "character_performances": {
            char_id: {
                "position": "center",
                "orientation": "facing camera",
                "pose": "standing tall",
                "expression": "determined",
                "action_flow": {
                    "pre_action": "looks up",
                    "main_action": "steps forward",
                    "post_action": "pauses"
                }
            }
            for char_id in present
        },
        "background_lock": {"setting": setting, "scenery": "wooden stalls and gulls",
                            "lighting": "low golden sun"},
        "camera": {"framing": shot.group(1) if shot else "Medium shot", "angle": "eye-level",
                   "movement": "slow dolly", "focus": "shallow"},
        "foley_and_ambience": {"ambience": ["waves"], "fx": ["hooves on cobblestone"], "music": "low strings"},
        "dialogue": [{"speaker": present[0], "language": "English", "line": "We ride at first light."}]
        if present else [],
        "action_summary": action_summary,
        "lip_sync_director_note": "Mouth movements match the single line"
    })


def make_handler(overrides: Optional[Dict[str, Callable[[str], object]]] = None) -> Callable[[str], object]:
    """按 TASK 标记路由的 Mock 处理函数，overrides 可以替换任意一类响应"""
    routes = {
        "TASK: RECURRING CHARACTER LIST": lambda prompt: name_pass_response(),
        "TASK: VISUAL IDENTITY LOCK": lambda prompt: visual_pass_response(),
        "TASK: SCENE ANNOTATION": annotation_response,
        "TASK: SCENE PROMPT": scene_response,
    }
    routes.update(overrides or {})

    def handler(prompt: str):
        for marker, route in routes.items():
            if prompt.startswith(marker):
                return route(prompt)
        raise AssertionError(f"unexpected prompt: {prompt[:60]}")

    return handler


# ==================== 示例数据 ====================

def sample_identities() -> Dict[str, CharacterIdentity]:
    return {
        "CHAR_A": CharacterIdentity(
            name="Elena Marsh", species="human", gender="female", age="early 30s",
            body_build="lean, athletic", face_shape="angular", hair="black braid",
            facial_hair="none", skin_or_fur_color="olive", eye_color="grey",
            signature_feature="scar across left eyebrow", outfit_top="navy cavalry coat",
            outfit_bottom="buff breeches", helmet_or_hat="tricorne hat",
            shoes_or_footwear="tall riding boots", accessories="brass spyglass",
            texture_detail="weathered wool", material_reference="wool, leather, brass",
            voice_personality="low, clipped, commanding"
        ),
        "CHAR_B": CharacterIdentity(
            name="Tomas Reed", species="human", gender="male", age="50s",
            body_build="broad, heavy", face_shape="square", hair="grey, cropped",
            facial_hair="full beard", skin_or_fur_color="ruddy", eye_color="brown",
            signature_feature="burn scars on forearms", outfit_top="leather apron over linen shirt",
            outfit_bottom="canvas trousers", helmet_or_hat="none",
            shoes_or_footwear="wooden clogs", accessories="tongs at the belt",
            texture_detail="soot-stained leather", material_reference="leather, linen, iron",
            voice_personality="gravelly and slow"
        ),
    }


def sample_segments() -> List[SceneSegment]:
    texts = [
        ("Captain Elena Marsh rode into the harbor town at dawn.", ["CHAR_A"], "CHAR_A rides into town"),
        ("Tomas Reed handed Elena a sealed letter.", ["CHAR_A", "CHAR_B"], "CHAR_B hands CHAR_A a letter"),
        ("By nightfall the warehouses were burning.", ["CHAR_A"], "CHAR_A runs through smoke"),
    ]
    segments = []
    start = 0
    for text, present, hint in texts:
        words = len(text.split())
        fragment = TextFragment(text=text, word_count=words, duration_sec=4.0,
                                start_word=start, end_word=start + words)
        segments.append(SceneSegment.from_fragment(fragment, present, hint))
        start += words
    return segments


def sample_analysis() -> StoryAnalysis:
    identities = sample_identities()
    return StoryAnalysis(
        characters=identities,
        era="Late 18th century coastal town",
        visual_style_lock="Oil painting, muted palette",
        scenes=sample_segments(),
        state_timeline={cid: [CharacterStateEntry()] for cid in identities}
    )


class RecordingSleep:
    """记录等待时长但不真正等待"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def identities():
    return sample_identities()


@pytest.fixture
def analysis():
    return sample_analysis()


@pytest.fixture
def no_sleep():
    return RecordingSleep()
