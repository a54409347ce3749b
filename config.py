# -*- coding: utf-8 -*-
"""流水线配置

所有可调参数集中在 PipelineConfig 中，默认值来自参考音频的经验测量与
免费档的速率限制。可以通过环境变量（支持 .env 文件）覆盖。
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_MODEL = "gemini-2.5-flash"


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        print(f"[WARN] 环境变量 {name}={value!r} 不是合法数字，使用默认值 {default}")
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass
class PipelineConfig:
    """流水线配置"""
    # 分段
    words_per_second: float = 2.5
    scene_duration: float = 8.0
    min_scene_duration: float = 4.0

    # 标注与合成
    annotation_batch_size: int = 10
    synthesis_max_retries: int = 2
    retry_backoff: float = 1.5
    parallel_batch_size: int = 5
    max_tokens: int = 4096

    # 速率限制（免费档每个密钥约 10 RPM）
    base_pacing_delay: float = 6.5
    min_pacing_delay: float = 0.3
    default_cooldown: float = 20.0
    max_retry_after: float = 60.0

    # 远程服务
    base_url: str = GEMINI_OPENAI_BASE_URL
    model: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    paid_api_key: Optional[str] = None

    # 持久化
    snapshot_path: str = ".progress_snapshot.json"
    keys_path: str = ".api_keys.json"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "PipelineConfig":
        """从环境变量创建配置"""
        if dotenv:
            load_dotenv()

        defaults = cls()
        return cls(
            words_per_second=_env_float("WORDS_PER_SECOND", defaults.words_per_second),
            scene_duration=_env_float("SCENE_DURATION", defaults.scene_duration),
            min_scene_duration=_env_float("MIN_SCENE_DURATION", defaults.min_scene_duration),
            annotation_batch_size=_env_int("ANNOTATION_BATCH_SIZE", defaults.annotation_batch_size),
            synthesis_max_retries=_env_int("SYNTHESIS_MAX_RETRIES", defaults.synthesis_max_retries),
            retry_backoff=_env_float("RETRY_BACKOFF", defaults.retry_backoff),
            parallel_batch_size=_env_int("PARALLEL_BATCH_SIZE", defaults.parallel_batch_size),
            max_tokens=_env_int("LLM_MAX_TOKENS", defaults.max_tokens),
            base_pacing_delay=_env_float("BASE_PACING_DELAY", defaults.base_pacing_delay),
            min_pacing_delay=_env_float("MIN_PACING_DELAY", defaults.min_pacing_delay),
            default_cooldown=_env_float("DEFAULT_COOLDOWN", defaults.default_cooldown),
            max_retry_after=_env_float("MAX_RETRY_AFTER", defaults.max_retry_after),
            base_url=os.environ.get("LLM_BASE_URL") or defaults.base_url,
            model=os.environ.get("LLM_MODEL") or defaults.model,
            api_key=os.environ.get("LLM_API_KEY") or None,
            paid_api_key=os.environ.get("LLM_PAID_API_KEY") or None,
            snapshot_path=os.environ.get("SNAPSHOT_PATH") or defaults.snapshot_path,
            keys_path=os.environ.get("KEYS_PATH") or defaults.keys_path
        )
