# -*- coding: utf-8 -*-
"""API 密钥轮换与限速

免费档密钥按调用计数主动轮询（计数对密钥数取模），而不是等失败后再切换；
配额/鉴权失败时在同一次逻辑调用内切换到下一个未尝试的密钥。配置了付费密钥时，
免费密钥全部失败后立即使用付费密钥，不做任何等待。
"""
import asyncio
import json
import os
import re
from typing import Awaitable, Callable, Dict, List, Optional

from errors import AllKeysFailedError, NoCredentialsError, QuotaExceededError, TransientServiceError
from llm_client import LLMClient, OpenAICompatibleClient


_RETRY_AFTER_PATTERNS = [
    re.compile(r"retry\s+(?:in|after)\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
    re.compile(r"[\"']?retryDelay[\"']?\s*[:=]\s*[\"']?(\d+(?:\.\d+)?)s", re.IGNORECASE),
    re.compile(r"retry-after[\"']?\s*[:=]\s*[\"']?(\d+(?:\.\d+)?)", re.IGNORECASE),
]


def parse_retry_after(text: str, default: float, maximum: float) -> float:
    """从错误文本中解析 "retry after N seconds" 提示，并限制在 [1, maximum] 之间"""
    for pattern in _RETRY_AFTER_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return min(maximum, max(1.0, float(match.group(1))))
    return min(maximum, default)


def mask_key(key: str) -> str:
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}…{key[-4:]}"


class KeyRotator(LLMClient):
    """多密钥轮换的 LLM 客户端

    Args:
        free_keys: 免费档密钥（有序）
        paid_key: 可选的付费密钥
        client_factory: 根据密钥创建单密钥客户端
        base_pacing_delay: 单个免费密钥两次调用之间的安全间隔（秒）
        min_pacing_delay: 项目级总速率上限对应的最小间隔（秒）
        default_cooldown: 错误中没有 retry 提示时的冷却时间（秒）
        max_retry_after: 冷却时间上限（秒）
        sleep: 可注入的等待函数，测试中替换为无等待版本
    """

    def __init__(self, free_keys: List[str], paid_key: Optional[str] = None,
                 client_factory: Optional[Callable[[str], LLMClient]] = None,
                 base_url: Optional[str] = None, model: str = "gemini-2.5-flash",
                 base_pacing_delay: float = 6.5, min_pacing_delay: float = 0.3,
                 default_cooldown: float = 20.0, max_retry_after: float = 60.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.free_keys = [k for k in free_keys if k]
        self.paid_key = paid_key or None
        self.client_factory = client_factory or (
            lambda key: OpenAICompatibleClient(api_key=key, base_url=base_url, model=model)
        )
        self.base_pacing_delay = base_pacing_delay
        self.min_pacing_delay = min_pacing_delay
        self.default_cooldown = default_cooldown
        self.max_retry_after = max_retry_after
        self._sleep = sleep
        self._clients: Dict[str, LLMClient] = {}
        self.call_count = 0
        self.usage: Dict[int, int] = {}
        self.paid_calls = 0

    @classmethod
    def from_store(cls, store: "CredentialStore", **kwargs) -> "KeyRotator":
        return cls(store.free_keys, store.paid_key, **kwargs)

    # ==================== LLMClient 接口 ====================

    def ensure_configured(self) -> None:
        if not self.free_keys and not self.paid_key:
            raise NoCredentialsError()

    @property
    def has_paid_key(self) -> bool:
        return self.paid_key is not None

    @property
    def supports_parallel(self) -> bool:
        return self.has_paid_key

    def pacing_delay(self) -> float:
        """根据免费密钥数量计算调用间隔，使所有密钥合计的速率不超过项目上限"""
        if self.has_paid_key:
            return 0.0
        if not self.free_keys:
            return self.base_pacing_delay
        return max(self.min_pacing_delay, self.base_pacing_delay / len(self.free_keys))

    async def chat(self, messages, temperature: float = 0.7, max_tokens: int = 4096) -> str:
        self.ensure_configured()

        if not self.free_keys:
            return await self._call_paid(messages, temperature, max_tokens)

        start = self.next_free_index()
        try:
            return await self._free_pass(start, messages, temperature, max_tokens)
        except AllKeysFailedError as exc:
            if self.has_paid_key:
                print("[KEYS] 免费密钥已全部失败，切换到付费密钥")
                return await self._call_paid(messages, temperature, max_tokens)

            cooldown = parse_retry_after(str(exc.last_error), self.default_cooldown, self.max_retry_after)
            print(f"[RETRY] 所有免费密钥均被限流，冷却 {cooldown:.1f} 秒后再尝试一轮...")
            await self._sleep(cooldown)
            return await self._free_pass(start, messages, temperature, max_tokens)

    # ==================== 内部实现 ====================

    def _client_for(self, key: str) -> LLMClient:
        if key not in self._clients:
            self._clients[key] = self.client_factory(key)
        return self._clients[key]

    def next_free_index(self) -> int:
        """主动轮询：每次逻辑调用推进一次计数"""
        index = self.call_count % len(self.free_keys)
        self.call_count += 1
        return index

    async def _free_pass(self, start: int, messages, temperature: float, max_tokens: int) -> str:
        """从轮询位置 start 开始依次尝试所有免费密钥，冷却后的第二轮沿用同一位置"""
        total = len(self.free_keys)
        last_error: Optional[Exception] = None

        for offset in range(total):
            index = (start + offset) % total
            print(f"[KEYS] 使用密钥 {index + 1}/{total} (调用 #{self.call_count})")
            try:
                result = await self._client_for(self.free_keys[index]).chat(
                    messages, temperature=temperature, max_tokens=max_tokens
                )
            except (QuotaExceededError, TransientServiceError) as e:
                last_error = e
                print(f"[WARN] 密钥 {index + 1} 调用失败：{e}，尝试下一个...")
                continue
            self.usage[index] = self.usage.get(index, 0) + 1
            return result

        raise AllKeysFailedError(last_error, total)

    async def _call_paid(self, messages, temperature: float, max_tokens: int) -> str:
        try:
            result = await self._client_for(self.paid_key).chat(
                messages, temperature=temperature, max_tokens=max_tokens
            )
        except (QuotaExceededError, TransientServiceError) as e:
            raise AllKeysFailedError(e, len(self.free_keys) + 1) from e
        self.paid_calls += 1
        return result


# ==================== 密钥持久化 ====================

class CredentialStore:
    """密钥存储 - 启动时读取，每次增删后立即写回"""

    def __init__(self, file_path: str):
        self.file_path = file_path
        self.free_keys: List[str] = []
        self.paid_key: Optional[str] = None
        self.load()

    def load(self) -> None:
        if not os.path.exists(self.file_path):
            return
        with open(self.file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        self.free_keys = [k for k in data.get("free_keys", []) if k]
        self.paid_key = data.get("paid_key") or None

    def save(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.file_path))
        os.makedirs(directory, exist_ok=True)
        with open(self.file_path, 'w', encoding='utf-8') as f:
            json.dump({"free_keys": self.free_keys, "paid_key": self.paid_key}, f, indent=2)

    def add_free_key(self, key: str) -> bool:
        key = key.strip()
        if not key or key in self.free_keys:
            return False
        self.free_keys.append(key)
        self.save()
        return True

    def remove_free_key(self, index: int) -> str:
        if index < 0 or index >= len(self.free_keys):
            raise IndexError(f"密钥索引越界：{index}")
        removed = self.free_keys.pop(index)
        self.save()
        return removed

    def set_paid_key(self, key: str) -> None:
        key = key.strip()
        if not key:
            raise ValueError("付费密钥不能为空")
        self.paid_key = key
        self.save()

    def clear_paid_key(self) -> None:
        self.paid_key = None
        self.save()

    def masked(self) -> Dict[str, object]:
        """用于展示的脱敏视图"""
        return {
            "free_keys": [mask_key(k) for k in self.free_keys],
            "paid_key": mask_key(self.paid_key) if self.paid_key else None,
            "total": len(self.free_keys) + (1 if self.paid_key else 0)
        }
