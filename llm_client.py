# -*- coding: utf-8 -*-
"""远程文本服务客户端

LLMClient 是流水线看到的唯一远程接口。生产环境使用 OpenAI 兼容协议
（默认指向 Gemini 的 OpenAI 兼容端点），测试使用 MockLLMClient。
"""
import json
import re
from typing import Any, Callable, Dict, List, Optional, Union

from openai import AsyncOpenAI, APIStatusError, APIConnectionError, APITimeoutError

from errors import (
    ContentBlockedError, EmptyResponseError, QuotaExceededError,
    RemoteServiceError, ResponseParseError, TransientServiceError
)


# ==================== LLM 客户端接口 ====================

class LLMClient:
    """LLM 客户端基类 - 可继承实现不同平台的调用"""

    async def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7,
                   max_tokens: int = 4096) -> str:
        """发送对话请求并返回响应文本"""
        raise NotImplementedError("子类必须实现 chat 方法")

    def ensure_configured(self) -> None:
        """在任何远程调用之前检查配置，默认无需检查"""

    @property
    def supports_parallel(self) -> bool:
        """是否可以并发批量调用（仅付费档）"""
        return False

    def pacing_delay(self) -> float:
        """两次顺序调用之间的建议间隔（秒）"""
        return 0.0


MockReply = Union[str, Exception]


class MockLLMClient(LLMClient):
    """Mock LLM 客户端 - 用于测试时无需真实 API 调用

    响应来源优先级：handler(prompt) > responses 队列 > mock_response。
    返回值若是异常实例则直接抛出，用于模拟拦截、限流等情况。
    """

    def __init__(self, mock_response: str = "", responses: Optional[List[MockReply]] = None,
                 handler: Optional[Callable[[str], MockReply]] = None,
                 parallel: bool = False, delay: float = 0.0):
        self.mock_response = mock_response
        self.responses = list(responses or [])
        self.handler = handler
        self.parallel = parallel
        self.delay = delay
        self.calls: List[str] = []

    async def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7,
                   max_tokens: int = 4096) -> str:
        prompt = messages[-1]["content"] if messages else ""
        self.calls.append(prompt)

        if self.handler is not None:
            reply = self.handler(prompt)
        elif self.responses:
            reply = self.responses.pop(0)
        else:
            reply = self.mock_response

        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def supports_parallel(self) -> bool:
        return self.parallel

    def pacing_delay(self) -> float:
        return self.delay


class OpenAICompatibleClient(LLMClient):
    """OpenAI 兼容 API 客户端 - 单个密钥，不做内部重试

    重试与密钥轮换由 KeyRotator 负责，这里只把 SDK 的错误映射为流水线的异常类型：
    - HTTP 429 / 403: QuotaExceededError（切换密钥）
    - HTTP 5xx / 连接错误: TransientServiceError（切换密钥）
    - 无候选或空文本: EmptyResponseError
    - finish_reason == content_filter: ContentBlockedError
    """

    def __init__(self, api_key: str, base_url: Optional[str] = None,
                 model: str = "gemini-2.5-flash", timeout: float = 120.0):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.timeout = timeout
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url if self.base_url else None,
                max_retries=0,
                timeout=self.timeout
            )
        return self._client

    async def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7,
                   max_tokens: int = 4096) -> str:
        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
        except APIStatusError as e:
            status_code = e.status_code
            if status_code in (403, 429):
                raise QuotaExceededError(status_code, str(e)) from e
            if 500 <= status_code < 600:
                raise TransientServiceError(f"HTTP {status_code}: {e}") from e
            raise RemoteServiceError(f"HTTP {status_code}: {e}") from e
        except (APIConnectionError, APITimeoutError) as e:
            raise TransientServiceError(f"连接错误：{e}") from e

        if not response.choices:
            raise EmptyResponseError("远程服务没有返回任何候选结果")

        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise ContentBlockedError("远程服务因内容策略拦截了本次请求")

        content = choice.message.content if choice.message else None
        if not content or not content.strip():
            raise EmptyResponseError(f"远程服务返回空文本 (finish_reason={choice.finish_reason})")

        if choice.finish_reason and choice.finish_reason != "stop":
            print(f"[WARN] 响应可能不完整，finish_reason={choice.finish_reason}")

        return content


# ==================== 响应解析 ====================

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def extract_json_block(response: str) -> Dict[str, Any]:
    """从响应文本中提取第一个合法的 JSON 对象

    远程服务常常把 JSON 包在 markdown 代码块或说明文字中，依次尝试：
    整段解析、代码块内容、从每个 '{' 开始的第一个完整对象。

    Raises:
        ResponseParseError: 找不到任何合法 JSON 对象
    """
    if response is None or not response.strip():
        raise ResponseParseError("响应为空", raw=response or "")

    text = response.strip()
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    for match in _FENCED_BLOCK.finditer(text):
        try:
            data = json.loads(match.group(1))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            continue

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            data, _ = decoder.raw_decode(text, start)
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass
        start = text.find("{", start + 1)

    raise ResponseParseError("响应中没有合法的 JSON 对象", raw=response)


def user_message(prompt: str) -> List[Dict[str, str]]:
    return [{"role": "user", "content": prompt}]
