# -*- coding: utf-8 -*-
"""流水线异常类型

按恢复方式划分：
- 配置错误：在任何远程调用之前立即失败
- 远程服务错误：由密钥轮换、重试或本地回退处理
- 响应解析错误：重试，超过上限后走本地回退（身份提取除外）
- 用户取消：不是错误，单独的 GenerationCancelled
"""
from typing import Optional


class PipelineError(Exception):
    """流水线异常基类"""


class ConfigurationError(PipelineError):
    """配置错误"""


class NoCredentialsError(ConfigurationError):
    """没有配置任何 API 密钥"""

    def __init__(self, message: str = "No API keys configured"):
        super().__init__(message)


class RemoteServiceError(PipelineError):
    """远程文本服务错误基类"""


class QuotaExceededError(RemoteServiceError):
    """配额/鉴权失败 (HTTP 429 / 403)，应切换到下一个密钥"""

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class TransientServiceError(RemoteServiceError):
    """服务器 5xx 或网络连接错误"""


class AllKeysFailedError(RemoteServiceError):
    """本次调用中所有密钥均失败"""

    def __init__(self, last_error: Optional[Exception], attempts: int):
        detail = str(last_error) if last_error else "unknown error"
        super().__init__(f"All API keys failed after {attempts} attempt(s). Last error: {detail}")
        self.last_error = last_error
        self.attempts = attempts


class EmptyResponseError(RemoteServiceError):
    """远程服务返回空候选或空文本"""


class ContentBlockedError(RemoteServiceError):
    """远程服务明确返回内容策略拦截信号，不应对同一请求重试"""


class ResponseParseError(PipelineError):
    """响应中没有合法的结构化数据，或数据不符合 schema"""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class InvalidStateError(PipelineError):
    """在不允许的阶段调用了编排器操作"""


class GenerationCancelled(Exception):
    """用户取消，在下一个检查点生效"""
