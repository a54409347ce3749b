# -*- coding: utf-8 -*-
"""远程文本服务客户端测试"""
import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from errors import (
    ContentBlockedError, EmptyResponseError, QuotaExceededError, RemoteServiceError,
    ResponseParseError, TransientServiceError
)
from llm_client import MockLLMClient, OpenAICompatibleClient, extract_json_block, user_message


def fake_response(content="{}", finish_reason="stop", choices=True):
    if not choices:
        return SimpleNamespace(choices=[])
    return SimpleNamespace(choices=[
        SimpleNamespace(finish_reason=finish_reason, message=SimpleNamespace(content=content))
    ])


def status_error(cls, status_code, message="error"):
    request = httpx.Request("POST", "https://example.invalid/v1/chat/completions")
    response = httpx.Response(status_code, request=request)
    return cls(message, response=response, body=None)


class FakeCompletions:
    def __init__(self, outcome):
        self.outcome = outcome
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def make_client(outcome):
    client = OpenAICompatibleClient(api_key="test-key", model="test-model")
    completions = FakeCompletions(outcome)
    client._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return client, completions


def chat(client):
    return asyncio.run(client.chat(user_message("hello"), temperature=0.2, max_tokens=128))


class TestOpenAICompatibleClient:
    """测试错误映射"""

    def test_returns_content(self):
        client, completions = make_client(fake_response('{"ok": true}'))
        assert chat(client) == '{"ok": true}'
        assert completions.kwargs["model"] == "test-model"
        assert completions.kwargs["max_tokens"] == 128

    def test_rate_limit_is_quota_error(self):
        client, _ = make_client(status_error(openai.RateLimitError, 429, "retry in 7s"))
        with pytest.raises(QuotaExceededError) as exc_info:
            chat(client)
        assert exc_info.value.status_code == 429

    def test_forbidden_is_quota_error(self):
        client, _ = make_client(status_error(openai.PermissionDeniedError, 403))
        with pytest.raises(QuotaExceededError):
            chat(client)

    def test_server_error_is_transient(self):
        client, _ = make_client(status_error(openai.InternalServerError, 503))
        with pytest.raises(TransientServiceError):
            chat(client)

    def test_bad_request_is_remote_error(self):
        client, _ = make_client(status_error(openai.BadRequestError, 400))
        with pytest.raises(RemoteServiceError) as exc_info:
            chat(client)
        assert not isinstance(exc_info.value, (QuotaExceededError, TransientServiceError))

    def test_connection_error_is_transient(self):
        request = httpx.Request("POST", "https://example.invalid/v1/chat/completions")
        client, _ = make_client(openai.APIConnectionError(request=request))
        with pytest.raises(TransientServiceError):
            chat(client)

    def test_no_choices_is_empty(self):
        client, _ = make_client(fake_response(choices=False))
        with pytest.raises(EmptyResponseError):
            chat(client)

    def test_blank_content_is_empty(self):
        client, _ = make_client(fake_response("   "))
        with pytest.raises(EmptyResponseError):
            chat(client)

    def test_content_filter_is_blocked(self):
        client, _ = make_client(fake_response(None, finish_reason="content_filter"))
        with pytest.raises(ContentBlockedError):
            chat(client)


class TestMockLLMClient:
    """测试 Mock 客户端"""

    def test_priority_and_recording(self):
        client = MockLLMClient(mock_response="default", responses=["first"])
        assert asyncio.run(client.chat(user_message("a"))) == "first"
        assert asyncio.run(client.chat(user_message("b"))) == "default"
        assert client.calls == ["a", "b"]

    def test_exception_reply_is_raised(self):
        client = MockLLMClient(responses=[EmptyResponseError("none")])
        with pytest.raises(EmptyResponseError):
            asyncio.run(client.chat(user_message("a")))


class TestExtractJsonBlock:
    """测试 JSON 提取"""

    def test_plain_json(self):
        assert extract_json_block('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        assert extract_json_block('Sure!\n```json\n{"a": 2}\n```\nDone.') == {"a": 2}

    def test_json_embedded_in_prose(self):
        assert extract_json_block('The answer is {"a": {"b": 3}} as requested.') == {"a": {"b": 3}}

    def test_skips_invalid_braces(self):
        assert extract_json_block('{not json} then {"a": 4}') == {"a": 4}

    @pytest.mark.parametrize("text", ["", "   ", "no braces here", "[1, 2, 3]"])
    def test_no_object_raises(self, text):
        with pytest.raises(ResponseParseError):
            extract_json_block(text)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
