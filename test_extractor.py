# -*- coding: utf-8 -*-
"""Phase 2: 人物身份提取测试 - LLM 驱动版本"""
import asyncio
import json

import pytest

from conftest import SAMPLE_SCRIPT, make_handler, name_pass_response, visual_pass_response
from errors import ResponseParseError
from extractor import IdentityExtractor
from llm_client import MockLLMClient


class TestIdentityExtractor:
    """测试两轮身份提取"""

    def test_two_pass_extraction(self):
        client = MockLLMClient(handler=make_handler())
        extraction = asyncio.run(IdentityExtractor(client).extract(SAMPLE_SCRIPT))

        assert list(extraction.characters) == ["CHAR_A", "CHAR_B"]
        assert extraction.characters["CHAR_A"].name == "Elena Marsh"
        assert extraction.era == "Late 18th century coastal town"
        assert [c.name for c in extraction.recurring] == ["Elena Marsh", "Tomas Reed"]

        assert len(client.calls) == 2
        assert client.calls[0].startswith("TASK: RECURRING CHARACTER LIST")
        assert client.calls[1].startswith("TASK: VISUAL IDENTITY LOCK")
        assert "1. Elena Marsh" in client.calls[1]

    def test_visual_pass_skipped_without_recurring_characters(self):
        client = MockLLMClient(responses=['{"characters": [], "era": "Modern day"}'])
        extraction = asyncio.run(IdentityExtractor(client).extract("A quiet empty street."))

        assert extraction.characters == {}
        assert extraction.era == "Modern day"
        assert len(client.calls) == 1

    def test_duplicate_names_are_merged(self):
        client = MockLLMClient(responses=[json.dumps({
            "characters": [{"name": "Elena Marsh"}, {"name": "elena marsh "}, {"name": "Tomas Reed"}],
            "era": "1790s"
        })])
        recurring, era = asyncio.run(IdentityExtractor(client).extract_recurring(SAMPLE_SCRIPT))
        assert [c.name for c in recurring] == ["Elena Marsh", "Tomas Reed"]
        assert era == "1790s"

    def test_ids_are_sorted_by_letter(self):
        data = json.loads(visual_pass_response())
        shuffled = {"CHAR_B": data["characters"]["CHAR_B"], "CHAR_A": data["characters"]["CHAR_A"]}
        client = MockLLMClient(responses=[name_pass_response(), json.dumps({"characters": shuffled})])
        extraction = asyncio.run(IdentityExtractor(client).extract(SAMPLE_SCRIPT))
        assert list(extraction.characters) == ["CHAR_A", "CHAR_B"]

    def test_invalid_character_id_is_a_parse_error(self):
        data = json.loads(visual_pass_response())
        bad = {"characters": {"elena": data["characters"]["CHAR_A"]}}
        client = MockLLMClient(responses=[name_pass_response(), json.dumps(bad)])
        with pytest.raises(ResponseParseError):
            asyncio.run(IdentityExtractor(client).extract(SAMPLE_SCRIPT))

    def test_unparseable_name_pass_is_fatal(self):
        client = MockLLMClient(responses=["I cannot help with that."])
        with pytest.raises(ResponseParseError):
            asyncio.run(IdentityExtractor(client).extract(SAMPLE_SCRIPT))

    def test_fenced_json_is_accepted(self):
        fenced = "Here you go:\n```json\n" + name_pass_response() + "\n```"
        client = MockLLMClient(responses=[fenced, visual_pass_response()])
        extraction = asyncio.run(IdentityExtractor(client).extract(SAMPLE_SCRIPT))
        assert len(extraction.characters) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
