# -*- coding: utf-8 -*-
"""净化检测测试"""
import pytest

from models import BackgroundLock, FullScenePrompt
from sanitization import KeywordSanitizationDetector, NullSanitizationPolicy


def make_prompt(setting: str, summary: str, scenery: str = "") -> FullScenePrompt:
    return FullScenePrompt(
        scene_id="S1", duration_sec=8.0, visual_style="ink",
        background_lock=BackgroundLock(setting=setting, scenery=scenery),
        action_summary=summary
    )


class TestKeywordSanitizationDetector:
    """测试关键词启发式"""

    def test_burning_city_turned_into_workshop_is_flagged(self):
        detector = KeywordSanitizationDetector()
        prompt = make_prompt("A quiet workshop", "Elena studies a map by candlelight")
        assert detector.is_sanitized("The city was burning as the army advanced.", prompt)

    def test_faithful_output_is_not_flagged(self):
        detector = KeywordSanitizationDetector()
        prompt = make_prompt("Burning warehouses on the docks", "Elena runs through the fire")
        assert not detector.is_sanitized("By nightfall the warehouses were burning.", prompt)

    def test_calm_narration_is_not_flagged(self):
        detector = KeywordSanitizationDetector()
        prompt = make_prompt("A peaceful garden", "Tomas smiles at his daughter")
        assert not detector.is_sanitized("Tomas spent the afternoon with his daughter.", prompt)

    def test_no_mundane_term_is_not_flagged(self):
        detector = KeywordSanitizationDetector()
        prompt = make_prompt("Harbor at night", "Elena looks toward the horizon")
        assert not detector.is_sanitized("The soldiers killed the guards.", prompt)

    def test_spanish_keywords(self):
        detector = KeywordSanitizationDetector()
        prompt = make_prompt("Un taller tranquilo", "Elena lee una carta")
        assert detector.is_sanitized("La ciudad se quemaba y había sangre en las calles.", prompt)

    def test_whole_words_only(self):
        detector = KeywordSanitizationDetector()
        assert detector.severity_terms("a warm diet of materials") == []
        assert detector.severity_terms("The WAR began; he died.") == ["war", "died"]

    def test_custom_keyword_lists(self):
        detector = KeywordSanitizationDetector(severity_keywords=[r"duel\w*"], mundane_keywords=[r"picnic\w*"])
        prompt = make_prompt("A sunny meadow", "friends share a picnic")
        assert detector.is_sanitized("The duel ended at dawn.", prompt)


class TestNullSanitizationPolicy:
    def test_never_flags(self):
        prompt = make_prompt("A quiet workshop", "calm reading")
        assert not NullSanitizationPolicy().is_sanitized("The city was burning.", prompt)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
