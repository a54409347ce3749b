# -*- coding: utf-8 -*-
"""文本分段引擎测试"""
import pytest

from conftest import SAMPLE_SCRIPT
from segmenter import fragment_duration, segment_script, split_sentences


def eight_word_sentence(n: int) -> str:
    return f"Sentence number {n} has exactly eight words here."


class TestSplitSentences:
    """测试句子切分"""

    def test_split_on_terminators(self):
        sentences = split_sentences('He ran. "Stop!" she cried. Why?')
        assert sentences == ["He ran.", '"Stop!"', "she cried.", "Why?"]

    def test_newline_is_a_boundary(self):
        assert split_sentences("first line without stop\nsecond line") == [
            "first line without stop", "second line"
        ]

    def test_blank_script(self):
        assert split_sentences("   \n\n  ") == []


class TestSegmentScript:
    """测试定时分段"""

    def test_three_eight_word_sentences_at_two_words_per_second(self):
        script = " ".join(eight_word_sentence(i) for i in range(3))
        fragments = segment_script(script, scene_duration=8.0, words_per_second=2.0)

        assert [(f.word_count, f.duration_sec) for f in fragments] == [(16, 8.0), (8, 4.0)]
        assert fragments[0].start_word == 0
        assert fragments[0].end_word == 16
        assert fragments[1].start_word == 16
        assert fragments[1].end_word == 24

    def test_word_count_is_preserved(self):
        fragments = segment_script(SAMPLE_SCRIPT, scene_duration=6.0)
        assert sum(f.word_count for f in fragments) == len(SAMPLE_SCRIPT.split())
        assert " ".join(f.text for f in fragments).split() == SAMPLE_SCRIPT.split()

    def test_fragments_are_contiguous(self):
        fragments = segment_script(SAMPLE_SCRIPT, scene_duration=5.0)
        for previous, current in zip(fragments, fragments[1:]):
            assert current.start_word == previous.end_word

    def test_minimum_duration(self):
        fragments = segment_script("Short.", scene_duration=8.0)
        assert len(fragments) == 1
        assert fragments[0].duration_sec == 4.0

    def test_duration_uses_actual_word_count(self):
        script = "one two three four five six seven eight nine ten eleven twelve thirteen fourteen fifteen " \
                 "sixteen seventeen eighteen nineteen twenty twentyone twentytwo."
        fragments = segment_script(script, scene_duration=8.0, words_per_second=2.5)
        assert fragments[0].word_count == 22
        assert fragments[0].duration_sec == 8.8

    def test_empty_script(self):
        assert segment_script("", scene_duration=8.0) == []

    def test_deterministic(self):
        assert segment_script(SAMPLE_SCRIPT, 8.0) == segment_script(SAMPLE_SCRIPT, 8.0)

    @pytest.mark.parametrize("duration,rate", [(0, 2.5), (-1, 2.5), (8.0, 0)])
    def test_rejects_non_positive_parameters(self, duration, rate):
        with pytest.raises(ValueError):
            segment_script("Some text.", scene_duration=duration, words_per_second=rate)

    def test_fragment_duration_rounding(self):
        assert fragment_duration(7, 2.5) == 4.0
        assert fragment_duration(23, 2.5) == 9.2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
