"""文件名通配翻译测试

测试内容：
1. 目标目录 /d + 源文件 source.txt 的固定用例
2. 片段翻译的游标规则
3. 纯函数性质
"""

from pathlib import Path

import pytest
from cronplus.engine.translator import translate, translate_part, translate_path


class TestTranslatePath:
    """目标目录拼接"""

    @pytest.mark.parametrize(
        "pattern,expected",
        [
            ("dest.txt", "/d/dest.txt"),
            ("*.txt", "/d/source.txt"),
            ("dest.*", "/d/dest.txt"),
            ("d??t.txt", "/d/dout.txt"),
            ("", "/d/source.txt"),
            ("dest", "/d/dest.txt"),
            ("d?????t.txt", "/d/dourcet.txt"),
        ],
    )
    def test_reference_vectors(self, pattern: str, expected: str):
        """固定用例逐一匹配"""
        assert translate_path("/in/source.txt", pattern, "/d") == Path(expected)


class TestTranslate:
    """文件名翻译规则"""

    def test_empty_pattern_keeps_name(self):
        assert translate("report.final.pdf", "") == "report.final.pdf"

    def test_name_only_pattern_keeps_source_extension(self):
        """不含 "." 的模式沿用源扩展名"""
        assert translate("invoice.PDF", "archived") == "archived.PDF"

    def test_name_only_pattern_without_source_extension(self):
        assert translate("README", "notes") == "notes"

    def test_split_at_first_dot(self):
        """模式在第一个 "." 处拆分，扩展名片段可含点"""
        assert translate("data.csv", "out.tar.gz") == "out.tar.gz"

    def test_star_after_literals_emits_remainder_from_cursor(self):
        """字面字符按模式下标推进游标，* 只输出游标之后的部分"""
        assert translate("photo.jpeg", "img_*.*") == "img_o.jpeg"

    def test_question_mark_past_source_end_emits_underscore(self):
        assert translate("ab.txt", "????.txt") == "ab__.txt"

    def test_empty_extension_part_keeps_source_extension(self):
        assert translate("scan.tif", "page.") == "page.tif"

    def test_deterministic(self):
        """相同输入多次调用结果一致"""
        results = {translate("source.txt", "d??t.*") for _ in range(5)}
        assert results == {"dout.txt"}


class TestTranslatePart:
    """片段翻译的游标规则"""

    def test_literal_part_returned_verbatim(self):
        assert translate_part("source", "dest") == "dest"

    def test_single_star_returns_source(self):
        assert translate_part("source", "*") == "source"

    def test_star_emits_remainder_from_cursor(self):
        """字面字符推进游标后，* 输出剩余部分"""
        assert translate_part("source", "XY*") == "XYurce"

    def test_second_star_is_noop(self):
        assert translate_part("source", "*-*") == "source-"

    def test_question_uses_pattern_index_not_cursor(self):
        """? 取源文本中与模式下标相同位置的字符"""
        assert translate_part("abcdef", "??x?") == "abxd"

    def test_question_after_star_emits_underscore(self):
        """* 之后游标已到末尾，? 输出 _"""
        assert translate_part("abc", "*?") == "abc_"

    def test_literal_after_star_does_not_move_cursor(self):
        assert translate_part("abc", "*z?") == "abcz_"
