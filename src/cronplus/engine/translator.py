"""文件名通配翻译

translate(source_name, pattern) 是纯函数：
- 空模式返回源文件名
- 不含 "." 的模式只翻译文件名部分，扩展名沿用源文件（含点）
- 否则在第一个 "." 处拆分，文件名与扩展名分别翻译

"?" 取源文本中与模式下标相同位置的字符，而不是当前匹配位置的字符。
"""

import os
from pathlib import Path


def _split_source(source_name: str) -> tuple[str, str]:
    """拆分源文件名为 (文件名, 不含点的扩展名)"""
    stem, suffix = os.path.splitext(source_name)
    return stem, suffix[1:]


def translate_part(source: str, part: str) -> str:
    """将单个模式片段翻译为目标文本

    Args:
        source: 源文本（文件名或扩展名）
        part: 模式片段

    Returns:
        翻译结果
    """
    if not part:
        return source
    if "*" not in part and "?" not in part:
        return part
    if part == "*":
        return source

    out: list[str] = []
    cursor = 0
    star_used = False
    length = len(source)
    for i, ch in enumerate(part):
        if ch == "*":
            if not star_used:
                if cursor < length:
                    out.append(source[cursor:])
                cursor = length
                star_used = True
        elif ch == "?":
            if i < length and cursor < length:
                out.append(source[i])
                cursor = max(cursor, i + 1)
            else:
                out.append("_")
        else:
            out.append(ch)
            if not star_used and cursor < length and i < length:
                cursor = i + 1
    return "".join(out)


def translate(source_name: str, pattern: str) -> str:
    """按目标模式翻译文件名

    Args:
        source_name: 源文件名（不含目录）
        pattern: 目标模式，如 "*.bak"、"d??t.txt"、"archive"

    Returns:
        目标文件名
    """
    if not pattern:
        return source_name

    stem, ext = _split_source(source_name)
    if "." not in pattern:
        resolved = translate_part(stem, pattern)
        return resolved + ("." + ext if ext else "")

    name_pattern, ext_pattern = pattern.split(".", 1)
    return translate_part(stem, name_pattern) + "." + translate_part(ext, ext_pattern)


def translate_path(source_path: str | Path, pattern: str, dest_folder: str | Path) -> Path:
    """翻译源文件名并拼接到目标目录"""
    return Path(dest_folder) / translate(Path(source_path).name, pattern)
