"""
Search variant generation
Derives alternative catalog queries from a title to survive inconsistent indexing
"""
from typing import List
import re


CJK_PUNCTUATION_RE = re.compile(r"[：；，。！？、“”‘’（）【】《》]")
CJK_CHAR_RE = re.compile(r"[\u4e00-\u9fff]")
ALL_PUNCTUATION_RE = re.compile(r"[：；，。！？、“”‘’（）【】《》:;,.!?'\"()\[\]<>]")
ORDINAL_MARKER_RE = re.compile(r"第|季|集|部|篇|章")

FULL_WIDTH_COLON = "："

# Applied in order; colon is handled separately.
PUNCTUATION_MAP = (
    ("；", ";"),
    ("，", ","),
    ("。", "."),
    ("！", "!"),
    ("？", "?"),
    ("“", '"'),
    ("”", '"'),
    ("‘", "'"),
    ("’", "'"),
    ("（", "("),
    ("）", ")"),
    ("【", "["),
    ("】", "]"),
    ("《", "<"),
    ("》", ">"),
)

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "of", "in", "on", "at", "to", "for", "with", "by",
})


class VariantGenerator:
    """
    Turns one title into an ordered, de-duplicated list of search queries.

    The first entry is always the trimmed title; later entries are less
    trustworthy and only tried when earlier ones fail to match.
    """

    def generate(self, query: str) -> List[str]:
        trimmed = (query or "").strip()
        if not trimmed:
            return []

        variants: List[str] = []

        def add(value: str):
            if value and value not in variants:
                variants.append(value)

        add(trimmed)
        for variant in self._punctuation_variants(trimmed):
            add(variant)
        if " " in trimmed:
            for variant in self._space_variants(trimmed):
                add(variant)
        return variants

    def _punctuation_variants(self, query: str) -> List[str]:
        variants: List[str] = []
        if not CJK_PUNCTUATION_RE.search(query):
            return variants

        if FULL_WIDTH_COLON in query:
            # Titles are often indexed without the subtitle separator.
            variants.append(query.replace(FULL_WIDTH_COLON, " "))
            variants.append(query.replace(FULL_WIDTH_COLON, ""))
            variants.append(query.replace(FULL_WIDTH_COLON, ":"))

            parts = query.split(FULL_WIDTH_COLON)
            before = parts[0].strip()
            if before and before != query:
                variants.append(before)
            after = parts[1].strip() if len(parts) > 1 else ""
            if after:
                variants.append(after)

        cleaned = query
        for full_width, ascii_char in PUNCTUATION_MAP:
            cleaned = cleaned.replace(full_width, ascii_char)
        if cleaned != query:
            variants.append(cleaned)

        stripped = ALL_PUNCTUATION_RE.sub("", query)
        if stripped != query and stripped.strip() and CJK_CHAR_RE.search(stripped):
            variants.append(stripped)

        return variants

    def _space_variants(self, query: str) -> List[str]:
        variants: List[str] = []

        no_spaces = re.sub(r"\s+", "", query)
        if no_spaces != query:
            variants.append(no_spaces)

        collapsed = re.sub(r"\s+", " ", query)
        if collapsed != query:
            variants.append(collapsed)

        tokens = query.split()
        if len(tokens) >= 2:
            first, last = tokens[0], tokens[-1]
            # "中餐厅 第九季" -> "中餐厅第九季"
            if ORDINAL_MARKER_RE.search(last):
                variants.append(first + last)

            # "死神来了 血脉诅咒" -> "死神来了：血脉诅咒"
            variants.append(re.sub(r"\s+", FULL_WIDTH_COLON, query))
            variants.append(re.sub(r"\s+", ":", query))

            if len(first) >= 3 and first.lower() not in STOP_WORDS:
                variants.append(first)

        return variants


def generate_search_variants(query: str) -> List[str]:
    return VariantGenerator().generate(query)
