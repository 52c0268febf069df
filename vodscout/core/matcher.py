"""
Candidate matching
Filters raw catalog results against the requested title with language-aware rules
"""
from typing import Dict, Iterable, List, Optional, Sequence, Set
import logging
import re

from ..models.candidate import Candidate
from .variants import STOP_WORDS

logger = logging.getLogger(__name__)

CJK_CHAR_RE = re.compile(r"[\u4e00-\u9fff]")
ASCII_LETTER_RE = re.compile(r"[a-z]")
NON_WORD_RE = re.compile(r"[^\w\u4e00-\u9fff]")
NON_WORD_OR_SPACE_RE = re.compile(r"[^\w\s\u4e00-\u9fff]")
DIGITS_AND_COLONS_RE = re.compile(r"\d+|[：:]")

ENGLISH_MATCH_CAP = 5
CJK_MATCH_CAP = 20
MIN_TOKEN_MATCH_RATIO = 0.5
MIN_CHAR_OVERLAP_RATIO = 0.5


def _compact(text: str) -> str:
    return re.sub(r"\s+", "", text or "").lower()


class CandidateMatcher:
    """
    Decides which catalog results actually are the requested title.

    match() runs the strict pass first; only when nothing survives does it fall
    back to the relaxed language-aware pass. Both passes honour the year and
    type gates. Output is deterministic for identical inputs.
    """

    def __init__(self, english_cap: int = ENGLISH_MATCH_CAP, cjk_cap: int = CJK_MATCH_CAP):
        self.english_cap = english_cap
        self.cjk_cap = cjk_cap

    def match(
        self,
        query_title: str,
        query_year: Optional[str],
        wanted_type: Optional[str],
        candidates: Sequence[Candidate],
    ) -> List[Candidate]:
        matched = self.exact_matches(query_title, query_year, wanted_type, candidates)
        if not matched:
            matched = self.relaxed_matches(query_title, query_year, wanted_type, candidates)
        return self.deduplicate(matched)

    # Strict pass

    def exact_matches(
        self,
        query_title: str,
        query_year: Optional[str],
        wanted_type: Optional[str],
        candidates: Iterable[Candidate],
    ) -> List[Candidate]:
        return [
            c for c in candidates
            if self.title_matches(query_title, c.title)
            and self.year_matches(query_year, c)
            and self.type_matches(wanted_type, c)
        ]

    def title_matches(self, query_title: str, candidate_title: str) -> bool:
        query = _compact(query_title)
        title = _compact(candidate_title)
        if not query or not title:
            return False
        if query in title or title in query:
            return True
        # Sequel numbering drift: "死神来了：血脉诅咒" vs "死神来了6：血脉诅咒"
        stripped_query = DIGITS_AND_COLONS_RE.sub("", query)
        if stripped_query and stripped_query == DIGITS_AND_COLONS_RE.sub("", title):
            return True
        return self._all_keywords_present(query_title, title)

    @staticmethod
    def _all_keywords_present(query_title: str, compact_title: str) -> bool:
        keywords = [
            w for w in NON_WORD_OR_SPACE_RE.sub("", (query_title or "").lower()).split()
            if len(w) > 0
        ]
        if not keywords:
            return False
        return all(word in compact_title for word in keywords)

    @staticmethod
    def year_matches(query_year: Optional[str], candidate: Candidate) -> bool:
        if not query_year:
            return True
        return (candidate.year or "").lower() == str(query_year).strip().lower()

    @staticmethod
    def type_matches(wanted_type: Optional[str], candidate: Candidate) -> bool:
        if not wanted_type:
            return True
        if wanted_type == "tv":
            return len(candidate.episodes) > 1
        if wanted_type == "movie":
            return len(candidate.episodes) == 1
        return False

    # Relaxed pass

    @staticmethod
    def is_english_query(query_title: str) -> bool:
        lowered = (query_title or "").lower()
        letters = len(ASCII_LETTER_RE.findall(lowered))
        cjk = len(CJK_CHAR_RE.findall(lowered))
        return letters > cjk

    def relaxed_matches(
        self,
        query_title: str,
        query_year: Optional[str],
        wanted_type: Optional[str],
        candidates: Sequence[Candidate],
    ) -> List[Candidate]:
        pool = [
            c for c in candidates
            if self.year_matches(query_year, c) and self.type_matches(wanted_type, c)
        ]
        if self.is_english_query(query_title):
            tokens = self.english_tokens(query_title)
            logger.info("Relaxed English matching for %r with keywords %s", query_title, tokens)
            matches = [c for c in pool if self._english_match(tokens, c.title)]
            cap = self.english_cap
        else:
            normalized = NON_WORD_RE.sub("", (query_title or "").lower().strip())
            logger.info("Relaxed CJK matching for %r", query_title)
            matches = [c for c in pool if self._cjk_match(normalized, c.title)]
            cap = self.cjk_cap

        logger.info("Relaxed matching kept %d/%d candidates", len(matches), len(candidates))
        if len(matches) > cap:
            # Too ambiguous to pick from.
            logger.info("Relaxed matching exceeded cap of %d, treating as no match", cap)
            return []
        return matches

    @staticmethod
    def english_tokens(text: str) -> List[str]:
        words = re.sub(r"[^\w\s]", " ", (text or "").lower()).split()
        return [w for w in words if len(w) > 2 and w not in STOP_WORDS]

    @staticmethod
    def _tokens_similar(query_word: str, title_word: str) -> bool:
        if title_word in query_word or query_word in title_word:
            return True
        return len(query_word) > 4 and len(title_word) > 4 and query_word[:4] == title_word[:4]

    def _english_match(self, query_tokens: List[str], candidate_title: str) -> bool:
        if not query_tokens:
            return False
        title_words = [w for w in re.sub(r"[^\w\s]", " ", candidate_title.lower()).split() if len(w) > 1]
        matched = [
            q for q in query_tokens
            if any(self._tokens_similar(q, t) for t in title_words)
        ]
        return len(matched) / len(query_tokens) >= MIN_TOKEN_MATCH_RATIO

    @staticmethod
    def _cjk_match(normalized_query: str, candidate_title: str) -> bool:
        if not normalized_query:
            return False
        normalized_title = NON_WORD_RE.sub("", candidate_title.lower())
        if not normalized_title:
            return False
        if normalized_query in normalized_title or normalized_title in normalized_query:
            return True
        query_chars: Set[str] = set(normalized_query)
        shared = query_chars & set(normalized_title)
        return len(shared) / len(query_chars) >= MIN_CHAR_OVERLAP_RATIO

    # Dedup

    @staticmethod
    def deduplicate(candidates: Iterable[Candidate]) -> List[Candidate]:
        """Keep the first candidate per (source, id)"""
        seen: Dict[str, Candidate] = {}
        for candidate in candidates:
            if candidate.key not in seen:
                seen[candidate.key] = candidate
        return list(seen.values())
