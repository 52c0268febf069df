import unittest

from vodscout.core.matcher import CandidateMatcher
from vodscout.models.candidate import Candidate


def _candidate(title, year="2020", episodes=("https://cdn.example.com/1.m3u8",), source="s1", item_id=None):
    return Candidate(
        source=source,
        source_name=source.upper(),
        id=item_id or title,
        title=title,
        year=year,
        episodes=tuple(episodes),
    )


class TestCandidateMatcher(unittest.TestCase):
    def setUp(self):
        self.matcher = CandidateMatcher()

    def test_year_and_type_gates(self):
        foo = _candidate("Foo", year="2020")
        self.assertEqual(self.matcher.match("Foo", "2021", None, [foo]), [])
        self.assertEqual(self.matcher.match("Foo", "2020", "tv", [foo]), [])
        self.assertEqual(self.matcher.match("Foo", "2020", "movie", [foo]), [foo])

    def test_tv_requires_more_than_one_episode(self):
        show = _candidate("Foo", episodes=("https://a/1.m3u8", "https://a/2.m3u8"))
        self.assertEqual(self.matcher.match("Foo", None, "tv", [show]), [show])
        self.assertEqual(self.matcher.match("Foo", None, "movie", [show]), [])

    def test_containment_ignores_whitespace_and_case(self):
        item = _candidate("The Wandering  Earth II")
        self.assertEqual(self.matcher.exact_matches("wandering earth", None, None, [item]), [item])

    def test_sequel_number_drift(self):
        item = _candidate("死神来了6：血脉诅咒")
        self.assertTrue(self.matcher.title_matches("死神来了：血脉诅咒", item.title))

    def test_keyword_subset(self):
        self.assertTrue(self.matcher.title_matches("Knight Dark", "The Dark Knight Rises"))
        self.assertFalse(self.matcher.title_matches("Knight Bright", "The Dark Knight Rises"))

    def test_relaxed_english_ambiguity_cap(self):
        pool = [_candidate(f"Galaxy Voyagers {i}", item_id=str(i)) for i in range(6)]
        self.assertEqual(self.matcher.exact_matches("Galactic Voyage Chronicles", None, None, pool), [])
        self.assertEqual(self.matcher.match("Galactic Voyage Chronicles", None, None, pool), [])
        self.assertEqual(self.matcher.match("Galactic Voyage Chronicles", None, None, pool[:5]), pool[:5])

    def test_relaxed_cjk_character_overlap(self):
        item = _candidate("流浪的地球")
        unrelated = _candidate("霸王别姬", item_id="x")
        self.assertEqual(self.matcher.match("流浪地球2", None, None, [item, unrelated]), [item])

    def test_relaxed_pass_respects_year(self):
        item = _candidate("流浪的地球", year="2019")
        self.assertEqual(self.matcher.match("流浪地球2", "2023", None, [item]), [])

    def test_english_query_detection(self):
        self.assertTrue(CandidateMatcher.is_english_query("Star Wars 星球"))
        self.assertFalse(CandidateMatcher.is_english_query("星球大战 War"))

    def test_deduplicate_keeps_first_occurrence(self):
        first = _candidate("Foo", item_id="1")
        again = _candidate("Foo (repost)", item_id="1")
        other = _candidate("Foo", source="s2", item_id="1")
        self.assertEqual(CandidateMatcher.deduplicate([first, again, other]), [first, other])

    def test_match_is_deterministic(self):
        pool = [_candidate(f"流浪地球 {i}", item_id=str(i)) for i in range(4)]
        self.assertEqual(
            self.matcher.match("流浪地球", None, None, pool),
            self.matcher.match("流浪地球", None, None, pool),
        )


if __name__ == "__main__":
    unittest.main()
