import unittest

from vodscout.core.variants import VariantGenerator, generate_search_variants


class TestVariantGenerator(unittest.TestCase):
    def setUp(self):
        self.gen = VariantGenerator()

    def test_first_variant_is_trimmed_query(self):
        self.assertEqual(self.gen.generate("  Inception  "), ["Inception"])

    def test_blank_query_yields_nothing(self):
        self.assertEqual(self.gen.generate("   "), [])
        self.assertEqual(self.gen.generate(None), [])

    def test_generation_is_deterministic(self):
        query = "死神来了：血脉诅咒"
        self.assertEqual(self.gen.generate(query), self.gen.generate(query))

    def test_space_separated_title_gets_colon_forms(self):
        variants = self.gen.generate("死神来了 血脉诅咒")
        self.assertEqual(variants[0], "死神来了 血脉诅咒")
        self.assertIn("死神来了：血脉诅咒", variants)
        self.assertIn("死神来了:血脉诅咒", variants)
        self.assertIn("死神来了血脉诅咒", variants)

    def test_full_width_colon_variants_in_trust_order(self):
        self.assertEqual(
            self.gen.generate("死神来了：血脉诅咒"),
            [
                "死神来了：血脉诅咒",
                "死神来了 血脉诅咒",
                "死神来了血脉诅咒",
                "死神来了:血脉诅咒",
                "死神来了",
                "血脉诅咒",
            ],
        )

    def test_season_marker_concatenation(self):
        self.assertEqual(
            self.gen.generate("中餐厅 第九季"),
            ["中餐厅 第九季", "中餐厅第九季", "中餐厅：第九季", "中餐厅:第九季", "中餐厅"],
        )

    def test_stop_word_first_token_is_not_a_variant(self):
        variants = self.gen.generate("The Dark Knight")
        self.assertEqual(variants, ["The Dark Knight", "TheDarkKnight", "The：Dark：Knight", "The:Dark:Knight"])
        self.assertNotIn("The", variants)

    def test_other_full_width_punctuation_mapped_to_ascii(self):
        variants = generate_search_variants("你好，世界（导演版）")
        self.assertEqual(variants[0], "你好，世界（导演版）")
        self.assertIn("你好,世界(导演版)", variants)
        self.assertIn("你好世界导演版", variants)

    def test_collapsed_spaces(self):
        variants = self.gen.generate("Breaking   Bad")
        self.assertIn("Breaking Bad", variants)
        self.assertIn("BreakingBad", variants)
        self.assertEqual(len(variants), len(set(variants)))


if __name__ == "__main__":
    unittest.main()
