import unittest

from language_detect import (
    DetectionResult,
    Language,
    detect_language,
    japanese_ratio,
)


class DetectLanguageTests(unittest.TestCase):
    def test_empty_input_returns_zero_confidence_sentinel(self) -> None:
        self.assertEqual(detect_language(""), DetectionResult(Language.EN, 0.0))
        self.assertEqual(detect_language("   \n\t"), DetectionResult(Language.EN, 0.0))

    def test_long_english_text_is_detected_with_full_confidence(self) -> None:
        result = detect_language("Hello, how are you today?")

        self.assertIs(result.language, Language.EN)
        self.assertAlmostEqual(result.confidence, 1.0)

    def test_long_japanese_text_is_detected(self) -> None:
        result = detect_language("これは日本語の文章です。よろしくお願いします。")

        self.assertIs(result.language, Language.JA)
        self.assertAlmostEqual(result.confidence, 1.0)

    def test_short_japanese_text_is_capped_at_point_eight(self) -> None:
        result = detect_language("こんにちは")

        self.assertIs(result.language, Language.JA)
        self.assertAlmostEqual(result.confidence, 0.8)

    def test_short_text_with_a_single_japanese_character(self) -> None:
        result = detect_language("OK です")

        self.assertIs(result.language, Language.JA)
        # 2 of 4 non-whitespace characters are Japanese.
        self.assertAlmostEqual(result.confidence, 0.75)

    def test_short_english_text_has_fixed_confidence(self) -> None:
        self.assertEqual(detect_language("Hi there"), DetectionResult(Language.EN, 0.7))

    def test_mixed_text_above_threshold_is_japanese(self) -> None:
        # 2 Japanese characters out of 20 non-whitespace characters.
        text = "abcdefghijklmnopqr日本"
        result = detect_language(text)

        self.assertIs(result.language, Language.JA)
        self.assertAlmostEqual(result.confidence, 0.6)

    def test_mixed_text_below_threshold_is_english(self) -> None:
        # 1 Japanese character out of 20 non-whitespace characters.
        text = "abcdefghijklmnopqrs日"
        result = detect_language(text)

        self.assertIs(result.language, Language.EN)
        self.assertAlmostEqual(result.confidence, 0.6 + 0.95 * 0.4)

    def test_surrounding_whitespace_does_not_change_the_result(self) -> None:
        self.assertEqual(detect_language("  こんにちは  "), detect_language("こんにちは"))

    def test_half_width_katakana_counts_as_japanese(self) -> None:
        self.assertIs(detect_language("ｶﾀｶﾅ").language, Language.JA)


class DetectionPropertyTests(unittest.TestCase):
    CORPUS = (
        "",
        "   ",
        "a",
        "日",
        "Hi there",
        "OK です",
        "こんにちは",
        "ｶﾀｶﾅ",
        "Hello, how are you today?",
        "これは日本語の文章です。よろしくお願いします。",
        "abcdefghijklmnopqr日本",
        "Meeting は明日の 10:00 からです",
        "\t改行\nを含む テキスト\n",
    )

    @staticmethod
    def japanese_score(result: DetectionResult) -> float:
        if result.language is Language.JA:
            return result.confidence
        return 1.0 - result.confidence

    def test_detection_is_deterministic(self) -> None:
        for text in self.CORPUS:
            with self.subTest(text=text):
                self.assertEqual(detect_language(text), detect_language(text))

    def test_confidence_stays_in_range(self) -> None:
        for text in self.CORPUS:
            with self.subTest(text=text):
                self.assertGreaterEqual(detect_language(text).confidence, 0.0)
                self.assertLessEqual(detect_language(text).confidence, 1.0)

    def test_more_japanese_never_lowers_japanese_confidence(self) -> None:
        length = 20
        previous_score = -1.0
        seen_japanese = False
        for count in range(length + 1):
            text = "あ" * count + "a" * (length - count)
            result = detect_language(text)
            with self.subTest(japanese_chars=count):
                if seen_japanese:
                    self.assertIs(result.language, Language.JA)
                self.assertGreaterEqual(self.japanese_score(result), previous_score)
            seen_japanese = seen_japanese or result.language is Language.JA
            previous_score = self.japanese_score(result)
        self.assertTrue(seen_japanese)

    def test_short_text_with_any_japanese_is_moderately_confident(self) -> None:
        for text in ("日", "a日", "abcdefgh日", "OK です", "ｶ", "こんにちは", "x y 字"):
            result = detect_language(text)
            with self.subTest(text=text):
                self.assertLess(len(text.strip()), 10)
                self.assertIs(result.language, Language.JA)
                self.assertGreater(result.confidence, 0.5)
                self.assertLessEqual(result.confidence, 0.8)


class HelperTests(unittest.TestCase):
    def test_japanese_ratio_ignores_whitespace(self) -> None:
        self.assertAlmostEqual(japanese_ratio("あ a"), 0.5)
        self.assertEqual(japanese_ratio("  "), 0.0)

    def test_opposite_and_display_names(self) -> None:
        self.assertIs(Language.JA.opposite, Language.EN)
        self.assertIs(Language.EN.opposite, Language.JA)
        self.assertEqual(Language.JA.display_name, "日本語")
        self.assertEqual(Language.EN.display_name, "英語")


if __name__ == "__main__":  # pragma: no cover - allows direct execution
    unittest.main()
