"""Tests for quorum.categories module."""
import tempfile
import unittest
from pathlib import Path

from quorum.categories import (
    CategoryClassifier,
    CategoryTable,
    DEFAULT_CATEGORY,
    classify,
    clean_category,
    load_table,
    normalize_category,
)
from quorum.votes import CategorySource


class TestClassifierPrecedence(unittest.TestCase):
    def setUp(self):
        self.classifier = CategoryClassifier(load_table())

    def test_override_beats_ai_vote(self):
        detection = self.classifier.classify("Vintage Vinyl LP, Mint", ai_vote="vehicles")
        self.assertEqual(detection.category, "vinyl_records")
        self.assertEqual(detection.source, CategorySource.NAME_OVERRIDE)
        self.assertAlmostEqual(detection.confidence, 0.97)

    def test_higher_priority_override_wins(self):
        detection = self.classifier.classify("Supreme box logo hoodie")
        self.assertEqual(detection.category, "streetwear")

    def test_equal_priority_goes_to_first_declared(self):
        # stamps and postcards share a priority; stamps is declared first
        detection = self.classifier.classify("Postcard with rare stamp")
        self.assertEqual(detection.category, "stamps")

    def test_ai_vote_beats_hint(self):
        detection = self.classifier.classify("Mystery box", hint="lego", ai_vote="coins")
        self.assertEqual(detection.category, "coins")
        self.assertEqual(detection.source, CategorySource.AI_VOTE)

    def test_generic_ai_vote_is_ignored(self):
        detection = self.classifier.classify("Mystery box", hint="Legos", ai_vote="General")
        self.assertEqual(detection.category, "lego")
        self.assertEqual(detection.source, CategorySource.HINT)

    def test_ai_vote_is_normalized(self):
        detection = self.classifier.classify("Mystery box", ai_vote="Pokemon TCG")
        self.assertEqual(detection.category, "pokemon_cards")

    def test_default_when_nothing_matches(self):
        detection = self.classifier.classify("zzqx flurble")
        self.assertEqual(detection.category, DEFAULT_CATEGORY)
        self.assertEqual(detection.source, CategorySource.DEFAULT)
        self.assertEqual(detection.confidence, 0.5)

    def test_empty_name_with_hint(self):
        detection = self.classifier.classify("", hint="Video Games")
        self.assertEqual(detection.category, "video_games")


class TestNameParsing(unittest.TestCase):
    def setUp(self):
        self.classifier = CategoryClassifier(load_table())

    def test_barcode(self):
        detection = self.classifier.classify("012345678905")
        self.assertEqual(detection.category, "household")
        self.assertEqual(detection.source, CategorySource.NAME_PARSE)

    def test_vin(self):
        detection = self.classifier.classify("1HGCM82633A004352")
        self.assertEqual(detection.category, "vehicles")
        self.assertEqual(detection.source, CategorySource.NAME_PARSE)

    def test_vehicle_words_do_not_match_cards(self):
        detection = self.classifier.classify("Ford Mustang trading card")
        self.assertNotEqual(detection.category, "vehicles")

    def test_graded_sports_card(self):
        detection = self.classifier.classify("1989 Upper Deck baseball PSA 8")
        self.assertEqual(detection.category, "sports_cards")

    def test_books_exclude_comics(self):
        self.assertEqual(self.classifier.classify("Hardcover novel, signed").category, "books")
        self.assertEqual(self.classifier.classify("Comic book lot").category, "comics")


class TestKeywords(unittest.TestCase):
    def setUp(self):
        self.classifier = CategoryClassifier(load_table())

    def test_short_terms_match_whole_words(self):
        detection = self.classifier.classify("Epson DLP projector")
        self.assertNotEqual(detection.category, "vinyl_records")
        self.assertEqual(detection.category, "electronics")

    def test_phrases_score_by_word_count(self):
        detection = self.classifier.classify("Topps Chrome rookie card")
        self.assertEqual(detection.category, "sports_cards")
        self.assertEqual(detection.source, CategorySource.KEYWORDS)
        self.assertAlmostEqual(detection.confidence, 0.8)

    def test_keyword_terms_reported(self):
        detection = self.classifier.classify("Seiko wristwatch")
        self.assertEqual(detection.category, "watches")
        self.assertIn("wristwatch", detection.matched_terms)


class TestNormalize(unittest.TestCase):
    def test_clean_category(self):
        self.assertEqual(clean_category("  Trading-Cards "), "trading_cards")
        self.assertEqual(clean_category("__x__"), "x")

    def test_aliases(self):
        self.assertEqual(normalize_category(" Vinyl Record "), "vinyl_records")
        self.assertEqual(normalize_category("Pokemon TCG"), "pokemon_cards")
        self.assertEqual(normalize_category("VIN"), "vehicles")
        self.assertEqual(normalize_category("cars"), "vehicles")
        self.assertEqual(normalize_category("Autographs"), "autographs")
        self.assertEqual(normalize_category(None), "")

    def test_normalize_is_idempotent_over_table(self):
        table = load_table()
        for category in table.categories():
            once = table.normalize(category)
            self.assertEqual(table.normalize(once), once, category)

    def test_module_level_classify(self):
        self.assertEqual(classify("LEGO Star Wars 75192").category, "lego")


class TestAuthoritySources(unittest.TestCase):
    def test_sources_for_canonical_and_alias(self):
        table = load_table()
        self.assertEqual(table.authority_sources("coins"), ("numista",))
        self.assertEqual(table.authority_sources("Coin"), ("numista",))
        self.assertEqual(table.authority_sources("pokemon_cards"), ("pokemon_tcg", "psa"))
        self.assertTrue(table.is_authority_backed("lego"))
        self.assertFalse(table.is_authority_backed("general"))
        self.assertEqual(table.authority_sources(None), ())


class TestCustomTable(unittest.TestCase):
    def test_load_from_path(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "table.yaml"
            path.write_text(
                "version: 99\n"
                "overrides:\n"
                "  - category: widgets\n"
                "    priority: 10\n"
                "    words: [widget]\n"
                "keywords:\n"
                "  gizmos: [gizmo]\n"
                "authority_sources:\n"
                "  widgets: [widget_db]\n"
            )
            table = CategoryTable.load(path)
        classifier = CategoryClassifier(table)
        self.assertEqual(table.version, 99)
        self.assertEqual(classifier.classify("Blue widget").category, "widgets")
        self.assertEqual(classifier.classify("widgets galore").category, DEFAULT_CATEGORY)
        self.assertEqual(classifier.classify("a gizmo").category, "gizmos")
        self.assertEqual(table.authority_sources("widgets"), ("widget_db",))

    def test_entry_without_category_is_rejected(self):
        with self.assertRaises(ValueError):
            CategoryTable({"overrides": [{"patterns": ["x"]}]})


if __name__ == "__main__":
    unittest.main()
