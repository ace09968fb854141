"""Tests for quorum.providers.parsing module."""
import math
import unittest

from quorum.providers.parsing import (
    load_json_object,
    normalize_decision,
    parse_analysis,
    parse_confidence,
    parse_value,
    price_from_text,
)
from quorum.votes import Decision


class TestLoadJsonObject(unittest.TestCase):
    def test_fenced_block(self):
        data = load_json_object('```json\n{"itemName": "Widget"}\n```')
        self.assertEqual(data, {"itemName": "Widget"})

    def test_prose_around_object(self):
        data = load_json_object('Sure! Here it is: {"a": {"b": "}"}} Hope that helps.')
        self.assertEqual(data, {"a": {"b": "}"}})

    def test_trailing_comma(self):
        data = load_json_object('{"itemName": "x", "tags": ["a", "b",],}')
        self.assertEqual(data, {"itemName": "x", "tags": ["a", "b"]})

    def test_citations_removed(self):
        data = load_json_object('{"itemName": "Widget[1]", "price": 5}')
        self.assertEqual(data["itemName"], "Widget")

    def test_no_object(self):
        self.assertIsNone(load_json_object("no json here"))
        self.assertIsNone(load_json_object(""))


class TestFieldParsing(unittest.TestCase):
    def test_decision_synonyms(self):
        self.assertEqual(normalize_decision("buy it"), Decision.BUY)
        self.assertEqual(normalize_decision(" Good   Deal "), Decision.BUY)
        self.assertEqual(normalize_decision("pass"), Decision.SELL)
        self.assertEqual(normalize_decision("Not Recommended"), Decision.SELL)
        self.assertIsNone(normalize_decision("maybe"))
        self.assertIsNone(normalize_decision(None))

    def test_values(self):
        self.assertEqual(parse_value(12), 12.0)
        self.assertEqual(parse_value("$1,200.50"), 1200.5)
        self.assertEqual(parse_value("$40-60"), 50.0)
        self.assertEqual(parse_value("$40 to $60"), 50.0)
        self.assertEqual(parse_value({"low": 10, "high": 20}), 15.0)
        self.assertEqual(parse_value({"amount": "7"}), 7.0)
        self.assertEqual(parse_value("-5"), -5.0)
        self.assertIsNone(parse_value(True))
        self.assertIsNone(parse_value("unknown"))
        self.assertIsNone(parse_value(None))

    def test_confidence_scales_percentages(self):
        self.assertEqual(parse_confidence(85), 0.85)
        self.assertEqual(parse_confidence("0.7"), 0.7)
        self.assertEqual(parse_confidence(250), 1.0)
        self.assertIsNone(parse_confidence("high"))

    def test_price_from_text(self):
        self.assertEqual(price_from_text("sold for $20 and $30 recently"), 25.0)
        self.assertIsNone(price_from_text("no prices"))


class TestParseAnalysis(unittest.TestCase):
    def test_field_aliases(self):
        content = '```json\n{"name": "Lego 75192", "price": "$1,200", "recommendation": "buy it", "confidence": 85}\n```'
        result = parse_analysis(content, latency_ms=12.0)
        self.assertEqual(result.item_name, "Lego 75192")
        self.assertEqual(result.estimated_value, 1200.0)
        self.assertEqual(result.decision, Decision.BUY)
        self.assertAlmostEqual(result.self_confidence, 0.85)
        self.assertEqual(result.latency_ms, 12.0)
        self.assertTrue(result.well_formed)

    def test_category_and_reasoning(self):
        content = (
            '{"itemName": "1921 Morgan Dollar", "estimatedValue": 45, "decision": "SELL", '
            '"summary_reasoning": "Common date.", "category": "Coins"}'
        )
        result = parse_analysis(content)
        self.assertEqual(result.reasoning, "Common date.")
        self.assertEqual(result.category, "Coins")

    def test_value_from_prose(self):
        content = '{"itemName": "Widget", "decision": "BUY"} Recent sales ranged $20 to $30.'
        result = parse_analysis(content)
        self.assertEqual(result.estimated_value, 25.0)
        self.assertTrue(result.well_formed)

    def test_missing_confidence_uses_completeness(self):
        content = (
            '{"itemName": "Widget", "estimatedValue": 10, "decision": "BUY", '
            '"valuation_factors": ["a"], "summary_reasoning": "ok"}'
        )
        self.assertAlmostEqual(parse_analysis(content).self_confidence, 0.95)
        self.assertAlmostEqual(parse_analysis('{"itemName": "Widget"}').self_confidence, 0.6)

    def test_unparseable_is_not_well_formed(self):
        result = parse_analysis("I cannot help with that.")
        self.assertFalse(result.well_formed)
        self.assertEqual(result.content, "I cannot help with that.")

    def test_unknown_decision_is_not_well_formed(self):
        result = parse_analysis('{"itemName": "Widget", "estimatedValue": 10, "decision": "HOLD"}')
        self.assertIsNone(result.decision)
        self.assertFalse(result.well_formed)

    def test_negative_value_is_not_well_formed(self):
        result = parse_analysis('{"itemName": "Widget", "estimatedValue": -10, "decision": "BUY"}')
        self.assertFalse(result.well_formed)

    def test_non_finite_value_is_not_well_formed(self):
        result = parse_analysis('{"itemName": "Morgan Dollar", "estimatedValue": 1e400, "decision": "BUY"}')
        self.assertTrue(math.isinf(result.estimated_value))
        self.assertFalse(result.well_formed)

    def test_oversized_integer_value_is_not_well_formed(self):
        self.assertIsNone(parse_value(10 ** 400))
        content = '{"itemName": "Morgan Dollar", "estimatedValue": 1' + "0" * 400 + ', "decision": "BUY"}'
        self.assertFalse(parse_analysis(content).well_formed)


if __name__ == "__main__":
    unittest.main()
