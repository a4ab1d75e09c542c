"""Tests for corpus_pipeline/line_classifier.py."""

from conftest import FakeOracle, english_line, french_line

from corpus_pipeline.line_classifier import UNKNOWN, LabelKind, LineClassifier, LineLabel


class _FailingOracle:
    def predict(self, text, k=1):
        raise RuntimeError("model exploded")


class _FixedOracle:
    def __init__(self, result):
        self.result = result

    def predict(self, text, k=1):
        return self.result


class TestLineLabel:
    def test_identified(self):
        label = LineLabel.identified("fr", 0.93)
        assert label.kind is LabelKind.IDENTIFIED
        assert label.is_known
        assert label.to_dict() == {"label": "fr", "prob": 0.93}

    def test_unknown_has_no_dict(self):
        assert not UNKNOWN.is_known
        assert UNKNOWN.to_dict() is None


class TestLineClassifier:
    def test_identifies_languages(self, classifier):
        assert classifier.classify(french_line(1)) == LineLabel.identified("fr", 0.95)
        assert classifier.classify(english_line(1)).lang == "en"

    def test_below_threshold_is_unknown(self):
        classifier = LineClassifier(FakeOracle(prob=0.5), threshold=0.8, min_chars=10)
        assert classifier.classify(french_line(1)) is UNKNOWN
        assert classifier.get_stats()["below_threshold"] == 1

    def test_short_line_is_unknown_without_oracle_call(self):
        oracle = FakeOracle()
        classifier = LineClassifier(oracle, threshold=0.8, min_chars=10)
        assert classifier.classify("le chat") is UNKNOWN
        assert oracle.seen == []
        assert classifier.get_stats()["too_short"] == 1

    def test_nul_characters_are_stripped(self):
        oracle = FakeOracle()
        classifier = LineClassifier(oracle, threshold=0.8, min_chars=10)
        classifier.classify("le marché\x00 de la ville est ouvert")
        assert "\x00" not in oracle.seen[0]

    def test_oracle_error_is_unknown(self):
        classifier = LineClassifier(_FailingOracle(), threshold=0.8, min_chars=1)
        assert classifier.classify(french_line(1)) is UNKNOWN
        assert classifier.get_stats()["oracle_errors"] == 1

    def test_empty_prediction_is_unknown(self):
        classifier = LineClassifier(_FixedOracle([]), threshold=0.8, min_chars=1)
        assert classifier.classify(french_line(1)) is UNKNOWN

    def test_threshold_is_inclusive(self):
        classifier = LineClassifier(_FixedOracle([("fr", 0.8)]), threshold=0.8, min_chars=1)
        assert classifier.classify(french_line(1)).is_known

    def test_stats_count_every_call(self, classifier):
        classifier.classify(french_line(1))
        classifier.classify("short")
        stats = classifier.get_stats()
        assert stats["classified"] == 2
        assert stats["identified"] == 1
