"""Tests for corpus_pipeline/oracles.py: model loading and adapters."""

import pytest

from common.errors import ModelLoadError
from corpus_pipeline.oracles import (
    FastTextOracle,
    LangdetectOracle,
    LineOracle,
    load_line_oracle,
    load_quality_scorers,
)


class TestLoadLineOracle:
    def test_unknown_backend(self):
        with pytest.raises(ModelLoadError):
            load_line_oracle("cld3")

    def test_missing_fasttext_model(self, tmp_path):
        with pytest.raises(ModelLoadError):
            load_line_oracle("fasttext", str(tmp_path / "lid.176.bin"))

    def test_fasttext_requires_path(self):
        with pytest.raises(ValueError):
            FastTextOracle(None)


class TestLangdetectOracle:
    def test_predicts_ranked_labels(self):
        oracle = LangdetectOracle()
        ranked = oracle.predict(
            "Le marché de la ville est ouvert pour les habitants et les visiteurs chaque semaine.", k=2
        )
        assert ranked[0][0] == "fr"
        assert 0.0 < ranked[0][1] <= 1.0
        assert isinstance(oracle, LineOracle)

    def test_deterministic(self):
        text = "The market in the town is open to residents and visitors every week."
        assert LangdetectOracle().predict(text) == LangdetectOracle().predict(text)


class TestLoadQualityScorers:
    def test_no_directory_configured(self):
        assert load_quality_scorers(None) == {}

    def test_missing_directory(self, tmp_path):
        assert load_quality_scorers(str(tmp_path / "missing")) == {}

    def test_unloadable_model_is_skipped(self, tmp_path):
        (tmp_path / "fr.arpa").write_text("not an arpa file", encoding="utf-8")
        (tmp_path / "README").write_text("ignored", encoding="utf-8")
        assert load_quality_scorers(str(tmp_path)) == {}
