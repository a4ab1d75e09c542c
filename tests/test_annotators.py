"""Tests for corpus_pipeline/annotators.py: record filters and document annotations."""

from corpus_pipeline.annotators import DocumentAnnotator, long_line_ratio_ok, trim_short_edges
from corpus_pipeline.documents import Document, Location


def _doc(lines):
    return Document(
        content="\n".join(lines),
        url="https://example.com/",
        lang="fr",
        confidence=0.9,
        line_identifications=[],
        location=Location("1", "<urn:uuid:1>", 0, 0, len(lines) - 1),
    )


LONG = "Une phrase suffisamment longue pour compter comme une vraie ligne de texte dans un document du corpus."
SHORT = "Menu principal"


class TestTrimShortEdges:
    def test_trims_leading_and_trailing_short_lines(self):
        lines = [(0, SHORT), (1, LONG), (2, SHORT), (3, LONG), (4, SHORT)]
        assert trim_short_edges(lines, 100) == [(1, LONG), (2, SHORT), (3, LONG)]

    def test_all_short_gives_empty(self):
        assert trim_short_edges([(0, SHORT), (1, SHORT)], 100) == []


class TestLongLineRatio:
    def test_mostly_long_passes(self):
        assert long_line_ratio_ok([(0, LONG), (1, SHORT)], 100, 0.6)

    def test_mostly_short_fails(self):
        lines = [(0, LONG)] + [(i, SHORT) for i in range(1, 10)]
        assert not long_line_ratio_ok(lines, 100, 0.6)

    def test_empty_fails(self):
        assert not long_line_ratio_ok([], 100, 0.6)


class TestDocumentAnnotator:
    def setup_method(self):
        self.annotator = DocumentAnnotator(
            tiny_min_lines=5,
            noisy_threshold=0.5,
            header_ratio=0.2,
            header_short_ratio=0.5,
            short_line_chars=100,
        )

    def test_clean_document_has_no_annotations(self):
        doc = _doc([LONG] * 6)
        assert self.annotator.annotate(doc) == []
        assert doc.annotations == []

    def test_tiny(self):
        assert self.annotator.annotate(_doc([LONG] * 2)) == ["tiny"]

    def test_noisy(self):
        noisy = "1234 5678 9012 3456 7890 !!!! ???? #### $$$$ %%%% 1234 5678 9012 3456 7890 ab " * 2
        annotations = self.annotator.annotate(_doc([noisy] * 6))
        assert "noisy" in annotations

    def test_header_and_footer(self):
        lines = [SHORT] * 2 + [LONG] * 6 + [SHORT] * 2
        annotations = self.annotator.annotate(_doc(lines))
        assert "header" in annotations
        assert "footer" in annotations
        assert "short_sentences" not in annotations

    def test_short_sentences(self):
        lines = [LONG] + [SHORT] * 5
        assert "short_sentences" in self.annotator.annotate(_doc(lines))

    def test_annotation_order(self):
        noisy = "#### 1234 ????"
        annotations = self.annotator.annotate(_doc([noisy, noisy]))
        assert annotations == ["tiny", "noisy", "short_sentences"]

    def test_noisy_tiny(self):
        assert DocumentAnnotator.is_noisy_tiny(["tiny", "noisy"])
        assert not DocumentAnnotator.is_noisy_tiny(["tiny"])
        assert not DocumentAnnotator.is_noisy_tiny(["noisy", "header"])

    def test_stats(self):
        self.annotator.annotate(_doc([LONG] * 2))
        assert self.annotator.get_stats()["tiny"] == 1

    def test_zero_thresholds_are_kept(self):
        annotator = DocumentAnnotator(tiny_min_lines=0, noisy_threshold=0.0, short_line_chars=0)
        assert annotator.tiny_min_lines == 0
        assert annotator.noisy_threshold == 0.0
        assert annotator.short_line_chars == 0
        assert annotator.annotate(_doc([SHORT])) == []
