"""Tests for corpus_pipeline/wet_reader.py: shard listing and lazy record parsing."""

import pytest
from conftest import french_body, random_body, write_cut_wet, write_wet

from common.errors import ShardError
from corpus_pipeline.wet_reader import (
    DirectoryShardSource,
    WetShardReader,
    read_shard_list,
    shard_id_from_path,
    shard_sort_key,
)


class TestShardIds:
    def test_strips_known_suffixes(self):
        assert shard_id_from_path("data/00042.txt.gz") == "00042"
        assert shard_id_from_path("CC-MAIN-1.warc.wet.gz") == "CC-MAIN-1"
        assert shard_id_from_path("plain.bin") == "plain"

    def test_numeric_ids_sort_numerically_first(self):
        ids = ["b", "10", "9", "a", "100"]
        assert sorted(ids, key=shard_sort_key) == ["9", "10", "100", "a", "b"]


class TestWetShardReader:
    def test_yields_conversion_records_in_order(self, tmp_path):
        path = write_wet(tmp_path / "1.txt.gz", [
            ("https://a.example/", french_body(2)),
            ("https://b.example/", french_body(2, start=5)),
        ])
        with open(path, "rb") as stream:
            reader = WetShardReader(stream, "1")
            records = list(reader)

        assert [r.url for r in records] == ["https://a.example/", "https://b.example/"]
        # index counts the warcinfo record too
        assert [r.index for r in records] == [1, 2]
        assert records[0].body == french_body(2)
        assert records[0].record_id.startswith("<urn:uuid:")
        assert records[0].headers["WARC-Type"] == "conversion"

        stats = reader.get_stats()
        assert stats["records"] == 3
        assert stats["skipped_type"] == 1
        assert stats["yielded"] == 2

    def test_undecodable_body_is_skipped(self, tmp_path):
        path = write_wet(tmp_path / "1.txt.gz", [
            ("https://a.example/", b"\xff\xfe\xfa invalid utf-8"),
            ("https://b.example/", french_body(1)),
        ])
        with open(path, "rb") as stream:
            reader = WetShardReader(stream, "1")
            records = list(reader)

        assert [r.url for r in records] == ["https://b.example/"]
        assert reader.get_stats()["undecodable"] == 1

    def test_not_compressed_raises(self, tmp_path):
        path = tmp_path / "bad.txt.gz"
        path.write_bytes(b"this is definitely not a gzip stream\n" * 10)
        with open(path, "rb") as stream:
            with pytest.raises(ShardError) as exc:
                list(WetShardReader(stream, "bad"))
        assert "decompression error" in exc.value.detail

    def test_empty_shard_raises(self, tmp_path):
        path = tmp_path / "empty.txt.gz"
        path.write_bytes(b"")
        with open(path, "rb") as stream:
            with pytest.raises(ShardError):
                list(WetShardReader(stream, "empty"))

    def test_iteration_is_lazy(self, tmp_path):
        path = write_wet(tmp_path / "1.txt.gz", [(f"https://{i}.example/", french_body(1)) for i in range(5)])
        with open(path, "rb") as stream:
            reader = WetShardReader(stream, "1")
            first = next(iter(reader))
            assert first.url == "https://0.example/"
            assert reader.get_stats()["yielded"] == 1


class TestTruncatedShards:
    def test_cut_payload_is_skipped_and_counted(self, tmp_path):
        path = write_wet(tmp_path / "1.warc", [
            ("https://a.example/", french_body(3)),
            ("https://b.example/", french_body(3, start=5)),
        ], gzip=False)
        path.write_bytes(path.read_bytes()[:-100])

        with open(path, "rb") as stream:
            reader = WetShardReader(stream, "1")
            records = list(reader)

        assert [r.url for r in records] == ["https://a.example/"]
        stats = reader.get_stats()
        assert stats["truncated"] == 1
        assert stats["malformed"] == 0

    def test_stream_ending_inside_last_member(self, tmp_path):
        path = write_cut_wet(tmp_path / "1.txt.gz", [
            ("https://a.example/", french_body(3)),
            ("https://b.example/", random_body(1)),
        ])

        with open(path, "rb") as stream:
            reader = WetShardReader(stream, "1")
            records = list(reader)

        assert [r.url for r in records] == ["https://a.example/"]
        assert reader.get_stats()["truncated"] == 1

    def test_complete_shard_has_no_truncation(self, tmp_path):
        path = write_wet(tmp_path / "1.txt.gz", [("https://a.example/", random_body(1))])
        with open(path, "rb") as stream:
            reader = WetShardReader(stream, "1")
            list(reader)
        assert reader.get_stats()["truncated"] == 0

class TestDirectoryShardSource:
    def test_lists_and_opens(self, shards_dir):
        write_wet(shards_dir / "10.txt.gz", [("https://a.example/", french_body(1))])
        write_wet(shards_dir / "9.txt.gz", [("https://a.example/", french_body(1))])
        (shards_dir / "notes.md").write_text("ignored")

        source = DirectoryShardSource(str(shards_dir), pattern="*.gz")
        assert source.list_shards() == ["9", "10"]
        with source.open("9") as stream:
            assert stream.read(2) == b"\x1f\x8b"

    def test_unknown_shard(self, shards_dir):
        source = DirectoryShardSource(str(shards_dir), pattern="*.gz")
        with pytest.raises(FileNotFoundError):
            source.open("42")

    def test_missing_directory(self, tmp_path):
        source = DirectoryShardSource(str(tmp_path / "missing"), pattern="*.gz")
        with pytest.raises(FileNotFoundError):
            source.list_shards()


class TestReadShardList:
    def test_reads_ids_and_file_names(self, tmp_path):
        path = tmp_path / "shards.txt"
        path.write_text("# comment\n00001\n\ndata/00002.txt.gz\n", encoding="utf-8")
        assert read_shard_list(str(path)) == ["00001", "00002"]
