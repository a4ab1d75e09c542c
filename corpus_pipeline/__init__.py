"""
Common Crawl WET shards -> language-partitioned, deduplicated corpus.

This package implements:
1. Line-level language identification (fastText or langdetect oracle)
2. Run merging into single-language documents
3. Domain blocklist, confidence and optional KenLM quality filtering
4. Per-shard intermediate outputs with completion markers
5. A checkpointed, restartable worker pool over shards
6. Per-language corpus assembly with cross-shard deduplication
"""
