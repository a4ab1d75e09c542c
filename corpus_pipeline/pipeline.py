#!/usr/bin/env python3
"""
Command line entry point for the corpus pipeline.

Commands:
    pipeline    - process raw WET shards into per-language intermediate outputs
    rebuild     - assemble one language's Final Corpus from done shards
    status      - show checkpoint counts and failed shards
    invalidate  - return shards to pending and delete their outputs

All parameters default to config.json values.

Usage:
    python -m corpus_pipeline.pipeline pipeline --shards data/shards --workers 8
    python -m corpus_pipeline.pipeline rebuild --lang fr --min-score 10
    python -m corpus_pipeline.pipeline status
    python -m corpus_pipeline.pipeline invalidate 00042 00043
"""

import argparse
import json
import sys
from typing import List, Optional

from common.config import config
from common.database import Database
from common.errors import CorpusError
from common.logging.logger import get_logger
from common.repositories import CheckpointRepository, RunRepository
from corpus_pipeline.annotators import DocumentAnnotator
from corpus_pipeline.assembler import CorpusAssembler, PostFilter
from corpus_pipeline.blocklist import DomainBlocklist
from corpus_pipeline.line_classifier import LineClassifier
from corpus_pipeline.oracles import load_line_oracle, load_quality_scorers
from corpus_pipeline.orchestrator import ShardOrchestrator
from corpus_pipeline.quality_filter import QualityFilter
from corpus_pipeline.shard_processor import ShardProcessor, remove_shard_output
from corpus_pipeline.wet_reader import DirectoryShardSource, read_shard_list

logger = get_logger("pipeline")


def _checkpoint(path: Optional[str]) -> CheckpointRepository:
    return CheckpointRepository(Database(path))


def _print_header(title: str):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def run_pipeline(args) -> int:
    """Loads models and blocklist, then drives every pending shard."""

    # Startup: any failure here aborts before a shard is dispatched
    oracle = load_line_oracle(args.lid_backend, args.lid_model)
    if args.blocklist:
        blocklist = DomainBlocklist.load(args.blocklist, config.get("filter.blocklist_categories"))
    else:
        logger.warning("No blocklist configured, domain filtering disabled")
        blocklist = DomainBlocklist()
    scorers = load_quality_scorers(args.quality_models)

    classifier = LineClassifier(oracle)
    quality_filter = QualityFilter(blocklist, scorers, quality_enabled=True if scorers else None)

    def processor_factory() -> ShardProcessor:
        return ShardProcessor(
            classifier,
            quality_filter,
            args.output,
            annotator=DocumentAnnotator(),
            split_size_mb=args.split_size_mb,
            split_max_documents=args.split_max_documents,
        )

    database = Database(args.checkpoint)
    source = DirectoryShardSource(args.shards)
    shard_ids = read_shard_list(args.shard_list) if args.shard_list else None

    logger.info("=" * 60)
    logger.info("CORPUS PIPELINE")
    logger.info("=" * 60)
    logger.info(f"Shards: {args.shards}")
    logger.info(f"Output: {args.output}")
    logger.info(f"Workers: {args.workers}")
    logger.info(f"Blocklist: {len(blocklist)} domains in {len(blocklist.categories)} categories")
    logger.info(f"Quality models: {sorted(scorers) or 'none'}")
    logger.info("=" * 60)

    orchestrator = ShardOrchestrator(
        source,
        CheckpointRepository(database),
        processor_factory,
        runs=RunRepository(database),
    )
    summary = orchestrator.run(shard_ids=shard_ids, worker_count=args.workers)

    _print_header("PIPELINE RUN COMPLETE")
    print(f"Run: {summary.run_id}")
    print(f"Duration: {summary.duration_human}")
    print(f"Shards: {summary.shards_total} total, {summary.skipped_done} already done, "
          f"{summary.done} done, {summary.failed_count} failed, {summary.not_dispatched} not dispatched")
    if summary.interrupted:
        print("Run was interrupted; remaining shards stay pending")
    print("\nDocuments per language:")
    for lang, count in sorted(summary.documents.items()):
        print(f"  {lang}: {count:,} ({summary.bytes.get(lang, 0):,} bytes)")
    if summary.rejected:
        print("\nRejected per language:")
        for lang, reasons in sorted(summary.rejected.items()):
            breakdown = ", ".join(f"{reason}={count:,}" for reason, count in sorted(reasons.items()))
            print(f"  {lang}: {sum(reasons.values()):,} ({breakdown})")
    if summary.failed:
        print("\nFailed shards:")
        for shard_id, reason in sorted(summary.failed.items()):
            print(f"  {shard_id}: {reason}")
    print("=" * 60)
    return 0


def run_rebuild(args) -> int:
    """Assembles one language's corpus from the done shards and prints its manifest."""
    assembler = CorpusAssembler(
        _checkpoint(args.checkpoint),
        intermediate_dir=args.intermediate,
        output_dir=args.output,
        part_size_mb=args.part_size_mb,
        near_duplicates=args.near_duplicates or None,
    )
    post_filter = PostFilter(
        min_score=args.min_score,
        max_score=args.max_score,
        exclude_annotations=args.exclude_annotation or [],
    )
    manifest = assembler.assemble(args.lang, post_filter)

    _print_header(f"REBUILD COMPLETE: {args.lang}")
    print(json.dumps(manifest.to_dict(), indent=2, sort_keys=True))
    return 0


def run_status(args) -> int:
    checkpoint = _checkpoint(args.checkpoint)

    _print_header("CHECKPOINT STATUS")
    for state, count in checkpoint.counts().items():
        print(f"  {state}: {count:,}")
    failed = checkpoint.failed_shards()
    if failed:
        print("\nFailed shards:")
        for status in failed:
            print(f"  {status.shard_id} (attempts={status.attempts}): {status.reason}")
    return 0


def run_invalidate(args) -> int:
    checkpoint = _checkpoint(args.checkpoint)

    invalidated = checkpoint.invalidate(args.shard_ids)
    for shard_id in invalidated:
        remove_shard_output(args.intermediate, shard_id)
    skipped = sorted(set(args.shard_ids) - set(invalidated))

    print(f"Invalidated {len(invalidated)} shards")
    if skipped:
        print(f"Not invalidated (unknown, pending or in progress): {', '.join(skipped)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Common Crawl WET shards -> language-partitioned, deduplicated corpus"
    )
    parser.add_argument(
        "--checkpoint",
        default=config.get("checkpoint.sqlite_path"),
        help=f"Checkpoint database (default: {config.get('checkpoint.sqlite_path')})"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    pipeline = subparsers.add_parser("pipeline", help="Process raw shards")
    pipeline.add_argument(
        "--shards",
        default=config.get("paths.shards_dir"),
        help=f"Directory of WET shards (default: {config.get('paths.shards_dir')})"
    )
    pipeline.add_argument("--shard-list", help="File with one shard id or file name per line")
    pipeline.add_argument(
        "--workers",
        type=int,
        default=config.get("orchestrator.workers"),
        help=f"Worker threads (default: {config.get('orchestrator.workers')})"
    )
    pipeline.add_argument(
        "--split-size-mb",
        type=float,
        default=config.get("shard.split_size_mb"),
        help="Buffered megabytes before a shard's parts are flushed"
    )
    pipeline.add_argument(
        "--split-max-documents",
        type=int,
        default=config.get("shard.split_max_documents"),
        help="Documents per language before a part is flushed"
    )
    pipeline.add_argument(
        "--blocklist",
        default=config.get("filter.blocklist_dir"),
        help="Blocklist directory (<category>/domains files)"
    )
    pipeline.add_argument(
        "--lid-backend",
        choices=["fasttext", "langdetect"],
        default=config.get("classifier.backend"),
        help="Line identification backend"
    )
    pipeline.add_argument(
        "--lid-model",
        default=config.get("classifier.model_path"),
        help="fastText identification model (lid.176.bin)"
    )
    pipeline.add_argument(
        "--quality-models",
        default=config.get("quality.models_dir"),
        help="Directory of per-language KenLM models"
    )
    pipeline.add_argument(
        "--output",
        default=config.get("paths.intermediate_dir"),
        help=f"Intermediate output directory (default: {config.get('paths.intermediate_dir')})"
    )
    pipeline.set_defaults(func=run_pipeline)

    rebuild = subparsers.add_parser("rebuild", help="Assemble one language's corpus")
    rebuild.add_argument("--lang", required=True, help="Target language code")
    rebuild.add_argument(
        "--intermediate",
        default=config.get("paths.intermediate_dir"),
        help="Intermediate output directory"
    )
    rebuild.add_argument(
        "--output",
        default=config.get("paths.corpus_dir"),
        help=f"Corpus directory (default: {config.get('paths.corpus_dir')})"
    )
    rebuild.add_argument("--min-score", type=float, help="Drop documents scored below this")
    rebuild.add_argument("--max-score", type=float, help="Drop documents scored above this")
    rebuild.add_argument(
        "--exclude-annotation",
        action="append",
        help="Drop documents carrying this annotation (repeatable)"
    )
    rebuild.add_argument("--near-duplicates", action="store_true", help="Also drop SimHash near-duplicates")
    rebuild.add_argument(
        "--part-size-mb",
        type=float,
        default=config.get("assembler.part_size_mb"),
        help="Maximum part size, 0 for a single part"
    )
    rebuild.set_defaults(func=run_rebuild)

    status = subparsers.add_parser("status", help="Show checkpoint state")
    status.set_defaults(func=run_status)

    invalidate = subparsers.add_parser("invalidate", help="Force shards to be reprocessed")
    invalidate.add_argument("shard_ids", nargs="+", help="Shard ids")
    invalidate.add_argument(
        "--intermediate",
        default=config.get("paths.intermediate_dir"),
        help="Intermediate output directory"
    )
    invalidate.set_defaults(func=run_invalidate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    for warning in config.validate():
        logger.warning(warning)

    try:
        return args.func(args)
    except CorpusError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
