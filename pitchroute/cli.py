import argparse
import json
import logging
import os
import sys
from typing import List, Optional, TextIO

import librosa
import numpy as np

from pitchroute.pipeline.config import ConfigurationError, PipelineConfig
from pitchroute.pipeline.instrumentation import PipelineLogger
from pitchroute.pipeline.router import AdaptiveProcessor
from pitchroute.pipeline.utils_config import parse_overrides

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Detect source type and pitch block by block")
    parser.add_argument("--audio_path", required=True, help="Path to input audio file")
    parser.add_argument("--sample_rate", type=int, default=44100, help="Analysis sample rate (audio is resampled)")
    parser.add_argument("--frame_size", type=int, default=2048, help="Analysis frame size (power of two)")
    parser.add_argument("--multi_pass_count", type=int, default=3, help="Segments voted on per block")
    parser.add_argument("--confidence_threshold", type=float, default=0.7, help="Vote confidence for direct routing")
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Dotted config override, e.g. --set fusion.enable_snapping=false (repeatable)",
    )
    parser.add_argument("--output_jsonl", default=None, help="Write one JSON result per line here instead of stdout")
    parser.add_argument("--log_dir", default=None, help="Directory for structured JSONL instrumentation")
    parser.add_argument("--max_blocks", type=int, default=None, help="Stop after this many blocks")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig(
        sample_rate=args.sample_rate,
        frame_size=args.frame_size,
        multi_pass_count=args.multi_pass_count,
        confidence_threshold=args.confidence_threshold,
    )


def iter_blocks(audio: np.ndarray, block_size: int):
    """Consecutive full blocks, then the trailing remainder if any."""
    for start in range(0, len(audio), block_size):
        yield start, audio[start: start + block_size]


def run(args: argparse.Namespace, out: TextIO) -> int:
    config = build_config(args)
    pipeline_logger = PipelineLogger(args.log_dir) if args.log_dir else None
    processor = AdaptiveProcessor(config, pipeline_logger=pipeline_logger)
    if args.overrides:
        processor.update_config(parse_overrides(args.overrides))
        config = processor.config

    logger.info(f"Loading {args.audio_path} at {config.sample_rate} Hz")
    audio, sr = librosa.load(args.audio_path, sr=int(config.sample_rate), mono=True)
    block_size = config.frame_size * config.multi_pass_count

    count = 0
    for start, block in iter_blocks(audio, block_size):
        if args.max_blocks is not None and count >= args.max_blocks:
            break
        result = processor.process(block)
        record = {"block": count, "start_sec": start / float(sr)}
        record.update(result.to_dict())
        out.write(json.dumps(record) + "\n")
        count += 1

    stats = processor.get_processing_statistics()
    logger.info(
        f"Processed {count} blocks: distribution={stats.type_distribution} "
        f"avg_quality={stats.average_quality:.3f} avg_confidence={stats.average_confidence:.3f}"
    )
    if pipeline_logger is not None:
        pipeline_logger.log_event("cli", "summary", {"blocks": count, "statistics": stats.to_dict()})
        pipeline_logger.finalize()
    return count


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    args = parse_args(argv)

    if not os.path.exists(args.audio_path):
        logger.error(f"Audio file not found: {args.audio_path}")
        return 1

    try:
        if args.output_jsonl:
            with open(args.output_jsonl, "w", encoding="utf-8") as f:
                run(args, f)
            logger.info(f"Written results to {args.output_jsonl}")
        else:
            run(args, sys.stdout)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
