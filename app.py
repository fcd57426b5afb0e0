"""
Enriches ACC Data Extract document urns with item and version details.

Reads `issues_issues.csv` and `reviews_review_documents.csv` from the input
directory and writes `documents_documents.csv` and
`documents_custom_attributes.csv` to the output directory.

Usage:
  python app.py --input-dir ./extract --output-dir ./out
"""

import argparse
from typing import List, Optional

from config import settings
from logging_config import setup_logging, get_logger
import core_engine


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Enrich ACC Data Extract document urns with document metadata.')
    parser.add_argument('--input-dir', default=settings.INPUT_DIR, help='Directory holding the Data Extract CSV files')
    parser.add_argument('--output-dir', default=settings.OUTPUT_DIR, help='Directory to write the enriched CSV files')
    parser.add_argument('--chunk-size', type=int, default=settings.CHUNK_SIZE, help='Urns per batch request')
    parser.add_argument('--log-level', default=settings.LOG_LEVEL, help='DEBUG, INFO, WARNING or ERROR')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.chunk_size < 1:
        build_parser().error('--chunk-size must be at least 1')

    setup_logging(settings.ENVIRONMENT, args.log_level)
    logger = get_logger(__name__)

    try:
        core_engine.run_extract(args.input_dir, args.output_dir, args.chunk_size)
    except core_engine.AuthError as e:
        logger.error(f"Authentication failed: {e}")
        raise
    except OSError as e:
        logger.error(f"Could not read or write extract files: {e}")
        raise
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
