"""
Example: run the full ingestion pipeline on a real PDF or page image using
the Gemini extractor + SQLite.

Usage:
    python3 ingest_demo.py --document /path/to/sheet.pdf --course "Linear Algebra" --week 3
"""

import argparse
import asyncio
import logging
import os
from pathlib import Path

from exercise_vault.ingestion import ExerciseVault, VaultConfig


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--document", required=True, type=Path, help="Path to input PDF or page image")
    parser.add_argument("--course", required=True, help="Course name")
    parser.add_argument("--week", required=True, type=int, help="Week number")
    parser.add_argument("--storage-root", default=Path("./data"), type=Path, help="Storage root for DB and images")
    parser.add_argument("--api-key", default=os.getenv("GEMINI_API_KEY"), help="Gemini API key")
    parser.add_argument("--save-key", action="store_true", help="Remember the API key in the vault settings")
    parser.add_argument("--replace-week", action="store_true", help="Replace the week's exercises atomically")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if not args.document.exists():
        raise FileNotFoundError(f"Document not found: {args.document}")

    vault = ExerciseVault.from_config(VaultConfig(storage_root=args.storage_root))
    if args.api_key and args.save_key:
        vault.save_api_key(args.api_key)

    print(f"Ingesting {args.document} into {args.course!r} week {args.week}")
    report = asyncio.run(
        vault.ingest(args.document, args.course, args.week, api_key=args.api_key, replace_week=args.replace_week)
    )
    print(f"Pages: {report.pages_processed}/{report.page_count} processed, {len(report.exercises)} exercises saved")
    for warning in report.warnings:
        print(f"  warning: {warning}")
    for failure in report.failures:
        print(f"  page {failure.page_number} failed: {failure.error}")
    for exercise in report.exercises:
        print(f"  {exercise.name} {exercise.tags}")


if __name__ == "__main__":
    main()
