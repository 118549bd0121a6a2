"""
Command line entry point for the Zestimate study.

Examples:
    python -m zestimate_model collect --source https://example.gov/addresses.html --sample 1000
    python -m zestimate_model train --output-dir data/report
    python -m zestimate_model serve --port 8000
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

import pandas as pd

from .addresses import (
    AddressListError,
    fetch_address_list,
    normalize_addresses,
    read_address_file,
    sample_addresses,
)
from .collection import collect_valuations, load_checkpoint, queried_keys
from .settings import StudySettings, load_settings
from .zillow import ZillowClient, ZillowConfigError


def _settings_from_args(args: argparse.Namespace) -> StudySettings:
    overrides = {}
    if getattr(args, "zws_id", None):
        overrides["zws_id"] = args.zws_id
    if getattr(args, "data_dir", None):
        overrides["data_dir"] = Path(args.data_dir)
    if getattr(args, "artifact", None):
        overrides["artifact_path"] = Path(args.artifact)
    if getattr(args, "seed", None) is not None:
        overrides["random_seed"] = args.seed
    settings = dataclasses.replace(load_settings(), **overrides)
    settings.ensure_directories()
    return settings


def _load_address_sample(args: argparse.Namespace, settings: StudySettings) -> pd.DataFrame:
    """The sample is drawn once and reused, so later days finish the same sample."""
    sample_path = settings.data_dir / "sample.csv"
    if sample_path.exists() and not args.resample:
        print(f"Reusing address sample: {sample_path}")
        return pd.read_csv(sample_path, dtype=str)

    source = args.source or settings.address_list_url
    if not source:
        raise SystemExit("No address list given (--source or ADDRESS_LIST_URL)")

    if Path(source).exists():
        raw = read_address_file(source)
    else:
        raw = fetch_address_list(source, timeout=settings.request_timeout)

    addresses = normalize_addresses(raw, default_state=args.default_state or settings.default_state)
    addresses.to_csv(settings.address_cache_path, index=False)

    already_queried = queried_keys(load_checkpoint(settings.checkpoint_path))
    sample = sample_addresses(
        addresses,
        args.sample or settings.sample_size,
        random_seed=settings.random_seed,
        exclude=already_queried
    )
    sample.to_csv(sample_path, index=False)
    print(f"Sampled {len(sample):,} of {len(addresses):,} addresses -> {sample_path}")
    return sample


def run_collect(args: argparse.Namespace) -> None:
    settings = _settings_from_args(args)

    try:
        sample = _load_address_sample(args, settings)
        client = ZillowClient.from_settings(settings)
    except (AddressListError, ZillowConfigError) as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    checkpoint, summary = collect_valuations(
        sample,
        client,
        settings.checkpoint_path,
        daily_limit=args.daily_limit or settings.daily_call_limit,
        stop_on_limit_warning=not args.ignore_limit_warning,
    )

    print("\n" + "=" * 60)
    print(f"Stopped: {summary.stopped_reason}")
    print(f"Queried this run: {summary.queried} ({summary.found} found, {summary.missed} missed)")
    print(f"Calls left today: {summary.remaining_budget}")
    print(f"Checkpoint: {settings.checkpoint_path} ({len(checkpoint):,} rows)")
    print("=" * 60)


def run_train(args: argparse.Namespace) -> None:
    from .report import run_analysis
    from .preprocessing import DEFAULT_RESIDENTIAL_USE_CODES

    settings = _settings_from_args(args)
    checkpoint_path = Path(args.checkpoint) if args.checkpoint else settings.checkpoint_path
    if not checkpoint_path.exists():
        raise SystemExit(f"No collected valuations at {checkpoint_path}; run 'collect' first")

    valuations = load_checkpoint(checkpoint_path)
    output_dir = args.output_dir or str(settings.data_dir / "report")

    result = run_analysis(
        valuations,
        artifact_path=str(settings.artifact_path),
        output_dir=output_dir,
        keep_use_codes=None if args.all_use_codes else DEFAULT_RESIDENTIAL_USE_CODES,
        test_size=args.test_size,
        random_seed=settings.random_seed,
        criterion=args.criterion,
    )
    print(f"\nBest model: {result['best_model']}")


def run_serve(args: argparse.Namespace) -> None:
    import uvicorn

    from . import api

    # The app reads its artifact path from these settings at startup
    api.settings = _settings_from_args(args)

    print("Starting Zestimate Model API...")
    print(f"Model artifact: {api.settings.artifact_path}")
    print(f"API Documentation: http://{args.host}:{args.port}/docs")
    uvicorn.run(api.app, host=args.host, port=args.port, log_level="info")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Zestimate study CLI")
    parser.add_argument("--data-dir", dest="data_dir", help="Override ZESTIMATE_DATA_DIR")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    collect_parser = subparsers.add_parser("collect", help="Sample addresses and query the deep-search API")
    collect_parser.add_argument("--source", help="Address list URL, landing page or local file")
    collect_parser.add_argument("--sample", type=int, help="Sample size (default: ADDRESS_SAMPLE_SIZE)")
    collect_parser.add_argument("--default-state", dest="default_state", help="State for lists without one")
    collect_parser.add_argument("--daily-limit", dest="daily_limit", type=int, help="Calls allowed per day")
    collect_parser.add_argument("--zws-id", dest="zws_id", help="Zillow web services ID")
    collect_parser.add_argument("--seed", type=int, help="Sampling seed")
    collect_parser.add_argument("--resample", action="store_true", help="Draw a new sample even if one exists")
    collect_parser.add_argument("--ignore-limit-warning", dest="ignore_limit_warning", action="store_true",
                                help="Keep polling after the service warns about the limit")
    collect_parser.set_defaults(func=run_collect)

    train_parser = subparsers.add_parser("train", help="Clean, impute and compare the three models")
    train_parser.add_argument("--checkpoint", help="Collected valuations CSV (default: <data-dir>/valuations.csv)")
    train_parser.add_argument("--artifact", help="Where to save the model artifact")
    train_parser.add_argument("--output-dir", dest="output_dir", help="Where to write the report CSVs")
    train_parser.add_argument("--test-size", dest="test_size", type=float, default=0.20, help="Test fraction (default: 0.20)")
    train_parser.add_argument("--criterion", choices=["aic", "bic"], default="aic", help="Backward selection criterion")
    train_parser.add_argument("--all-use-codes", dest="all_use_codes", action="store_true",
                              help="Keep non-residential use codes")
    train_parser.add_argument("--seed", type=int, help="Split/model seed")
    train_parser.set_defaults(func=run_train)

    serve_parser = subparsers.add_parser("serve", help="Serve estimates from the saved artifact")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--artifact", help="Model artifact to serve (default: ZESTIMATE_ARTIFACT_PATH)")
    serve_parser.set_defaults(func=run_serve)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s"
    )
    args.func(args)


if __name__ == "__main__":
    main()
