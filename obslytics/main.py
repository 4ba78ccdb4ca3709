"""Main entry point for the series exporter."""
import argparse
import logging
import signal
import sys
import threading

from prometheus_client import CollectorRegistry

from obslytics.config import Config, load_config
from obslytics.errors import ExportCancelledError, ExportError, QueryTranslationError
from obslytics.exporter import STREAMING, TWO_PASS, Exporter, ExportParams
from obslytics.query import parse_duration, parse_selector, parse_time
from obslytics.self_metrics import ExportMetrics, dump_metrics, serve_metrics
from obslytics.series import TimeRange
from obslytics.sinks import create_sink
from obslytics.storeapi import StoreClient
from obslytics.tls import build_dial_options
from obslytics.tracing import setup_tracing

EXIT_CONFIG_ERROR = 1
EXIT_EXPORT_ERROR = 2
EXIT_CANCELLED = 130


def setup_logging(log_level: str, log_format: str):
    """Setup logging configuration."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        fmt = '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "msg": "%(message)s"}'
    else:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Reduce noise from some libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("grpc").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="obslytics",
        description="Export raw series from a StoreAPI into tabular files"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    export = sub.add_parser("export", help="Export aggregated series")
    export.add_argument(
        "--config",
        "-c",
        required=True,
        help="Path to configuration YAML file"
    )
    export.add_argument(
        "--match",
        action="append",
        required=True,
        help="Series selector, e.g. 'up{job=\"api\"}'. Repeat to export several selectors."
    )
    export.add_argument("--min-time", required=True, help="Start (RFC3339 or Unix seconds), inclusive")
    export.add_argument("--max-time", required=True, help="End (RFC3339 or Unix seconds), inclusive")
    export.add_argument("--resolution", required=True, help="Bucket width, e.g. 5m or 1h")
    export.add_argument("--output", "-o", help="Output path, overrides output.path")
    export.add_argument(
        "--schema-mode",
        choices=[STREAMING, TWO_PASS],
        help="Override output.schema_mode"
    )
    export.add_argument("--timeout", type=float, help="Deadline for each Series call in seconds")
    return parser


def run_export(args, config: Config, cancel_event: threading.Event) -> int:
    """Run one export per selector; returns the process exit status."""
    logger = logging.getLogger(__name__)

    try:
        time_range = TimeRange(parse_time(args.min_time), parse_time(args.max_time))
        resolution = parse_duration(args.resolution)
        selectors = [parse_selector(m) for m in args.match]
    except (ValueError, QueryTranslationError) as e:
        logger.error(f"Invalid query: {e}")
        return EXIT_CONFIG_ERROR

    registry = CollectorRegistry()
    metrics = ExportMetrics(registry=registry, prefix=config.global_.metrics_prefix)
    if config.global_.metrics_port:
        serve_metrics(registry, config.global_.metrics_port)

    tracer, tracer_provider = setup_tracing(config.tracing)

    try:
        dial_options = build_dial_options(config.input, logger)
    except ValueError as e:
        logger.error(f"Error initializing gRPC options: {e}")
        return EXIT_CONFIG_ERROR

    client = StoreClient(
        config.input.endpoint,
        dial_options,
        registry=registry,
        tracer=tracer,
        logger=logging.getLogger("obslytics.storeapi"),
        timeout_s=args.timeout or config.input.timeout_s,
        metrics_prefix=config.global_.metrics_prefix,
    )
    exporter = Exporter(client, metrics=metrics)

    output_path = args.output or config.output.path
    status = 0
    try:
        for idx, matchers in enumerate(selectors):
            path = output_path
            if len(selectors) > 1:
                path = _indexed_path(output_path, idx)
            params = ExportParams(
                time_range=time_range,
                matchers=matchers,
                resolution=resolution,
                schema_mode=args.schema_mode or config.output.schema_mode,
            )
            sink = create_sink(config.output, path)
            summary = exporter.run(params, sink, cancel_event=cancel_event)
            logger.info(f"Selector {args.match[idx]} exported to {path}: {summary.rows} rows")
    except ExportCancelledError as e:
        logger.error(f"Export cancelled: {e}")
        status = EXIT_CANCELLED
    except ExportError as e:
        logger.error(f"Export failed ({e.kind}): {e}", exc_info=e.__cause__ is not None)
        status = EXIT_EXPORT_ERROR
    finally:
        if config.global_.metrics_textfile:
            dump_metrics(registry, config.global_.metrics_textfile)
        if tracer_provider is not None:
            tracer_provider.shutdown()

    return status


def _indexed_path(path: str, idx: int) -> str:
    """out.parquet -> out-0.parquet"""
    stem, dot, ext = path.rpartition(".")
    if not dot or "/" in ext:
        return f"{path}-{idx}"
    return f"{stem}-{idx}.{ext}"


def main(argv=None):
    """Main function."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    # Setup logging
    setup_logging(config.global_.log_level, config.global_.log_format)
    logger = logging.getLogger(__name__)
    logger.info(f"Configuration loaded from: {args.config}")
    logger.info(f"Store endpoint: {config.input.endpoint}")
    logger.info(f"Output: {config.output.type} -> {args.output or config.output.path}")

    cancel_event = threading.Event()

    # Setup signal handlers
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, cancelling export...")
        cancel_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    sys.exit(run_export(args, config, cancel_event))


if __name__ == "__main__":
    main()
