"""Main entry point for the Prometheus aggregation gateway."""
import argparse
import logging
import sys
import signal

from aggregation_gateway.api import GatewayAPI
from aggregation_gateway.config import Config, load_config, parse_listen
from aggregation_gateway.store import AggregateStore, WindowState
from aggregation_gateway.telemetry import GatewayMetrics
from aggregation_gateway.window import CronScheduler, Scheduler, WindowController


def setup_logging(log_level: str, log_format: str):
    """Setup logging configuration."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        fmt = '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
    else:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Reduce noise from some libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_gateway(config: Config, scheduler: Scheduler) -> GatewayAPI:
    """Wire store, window controller and HTTP API together."""
    metrics = GatewayMetrics()
    store = AggregateStore(
        window=WindowState(0, config.window.publish_buffer_s),
        batch_mode=config.aggregation.batch_mode,
        summary_policy=config.aggregation.summary_policy,
        on_dropped=metrics.record_dropped,
    )
    window = WindowController(store, scheduler, on_reset=metrics.record_reset)
    metrics.next_reset_timestamp.set(store.window().next_reset_timestamp)
    return GatewayAPI(store, window, config.server, metrics)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Prometheus Aggregation Gateway - merge pushed metrics and reset them on a schedule"
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to configuration YAML file"
    )
    parser.add_argument("--listen", help="Address and port to listen on.")
    parser.add_argument("--cors", help="The 'Access-Control-Allow-Origin' value to be returned.")
    parser.add_argument("--push-path", help="HTTP path to accept pushed metrics.")
    parser.add_argument("--crontab", help="crontab formatted timing of aggregate reset.")
    return parser.parse_args(argv)


def apply_overrides(config: Config, args) -> Config:
    """Apply command line flags on top of the loaded configuration."""
    server = {}
    if args.listen:
        server["bind_address"], server["port"] = parse_listen(args.listen)
    if args.cors:
        server["cors_origin"] = args.cors
    if args.push_path:
        server["push_path"] = args.push_path

    raw = config.model_dump(by_alias=True)
    raw["server"].update(server)
    if args.crontab:
        raw["window"]["crontab"] = args.crontab
    return Config(**raw)


def main():
    """Main function."""
    args = parse_args()

    # Load configuration
    try:
        config = apply_overrides(load_config(args.config), args)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config.global_.log_level, config.global_.log_format)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("Prometheus Aggregation Gateway")
    logger.info("=" * 60)
    logger.info(f"Reset crontab: {config.window.crontab}")
    logger.info(f"Publish buffer: {config.window.publish_buffer_s}s")
    logger.info(f"Batch mode: {config.aggregation.batch_mode}")
    logger.info(f"Summary policy: {config.aggregation.summary_policy}")
    logger.warning("Gauges are aggregated by summation; values are only meaningful "
                   "when producers push once per reset window")

    scheduler = CronScheduler(config.window.crontab)
    gateway = build_gateway(config, scheduler)
    scheduler.start()

    # Setup signal handlers
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        scheduler.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Listening on {config.server.listen}, push path {config.server.push_path}")
    try:
        gateway.run(
            host=config.server.bind_address,
            port=config.server.port
        )
    except Exception as e:
        logger.error(f"Gateway error: {e}", exc_info=True)
        scheduler.stop()
        sys.exit(1)


if __name__ == "__main__":
    main()
