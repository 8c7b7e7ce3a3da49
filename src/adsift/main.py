from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from .config.config_parser import parse_config_file
from .config.config_schema import PRESETS, build_config
from .config.logging_config import init_logging
from .pipeline import ClassificationPipeline
from .servers.proxy_server import ProxyServer
from .servers.udp_server import DNSServer
from .stats import StatsCollector, StatsReporter, format_snapshot_json


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adsift", description="Ad-blocking DNS responder and HTTP(S) proxy"
    )
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument(
        "--preset",
        choices=sorted(PRESETS),
        help="Override blocker.preset from the config file",
    )
    parser.add_argument("--dns-port", type=int, help="Override dns.port")
    parser.add_argument("--proxy-port", type=int, help="Override proxy.port")
    parser.add_argument(
        "--no-dns", action="store_true", help="Do not start the DNS responder"
    )
    parser.add_argument(
        "--no-proxy", action="store_true", help="Do not start the HTTP proxy"
    )
    parser.add_argument(
        "--check",
        nargs="+",
        metavar="TARGET",
        help="Classify the given URLs/domains, print verdicts as JSON and exit",
    )
    return parser


def _run_check(pipeline: ClassificationPipeline, targets: List[str]) -> int:
    for target, verdict in pipeline.batch_classify(targets):
        print(json.dumps({"target": target, **verdict.to_dict()}))
    print(format_snapshot_json(pipeline.get_stats()))
    return 0


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for adsift.
    Parses arguments, loads configuration, builds the classification pipeline
    and starts the DNS responder and HTTP proxy on background threads.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code.

    Example use:
        CLI:
            PYTHONPATH=src python -m adsift.main --config config.yaml
            PYTHONPATH=src python -m adsift.main --check https://ads.example.com/x.js
    """
    args = _build_parser().parse_args(argv)

    try:
        raw_cfg, cfg = parse_config_file(args.config)
    except (OSError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    if args.preset:
        # Explicit flags in the file still win over the preset.
        raw_cfg["blocker"] = {**(raw_cfg.get("blocker") or {}), "preset": args.preset}
        cfg = build_config(raw_cfg)
    if args.dns_port is not None:
        cfg.dns.port = args.dns_port
    if args.proxy_port is not None:
        cfg.proxy.port = args.proxy_port

    init_logging(raw_cfg.get("logging"))
    logger = logging.getLogger("adsift.main")
    logger.info("Loaded config from %s (preset %s)", args.config, cfg.blocker.preset)

    stats_collector = StatsCollector()
    pipeline = ClassificationPipeline.from_config(cfg.blocker, stats=stats_collector)
    logger.info(
        "Pipeline ready: %d blocklist entries, %d filter rules, %d whitelisted",
        len(pipeline.blocklist),
        pipeline.engine.rule_count if pipeline.engine is not None else 0,
        len(pipeline.whitelist),
    )

    if args.check:
        return _run_check(pipeline, args.check)

    stats_reporter: Optional[StatsReporter] = None
    if cfg.statistics.enabled:
        stats_reporter = StatsReporter(
            stats_collector,
            interval_seconds=cfg.statistics.interval_seconds,
            reset_on_log=cfg.statistics.reset_on_log,
            log_level=cfg.statistics.log_level,
        )
        stats_reporter.start()

    shutdown_event = threading.Event()
    exit_code = 0
    servers: list = []
    threads: List[threading.Thread] = []

    def _sigusr2_handler(_signum, _frame):
        if cfg.statistics.enabled and cfg.statistics.sigusr2_resets_stats:
            pipeline.reset_stats()
            logger.info("SIGUSR2: statistics reset completed")
        else:
            logger.info(
                "SIGUSR2: statistics reset skipped (disabled or sigusr2_resets_stats not set)"
            )

    def _request_shutdown(reason: str, code: int) -> None:
        nonlocal exit_code
        if shutdown_event.is_set():
            return
        exit_code = code
        shutdown_event.set()
        logger.info("Received %s, initiating shutdown (exit code=%d)", reason, code)

    for signame, handler in (
        ("SIGUSR2", _sigusr2_handler),
        ("SIGHUP", lambda _s, _f: _request_shutdown("SIGHUP", 0)),
        ("SIGTERM", lambda _s, _f: _request_shutdown("SIGTERM", 2)),
        ("SIGINT", lambda _s, _f: _request_shutdown("SIGINT", 2)),
    ):
        sig = getattr(signal, signame, None)
        if sig is None:
            logger.warning("Could not install %s handler on this platform", signame)
            continue
        try:
            signal.signal(sig, handler)
        except ValueError:
            # Not running in the main thread.
            logger.warning("Could not install %s handler", signame)

    try:
        if cfg.dns.enabled and not args.no_dns:
            dns_server = DNSServer(
                cfg.dns.host,
                cfg.dns.port,
                pipeline,
                cfg.dns.upstream_dicts(),
                timeout_ms=cfg.dns.timeout_ms,
                stats_collector=stats_collector,
            )
            servers.append(dns_server)
            upstream_info = ", ".join(
                f"{u['host']}:{u['port']}" for u in cfg.dns.upstream_dicts()
            )
            logger.info(
                "Starting DNS listener on %s:%d, upstreams: [%s], timeout: %dms",
                cfg.dns.host,
                cfg.dns.port,
                upstream_info,
                cfg.dns.timeout_ms,
            )
        if cfg.proxy.enabled and not args.no_proxy:
            proxy_server = ProxyServer(
                cfg.proxy.host,
                cfg.proxy.port,
                pipeline,
                connect_timeout_ms=cfg.proxy.connect_timeout_ms,
                stats_collector=stats_collector,
            )
            servers.append(proxy_server)
            logger.info(
                "Starting HTTP proxy on %s:%d", cfg.proxy.host, cfg.proxy.port
            )
    except OSError as e:
        logger.error("Could not start listeners: %s", e)
        for s in servers:
            s.stop()
        if stats_reporter is not None:
            stats_reporter.stop()
        return 1

    if not servers:
        logger.error("Nothing to run: both DNS and proxy listeners are disabled")
        if stats_reporter is not None:
            stats_reporter.stop()
        return 1

    for s in servers:
        t = threading.Thread(
            target=s.serve_forever, name=f"adsift-{type(s).__name__}", daemon=True
        )
        t.start()
        threads.append(t)

    logger.info("Startup Completed")

    try:
        while not shutdown_event.is_set():
            if not all(t.is_alive() for t in threads):
                logger.error("A listener thread exited unexpectedly")
                if exit_code == 0:
                    exit_code = 1
                break
            shutdown_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    finally:
        for s in servers:
            s.stop()
        for t in threads:
            t.join(timeout=5.0)
        if stats_reporter is not None:
            logger.info("Stopping statistics reporter")
            stats_reporter.stop()
        logger.info("Final statistics: %s", format_snapshot_json(pipeline.get_stats()))

    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
