#!/usr/bin/env python3
"""iptables tailer: entry point.

Pipeline: LogWatcher/JournalWatcher -> line queue -> DropParser -> drop queue -> Poster
"""

import logging
import queue
import signal
import sys
import threading

from kubernetes import client
from kubernetes import config as kube_config

from iptables_tailer.config import Config, load_config
from iptables_tailer.errors import ConfigError, TailerError
from iptables_tailer.journal_watcher import JournalWatcher
from iptables_tailer.locator import PodLocator
from iptables_tailer.metrics import DropMetrics, create_metrics_app, run_metrics_server
from iptables_tailer.parser import DropParser
from iptables_tailer.poster import Poster
from iptables_tailer.sink import KubeEventSink
from iptables_tailer.stats import PipelineStats, log_stats, start_stats_reporter
from iptables_tailer.watcher import LogWatcher

LOG_FORMAT = "%(asctime)s [TAILER] %(levelname)s %(name)s %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr, force=True)


def build_core_api(api_server_override: str = "") -> client.CoreV1Api:
    """In-cluster config first, kubeconfig as fallback; optional API server override."""
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        kube_config.load_kube_config()
    configuration = client.Configuration.get_default_copy()
    if api_server_override:
        configuration.host = api_server_override
    return client.CoreV1Api(client.ApiClient(configuration))


def build_watcher(config: Config, shutdown: threading.Event):
    if config.journal_mode:
        return JournalWatcher(
            config.journal_directory, config.time_layout, shutdown,
            identifier=config.journal_identifier,
        )
    return LogWatcher(config.log_path, config.watch_interval_seconds, shutdown)


def start_thread(name: str, target, args: tuple, shutdown: threading.Event,
                 failures: list) -> threading.Thread:
    """Run target in a daemon thread; an exception there is fatal for the process."""
    def runner():
        try:
            target(*args)
        except Exception as e:
            logger.critical("%s failed: %s", name, e, exc_info=not isinstance(e, TailerError))
            failures.append(e)
            shutdown.set()

    t = threading.Thread(target=runner, name=name, daemon=True)
    t.start()
    return t


def main() -> int:
    try:
        config = load_config()
    except ConfigError as e:
        configure_logging()
        logger.critical("Invalid configuration: %s", e)
        return 1
    configure_logging(config.log_level)

    shutdown = threading.Event()

    def _signal_handler(signum, frame):
        logger.info("Shutdown signal received, stopping...")
        shutdown.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    logger.info("Config: prefix=%s, source=%s, expiration=%dm, repeat_interval=%dm, identifier=%s",
                config.log_prefix, config.journal_directory or config.log_path,
                config.expiration_minutes, config.repeat_interval_minutes, config.pod_identifier)

    stats = PipelineStats()
    metrics = DropMetrics()
    run_metrics_server(create_metrics_app(metrics), config.metrics_port)

    try:
        core_api = build_core_api(config.kube_api_server)
    except (kube_config.ConfigException, OSError) as e:
        logger.critical("Cannot init Kubernetes client: %s", e)
        return 1

    locator = PodLocator(core_api, shutdown, sync_timeout=config.cache_sync_timeout_seconds)
    sink = KubeEventSink(core_api, config.event_component)
    poster = Poster(locator, sink, metrics, config, stats=stats)
    parser = DropParser(config.log_prefix, config.time_layout, config.expiration, stats=stats)
    watcher = build_watcher(config, shutdown)

    line_queue = queue.Queue(maxsize=config.channel_buffer_size)
    drop_queue = queue.Queue(maxsize=config.channel_buffer_size)

    failures: list[Exception] = []
    poster_thread = start_thread("poster", poster.run, (shutdown, drop_queue), shutdown, failures)
    parser_thread = start_thread("parser", parser.run, (line_queue, drop_queue), shutdown, failures)
    watcher_thread = start_thread("watcher", watcher.run, (line_queue,), shutdown, failures)
    scheduler = start_stats_reporter(stats, config.stats_interval_seconds)

    logger.info("iptables tailer running. Press Ctrl+C to stop.")
    while not shutdown.is_set():
        shutdown.wait(1)

    logger.info("Shutting down...")
    watcher.stop()
    watcher_thread.join(timeout=5)
    try:
        line_queue.put(None, timeout=5)
    except queue.Full:
        logger.warning("Line queue full, parser will not drain before exit")
    parser_thread.join(timeout=5)
    poster_thread.join(timeout=10)
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    log_stats(stats)

    if failures:
        logger.critical("iptables tailer stopped after a fatal error")
        return 1
    logger.info("iptables tailer stopped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
