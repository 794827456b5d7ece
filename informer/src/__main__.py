from __future__ import annotations

import json
import logging
import logging.handlers
import os
import queue
import re
import signal
import threading
import time
from collections.abc import Mapping
from typing import Any

import yaml

from informer.src.config import ConfigError, ControllerSettings, load_settings, normalize
from informer.src.controller import Controller, ControllerStartError
from informer.src.export import LoggingEventHandler
from informer.src.health import start_health_server
from informer.src.kube import ResourceClient, build_dynamic_client, load_kube_configuration
from informer.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str, log_dir: str | None = None) -> logging.handlers.QueueListener:
    """Route all logging through a queue drained by a background listener.

    Callers never block on I/O; the returned listener must be stopped at exit
    to flush buffered records. With *log_dir* set, records are also written
    to ``informer-<timestamp>.log`` in that directory.
    """
    formatter = JSONFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        filename = time.strftime("informer-%Y%m%d-%H%M%S.log", time.gmtime())
        handlers.append(logging.FileHandler(os.path.join(log_dir, filename), encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(-1)
    logging.root.addHandler(logging.handlers.QueueHandler(log_queue))
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))

    listener = logging.handlers.QueueListener(log_queue, *handlers, respect_handler_level=True)
    listener.start()
    return listener


def load_watch_config(env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Read the raw watch configuration from ``WATCH_CONFIG`` (YAML or JSON
    text) or ``WATCH_CONFIG_FILE`` (path to a YAML or JSON document)."""
    values = env if env is not None else os.environ
    raw = values.get("WATCH_CONFIG")
    source = "WATCH_CONFIG"
    if not raw:
        path = values.get("WATCH_CONFIG_FILE")
        if not path:
            raise ConfigError("Set WATCH_CONFIG or WATCH_CONFIG_FILE to the watch configuration")
        source = path
        try:
            with open(path, encoding="utf-8") as handle:
                raw = handle.read()
        except OSError as exc:
            raise ConfigError(f"Cannot read watch configuration {path}: {exc}") from exc
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{source} is not valid YAML: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigError(f"{source} must contain a mapping")
    return parsed


def run(settings: ControllerSettings, env: Mapping[str, str] | None = None) -> int:
    """Build the controller, serve health endpoints and block until shutdown.

    Returns the process exit code.
    """
    logger = logging.getLogger(__name__)
    values = env if env is not None else os.environ
    METRICS.build_info.info(
        {
            "version": values.get("APP_VERSION", RUNTIME_VERSION),
            "revision": values.get("GIT_SHA", "unknown"),
        }
    )

    specs = normalize(load_watch_config(values))
    load_kube_configuration()
    controller = Controller(
        client=ResourceClient(build_dynamic_client()),
        specs=specs,
        settings=settings,
    )
    controller.add_event_handler(LoggingEventHandler())

    health_server = start_health_server(
        ready=controller.ready,
        port=settings.health_port,
        informer_counts=controller.get_active_informers,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.start()
    except ControllerStartError:
        logger.exception("Controller failed to start")
        health_server.shutdown()
        return 1

    if settings.auto_shutdown_seconds > 0:
        logger.info("Auto-shutdown scheduled in %ds", settings.auto_shutdown_seconds)
        if not shutdown_event.wait(timeout=settings.auto_shutdown_seconds):
            logger.info("Auto-shutdown timer elapsed")
    else:
        shutdown_event.wait()

    controller.stop()
    health_server.shutdown()
    return 0


def main() -> None:
    """Entrypoint: configure logging, load settings and run until signalled."""
    try:
        settings = load_settings()
    except ConfigError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    listener = configure_logging(settings.log_level, os.getenv("LOG_DIR"))
    try:
        exit_code = run(settings)
    except ConfigError:
        logging.getLogger(__name__).exception("Invalid watch configuration")
        exit_code = 2
    finally:
        listener.stop()
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
