from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.config.config_exception import ConfigException

from cert_controller.src.config import ConfigError, load_identity, load_settings
from cert_controller.src.controller import CertificateController
from cert_controller.src.health import start_health_server
from cert_controller.src.kube import build_core_client, load_kube_configuration
from cert_controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

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
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: validate configuration, connect, and run the watch loop.

    Exits with status 1 when the certificate ARN is missing, when no
    Kubernetes credentials can be loaded, or when the watch loop gives up on
    its own (RBAC or authentication failure).
    """
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        identity = load_identity()
        settings = load_settings()
    except (ConfigError, ValueError) as exc:
        LOGGER.error("%s", exc)
        raise SystemExit(1) from exc
    LOGGER.info(
        "Certificate ARN found: %s (controller class %s)",
        identity.target_value,
        identity.controller_class,
    )

    try:
        load_kube_configuration()
    except ConfigException as exc:
        LOGGER.error("Unable to load Kubernetes credentials: %s", exc)
        raise SystemExit(1) from exc

    controller = CertificateController(
        core_api=build_core_client(),
        identity=identity,
        resync_period_seconds=settings.resync_period_seconds,
        write_retry_limit=settings.write_retry_limit,
    )
    health_server = start_health_server(ready=controller.ready, port=settings.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()

    if not shutdown_event.is_set():
        LOGGER.error("Watch loop exited without a stop signal; terminating")
        raise SystemExit(1)
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
