"""
Managed device entrypoint.

CLI:
  managed-device run [--lifetime N] [--accept-actions] [--log-level LEVEL]
      -> connect, register as a managed device, answer action requests
         until SIGINT/SIGTERM, then unmanage and disconnect
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from managed_device.config import package_version

if TYPE_CHECKING:
    from managed_device.managed_client import ManagedDeviceClient
    from managed_device.mqtt_client import DeviceMQTTClient

logger = logging.getLogger(__name__)

CONNECT_WAIT_S = 5.0


@dataclass
class Runtime:
    shutdown: threading.Event
    transport: Optional["DeviceMQTTClient"] = None
    device: Optional["ManagedDeviceClient"] = None


def get_version_string() -> str:
    return package_version()


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _wait_connected(transport: "DeviceMQTTClient", timeout_s: float = CONNECT_WAIT_S) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if transport.is_connected():
            return True
        time.sleep(0.1)
    return transport.is_connected()


def run_device(lifetime: Optional[int] = None, accept_actions: bool = False) -> int:
    """
    Runtime mode: connect, send manage, answer actions, block until shutdown.
    Returns process exit code.
    """
    from managed_device.config import ConfigError, load_config
    from managed_device.core.errors import ManagedDeviceError
    from managed_device.managed_client import DmAction, DmError, DmResponse, ManagedDeviceClient
    from managed_device.mqtt_client import DeviceMQTTClient

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    if cfg.is_quickstart:
        logger.error("cannot use quickstart for a managed device")
        return 2

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    logger.info("============================================================")
    logger.info("Managed device client")
    logger.info("Version: %s", get_version_string())
    logger.info("Device: d:%s:%s:%s", cfg.org, cfg.device_type, cfg.device_id)
    logger.info("============================================================")

    transport = DeviceMQTTClient.from_config(cfg)
    device = ManagedDeviceClient(transport)
    rt.transport = transport
    rt.device = device

    def on_response(resp: DmResponse) -> None:
        logger.info("Response for %s: rc=%s", resp.correlation_id, resp.result_code)

    def on_action(action: DmAction) -> None:
        logger.info("%s action %s (reqId=%s)", "Accepting" if accept_actions else "Rejecting",
                    action.action, action.correlation_id)
        try:
            device.respond_device_action(action.correlation_id, accept_actions)
        except ManagedDeviceError as exc:
            logger.error("Failed to respond to %s: %s", action.correlation_id, exc)

    def on_error(event: DmError) -> None:
        logger.warning("Protocol error on %s: %s", event.topic, event.error)

    device.on_dm_response = on_response
    device.on_dm_action = on_action
    device.on_dm_error = on_error

    if not transport.connect():
        logger.error("MQTT connection failed")
        return 1

    if not _wait_connected(transport):
        logger.error("Connection not established after %.0f seconds", CONNECT_WAIT_S)
        transport.disconnect()
        return 1

    try:
        try:
            device.manage(lifetime=lifetime)
        except ManagedDeviceError as exc:
            logger.error("Manage request failed: %s", exc)
            return 1
        logger.info("Device running (shutdown via SIGINT/SIGTERM)")
        while not rt.shutdown.is_set():
            time.sleep(0.5)
    finally:
        _shutdown(rt)

    return 0


def _shutdown(rt: Runtime) -> None:
    logger.info("Shutting down...")

    if rt.device and rt.transport and rt.transport.is_connected():
        try:
            rt.device.unmanage()
        except Exception:
            logger.exception("Error sending unmanage request")

    if rt.transport:
        try:
            rt.transport.disconnect()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        logger.info("MQTT disconnected")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="managed-device")
    p.add_argument("--version", action="version", version=get_version_string())
    p.add_argument("--log-level", metavar="LEVEL", help="Log level (default DEVICE_LOG_LEVEL or INFO)")

    sub = p.add_subparsers(dest="cmd", required=True)

    run_parser = sub.add_parser("run", help="Run as a managed device")
    run_parser.add_argument(
        "--lifetime",
        type=int,
        metavar="SECONDS",
        help="Manage lifetime in seconds (>= 3600)",
    )
    run_parser.add_argument(
        "--accept-actions",
        action="store_true",
        help="Accept action requests (default: reject)",
    )

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    from managed_device.core.log_config import configure_logging

    configure_logging(args.log_level)

    if args.cmd == "run":
        raise SystemExit(run_device(lifetime=args.lifetime, accept_actions=args.accept_actions))

    raise SystemExit(2)


if __name__ == "__main__":
    main()
