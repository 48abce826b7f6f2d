#!/usr/bin/env python3
"""
Heater Sync CLI

Runs a headless dashboard session and logs the reconciled device state
whenever it changes.
"""

import asyncio
import argparse
import logging
import os
import sys
import time

from .bridge import HeaterDashboardBridge
from .data_models import Channel, DashboardConfig, DeviceSnapshot
from .timeutils import format_age


def setup_logging(log_level: str = "INFO"):
    """Setup logging configuration"""
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {log_level}')

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes", "on")


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Heater Sync - live ESP32 heater state from MQTT and Firebase"
    )

    # MQTT settings
    parser.add_argument(
        "--mqtt-broker",
        default=os.getenv("MQTT_BROKER", "localhost"),
        help="MQTT broker hostname or IP address (default: localhost)"
    )
    parser.add_argument(
        "--mqtt-port",
        type=int,
        default=int(os.getenv("MQTT_PORT", "1883")),
        help="MQTT broker port (default: 1883)"
    )
    parser.add_argument(
        "--mqtt-username",
        default=os.getenv("MQTT_USERNAME"),
        help="MQTT username for authentication"
    )
    parser.add_argument(
        "--mqtt-password",
        default=os.getenv("MQTT_PASSWORD"),
        help="MQTT password for authentication"
    )
    parser.add_argument(
        "--mqtt-transport",
        default=os.getenv("MQTT_TRANSPORT", "tcp"),
        choices=["tcp", "websockets"],
        help="MQTT transport (default: tcp)"
    )
    parser.add_argument(
        "--mqtt-tls",
        action="store_true",
        default=_env_flag("MQTT_TLS"),
        help="Use TLS for the broker connection"
    )
    parser.add_argument(
        "--namespace",
        default=os.getenv("MQTT_NAMESPACE", "esp32"),
        help="Device topic namespace (default: esp32)"
    )
    parser.add_argument(
        "--presence-namespace",
        default=os.getenv("MQTT_PRESENCE_NAMESPACE"),
        help="Namespace of the last-will status topic (default: same as --namespace)"
    )

    # Document store settings
    parser.add_argument(
        "--database-url",
        default=os.getenv("FIREBASE_DATABASE_URL", "http://localhost:9000"),
        help="Realtime database URL"
    )
    parser.add_argument(
        "--api-key",
        default=os.getenv("FIREBASE_API_KEY"),
        help="Web API key used for anonymous sign-in"
    )
    parser.add_argument(
        "--status-poll",
        type=float,
        default=float(os.getenv("STATUS_POLL_SECONDS", "120")),
        help="Seconds between telemetry document polls, 0 disables (default: 120)"
    )

    # System settings
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    return parser.parse_args(argv)


def config_from_args(args) -> DashboardConfig:
    return DashboardConfig(
        mqtt_broker=args.mqtt_broker,
        mqtt_port=args.mqtt_port,
        mqtt_username=args.mqtt_username,
        mqtt_password=args.mqtt_password,
        mqtt_transport=args.mqtt_transport,
        mqtt_tls=args.mqtt_tls,
        topic_namespace=args.namespace,
        presence_namespace=args.presence_namespace,
        database_url=args.database_url,
        api_key=args.api_key,
        status_poll_seconds=args.status_poll,
        log_level=args.log_level,
    )


def format_snapshot(snapshot: DeviceSnapshot, now: float) -> str:
    """One-line summary of the device state"""
    temps = snapshot.temperatures
    average = f"{temps.average:.1f}" if temps.average is not None else "--"
    readings = " ".join(
        f"{channel.value}={temps.get(channel):.1f}" if temps.get(channel) is not None else f"{channel.value}=--"
        for channel in Channel
    )
    links = snapshot.connectivity
    return (
        f"avg={average}°C {readings} "
        f"heater={snapshot.heater_state.value if snapshot.heater_state else '--'} "
        f"target={snapshot.target_temperature if snapshot.target_temperature is not None else '--'} "
        f"presence={snapshot.presence.value if snapshot.presence else '--'} "
        f"wifi={links.device_network.value} cloud={links.cloud_link.value} bus={links.bus_link.value} "
        f"rssi={snapshot.signal_strength if snapshot.signal_strength is not None else '--'} "
        f"updated={format_age(snapshot.age_seconds(now))}"
    )


async def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    # Setup logging
    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    config = config_from_args(args)
    logger.info("Starting heater sync session...")
    logger.info(f"MQTT Broker: {config.mqtt_broker}:{config.mqtt_port} ({config.mqtt_transport})")
    logger.info(f"Database: {config.database_url}")

    bridge = HeaterDashboardBridge(config)
    bridge.add_listener(lambda snapshot: logger.info(format_snapshot(snapshot, time.time())))

    try:
        await bridge.start()
        logger.info("Session running... Press Ctrl+C to stop")
        await asyncio.Event().wait()
    finally:
        await bridge.stop()
        logger.info("Session stopped")
    return 0


def run():
    """Console script entry point"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
