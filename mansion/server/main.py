#!/usr/bin/env python3
"""
Mansion provisioner - Main entry point.

Runs the cloud controller with its maintenance workers and the operator API.
"""

from __future__ import annotations

import argparse
import logging
import sys
from http.server import ThreadingHTTPServer
from pathlib import Path
from typing import Dict, Optional

from ..broker.base import BrokerClient
from ..broker.http import HttpBrokerClient
from ..data.persistence import ClanStore
from ..nodes.connector import TcpProbeConnector
from ..provisioning.cloud import MansionCloud
from ..provisioning.templates import TemplateList
from .config import Config
from .routes import ProvisionerRequestHandler
from .workers import create_workers

log = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s %(message)s"

DEFAULT_ACCOUNT = "default"


def setup_logging(level: str = "INFO") -> None:
    """Send every log record to stderr in one format."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    # urllib3 logs every retry at WARNING; keep it to real problems
    logging.getLogger("urllib3").setLevel(logging.ERROR)


def create_brokers(config: Config) -> Dict[str, BrokerClient]:
    """One HTTP broker client per configured account."""
    broker = config.broker
    return {
        account: HttpBrokerClient(broker.url, token=config.token_for(account), timeout=broker.timeout,
                                  verify=broker.verify)
        for account in (broker.accounts or [DEFAULT_ACCOUNT])
    }


def create_cloud(config: Config, store: Optional[ClanStore] = None) -> MansionCloud:
    """Build the cloud described by ``config``."""
    provisioning = config.provisioning
    return MansionCloud(
        TemplateList(config.templates),
        create_brokers(config),
        TcpProbeConnector(),
        store or ClanStore(Path(config.data_dir) if config.data_dir else None),
        default_account=config.broker.default_account,
        settings=provisioning.to_settings(),
        pool_size=provisioning.pool_size,
    )


def run_server(args) -> None:
    """Run the provisioner."""
    config = Config.load(args.config)
    setup_logging(args.log_level or config.log_level)
    log.info("Loaded %d template(s), broker %s", len(config.templates), config.broker.url)

    # Override config with CLI args
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    cloud = create_cloud(config)
    provisioning = config.provisioning
    workers = create_workers(
        cloud,
        renewal_interval=provisioning.renewal_interval,
        retention_interval=provisioning.retention_interval,
        quota_cleanup_interval=provisioning.quota_cleanup_interval,
    )
    workers.start_all()

    # Configure the request handler
    ProvisionerRequestHandler.cloud = cloud
    ProvisionerRequestHandler.workers = workers

    server = ThreadingHTTPServer((config.server.host, config.server.port), ProvisionerRequestHandler)
    log.info("Serving on http://%s:%s", config.server.host, config.server.port)
    log.info("Data directory: %s", cloud.store.data_dir)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log.info("Shutting down...")
    finally:
        workers.stop_all()
        cloud.shutdown(terminate_nodes=args.terminate_on_exit, wait=True)
        cloud.close_brokers()
        server.server_close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Mansion cloud provisioner",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Server options
    parser.add_argument("--host", default=None, help="Bind address (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (overrides config)")
    parser.add_argument("--config", type=str, help="Path to config YAML file")
    parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        default=None,
        help="Log level (overrides config)",
    )
    parser.add_argument(
        "--terminate-on-exit",
        action="store_true",
        default=False,
        help="Dispose every live VM when shutting down",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    run_server(args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
