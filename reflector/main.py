"""Entry point for the secret reflector.

Loads the replication config, opens one Secret watch per source namespace,
reconciles the merged event stream and serves the liveness endpoint next to it.
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

import uvicorn
from fastapi import FastAPI
from kubernetes.config import ConfigException

from common.constants import CERT_MANAGER_CRD_NAME, CONTROLLER_NAME
from common.logging_config import setup_logging
from reflector import config as settings
from reflector.client_cache import NamespacedClientCache
from reflector.exceptions import ConfigError
from reflector.kube_api import KubeApi, load_kube_client, secret_handle_factory
from reflector.reconciler import Reconciler
from reflector.replication_config import ReplicationConfig, load_replication_config
from reflector.secret_watcher import SecretWatcher
from reflector.watch_multiplexer import WatchMultiplexer

logger = setup_logging('reflector')

app = FastAPI(
    title="Secret Reflector",
    description="Replicates Kubernetes secrets across namespaces",
    version="0.1.0"
)


@app.get("/live")
async def live():
    """
    Liveness probe. Does not reflect reconciliation health.
    """
    return {"status": "OK"}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Command line flags; defaults come from the environment (reflector.config)."""
    parser = argparse.ArgumentParser(prog=CONTROLLER_NAME, description="Replicate secrets across namespaces")
    parser.add_argument("--config", default=settings.CONFIG_PATH, help="Replication config file (YAML or JSON)")
    parser.add_argument("--host", default=settings.REFLECTOR_HOST, help="Liveness endpoint bind address")
    parser.add_argument("--port", type=int, default=settings.REFLECTOR_PORT, help="Liveness endpoint port")
    parser.add_argument(
        "--scope",
        choices=("namespaced", "cluster"),
        default=settings.WATCH_SCOPE,
        help="Watch each source namespace, or the whole cluster with one watch"
    )
    parser.add_argument("--label-selector", default=settings.LABEL_SELECTOR, help="Label selector for watched secrets")
    parser.add_argument("--crd-probe", action="store_true", default=settings.CRD_PROBE,
                        help=f"Log whether {CERT_MANAGER_CRD_NAME} is installed at startup")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def watch_namespaces(replication: ReplicationConfig, scope: str):
    """Namespaces to subscribe to, or None for a single cluster-wide watch."""
    if scope == "cluster":
        return None
    return replication.source_namespaces()


async def run_reflector(replication: ReplicationConfig, kube: KubeApi, args: argparse.Namespace) -> None:
    """
    Run the reconcile loop and the liveness server until either stops.
    """
    clients = NamespacedClientCache(secret_handle_factory(kube.core))
    reconciler = Reconciler(replication, clients)
    multiplexer = WatchMultiplexer(
        lambda namespace: SecretWatcher(
            kube.core,
            namespace=namespace,
            label_selector=args.label_selector,
            field_selector=settings.FIELD_SELECTOR,
            timeout_seconds=settings.WATCH_TIMEOUT_SECONDS,
        )
    )

    server = uvicorn.Server(uvicorn.Config(app, host=args.host, port=args.port, access_log=False))

    def shutdown(sig=None):
        if sig:
            logger.info(f"Received signal {sig.name}, shutting down...")
        multiplexer.close()
        server.should_exit = True

    if sys.platform != 'win32':
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown, sig)

    events = multiplexer.subscribe(watch_namespaces(replication, args.scope))
    reconcile_task = asyncio.create_task(reconciler.run(events), name="reconcile")
    server_task = asyncio.create_task(server.serve(), name="liveness")
    logger.info(f"Liveness endpoint on {args.host}:{args.port}/live")

    done, _ = await asyncio.wait({reconcile_task, server_task}, return_when=asyncio.FIRST_COMPLETED)
    if reconcile_task in done:
        logger.warning("Reconcile loop finished, stopping liveness endpoint")
    else:
        logger.info("Liveness endpoint stopped, closing watches")
    shutdown()

    for task in (reconcile_task, server_task):
        try:
            await task
        except Exception as e:
            logger.error(f"Task {task.get_name()} failed: {e}", exc_info=True)

    logger.info("Reflector stopped")


def main(argv: Optional[List[str]] = None) -> None:
    """Bootstrap the reflector process."""
    args = parse_args(argv)
    if args.debug:
        setup_logging('reflector', log_level='DEBUG')
        logger.info("Debug logging enabled")

    logger.info("Reflector starting up...")

    try:
        replication = load_replication_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    try:
        kube = KubeApi(load_kube_client())
    except ConfigException as e:
        logger.error(f"Cannot load Kubernetes configuration: {e}")
        sys.exit(1)

    if args.crd_probe:
        kube.is_crd_installed(CERT_MANAGER_CRD_NAME)

    try:
        asyncio.run(run_reflector(replication, kube, args))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")


if __name__ == "__main__":
    main()
