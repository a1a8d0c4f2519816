"""Command line entry point of the GPU aware scheduler extender."""

from __future__ import annotations

import argparse
import logging
from typing import Sequence

from platsched.extender.server import Server
from platsched.gpu.node_cache import Cache
from platsched.gpu.scheduler import GASExtender
from platsched.kube import KubeError, get_kube_client

log = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse the command line options."""
    parser = argparse.ArgumentParser(
        prog="gas-scheduler-extender", description="GPU aware scheduler extender."
    )
    parser.add_argument(
        "-kubeConfig", "--kubeConfig", dest="kube_config", default="/root/.kube/config",
        help="location of kubernetes config file",
    )
    parser.add_argument(
        "-port", "--port", dest="port", default="9001",
        help="port on which the scheduler extender will listen",
    )
    parser.add_argument(
        "-cert", "--cert", dest="cert_file", default="/etc/kubernetes/pki/ca.crt",
        help="cert file extender will use for authentication",
    )
    parser.add_argument(
        "-key", "--key", dest="key_file", default="/etc/kubernetes/pki/ca.key",
        help="key file extender will use for authentication",
    )
    parser.add_argument(
        "-cacert", "--cacert", dest="ca_file", default="/etc/kubernetes/pki/ca.crt",
        help="ca file extender will use for authentication",
    )
    parser.add_argument(
        "-unsafe", "--unsafe", dest="unsafe", action="store_true",
        help="unsafe instances of GPU aware scheduler will be served over simple http.",
    )
    parser.add_argument(
        "-v", "--v", dest="verbosity", type=int, default=0, help="log verbosity level",
    )
    return parser.parse_args(argv)


def _log_level(verbosity: int) -> int:
    if verbosity >= 4:
        return logging.DEBUG
    if verbosity >= 1:
        return logging.INFO
    return logging.WARNING


def main(argv: Sequence[str] | None = None) -> int:
    """Start the extender; returns a process exit status."""
    args = parse_args(argv)
    logging.basicConfig(level=_log_level(args.verbosity))
    try:
        client = get_kube_client(args.kube_config)
    except KubeError as exc:
        log.error("cannot create kubernetes client: %s", exc)
        return 1
    cache = Cache(client)
    try:
        cache.start()
        extender = GASExtender(client, cache)
        Server(extender).start_server(
            args.port, args.cert_file, args.key_file, args.ca_file, args.unsafe
        )
    except KubeError as exc:
        log.error("extender failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        pass
    finally:
        cache.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())