"""
Command-line entry points.

    fleetctl     control plane (ops.py)
    fleet-agent  node agent (agentd.py)
    fleet-dev    single-machine variant (devmachine.py)
"""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
