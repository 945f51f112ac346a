"""nodeselector-notify command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``nodeselector-notify`` script).
"""

from nodeselector_notify.cli.main import cli

__all__ = ["cli"]
