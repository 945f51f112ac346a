"""nodeselector-notify: alerts on pods the scheduler cannot place."""

__version__ = "0.2.0"
