"""Logging setup for nodeselector-notify."""
