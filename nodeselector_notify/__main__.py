"""Entry point for `python -m nodeselector_notify`.

Usage:
    python -m nodeselector_notify
    uv run python -m nodeselector_notify
"""

from __future__ import annotations

import asyncio

from nodeselector_notify.app import main

asyncio.run(main())
