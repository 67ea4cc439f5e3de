"""eventchain: tamper-evident lifecycle events on an append-only log.

Events about a subject (a product batch, a shipment, a document) are encoded,
published to a consensus log topic with retries, read back through the log's
query API and checked for chain integrity.  Failed publishes are kept in a
local dead-letter file for review and manual retry.

Most callers only need :class:`eventchain.pipeline.EventPipeline`.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__: str = version("eventchain")
except PackageNotFoundError:
    __version__ = "0.1.0"
