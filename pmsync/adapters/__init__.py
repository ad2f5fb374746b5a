"""PM tool adapters and the factory that picks one by tool name."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import httpx

from ..errors import PMAdapterError
from ..models import PMAdapterConfig, PMOverrides
from .base import BasePMAdapter
from .conventions import StateConventions
from .github import GitHubAdapter
from .linear import LinearAdapter
from .local import LocalPMAdapter

__all__ = [
    "BasePMAdapter",
    "GitHubAdapter",
    "LinearAdapter",
    "LocalPMAdapter",
    "StateConventions",
    "create_pm_adapter",
]


def create_pm_adapter(
    tool: str,
    config: Optional[PMAdapterConfig] = None,
    base_path: Path | str | None = None,
    overrides: Optional[PMOverrides] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BasePMAdapter:
    """Build the adapter for ``tool``; unknown tools raise PMAdapterError."""
    name = (tool or "").strip().lower()
    config = config or PMAdapterConfig(tool=name)

    if name == "linear":
        return LinearAdapter(config, overrides=overrides, base_path=base_path, transport=transport)
    if name == "github":
        return GitHubAdapter(config, overrides=overrides, base_path=base_path, transport=transport)
    if name == "local":
        return LocalPMAdapter(base_path if base_path is not None else ".")
    raise PMAdapterError(f"PM tool '{tool}' is not supported", tool=name or None)
