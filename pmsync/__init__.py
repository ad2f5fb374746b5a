"""Hodge PM sync - feature ID management and project-management mirroring."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__all__ = [
    "adapters",
    "comments",
    "config",
    "errors",
    "hooks",
    "id_manager",
    "id_store",
    "models",
    "pmsync_logging",
    "retry_queue",
]
