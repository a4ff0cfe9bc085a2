"""Taskweave - task tracking with a consistent task ID lifecycle."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__version__ = "0.1.0"

__all__ = [
    "ai",
    "cli",
    "config",
    "errors",
    "ids",
    "models",
    "store",
    "taskweave_logging",
    "workflow",
    "workspace",
]
