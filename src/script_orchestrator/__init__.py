"""Script orchestration engine: repository sync, script screening, bounded execution."""

__version__ = "0.1.0"
