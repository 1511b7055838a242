"""SpecFlow: spec-driven development orchestration CLI."""

__version__ = "3.0.0"
