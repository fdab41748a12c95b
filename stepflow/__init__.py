"""stepflow: execution orchestration engine for graph-based automation workflows."""

__version__ = "1.0.0"
