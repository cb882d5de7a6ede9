"""Local task orchestration engine for media-processing pipelines."""

__version__ = "0.1.0"
