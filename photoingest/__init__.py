"""
Core package init for the bulk photo ingestion pipeline.

Makes the `photoingest` modules importable without requiring an editable install.
"""

__all__ = [
    "cropping",
    "detectors",
    "extract",
    "matching",
    "upload",
    "errors",
    "io_utils",
    "pipeline",
    "reporting",
    "types",
]
