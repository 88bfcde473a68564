"""画像を複数サイズへ一括リサイズし、DPI情報付きでZIPにまとめるツール。"""

from __future__ import annotations

__version__ = "0.1.0"

from .pipeline import BatchOptions, BatchResult, JobResult, resize_batch
from .size_catalog import SizeCatalog, SizeSpec
from .source_registry import SourceRegistry

__all__ = [
    "__version__",
    "BatchOptions",
    "BatchResult",
    "JobResult",
    "SizeCatalog",
    "SizeSpec",
    "SourceRegistry",
    "resize_batch",
]
