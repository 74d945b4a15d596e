"""Automation surface: the page engine seam, its messages and page scripts."""

from surface.base import (
    AutomationSurface,
    DomNotFound,
    HarvestError,
    ScriptExecutionError,
    SurfaceError,
    SurfaceLoadError,
    classify_page_error,
)
from surface.extraction import extract_payload
from surface.messages import (
    ChunkProgress,
    Harvested,
    InjectionSuccess,
    ScriptError,
    SurfaceFailed,
    SurfaceLoaded,
    SurfaceMessage,
)
from surface.scripts import PageProfile

__all__ = [
    "AutomationSurface",
    "ChunkProgress",
    "DomNotFound",
    "HarvestError",
    "Harvested",
    "InjectionSuccess",
    "PageProfile",
    "ScriptError",
    "ScriptExecutionError",
    "SurfaceError",
    "SurfaceFailed",
    "SurfaceLoadError",
    "SurfaceLoaded",
    "SurfaceMessage",
    "classify_page_error",
    "extract_payload",
]
