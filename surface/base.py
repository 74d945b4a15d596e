from __future__ import annotations

from typing import Callable, Protocol

from surface.messages import SurfaceMessage

MessageListener = Callable[[SurfaceMessage], None]


class SurfaceError(RuntimeError):
    prefix = "SURFACE_ERROR"

    def diagnostic(self) -> str:
        text = str(self)
        if text.startswith(f"{self.prefix}:"):
            return text
        return f"{self.prefix}: {text}"


class DomNotFound(SurfaceError):
    prefix = "DOM_ERROR"


class ScriptExecutionError(SurfaceError):
    prefix = "EXECUTION_ERROR"


class HarvestError(SurfaceError):
    prefix = "HARVEST_ERROR"


class SurfaceLoadError(SurfaceError):
    prefix = "SURFACE_ERROR"


_PREFIXES: tuple[type[SurfaceError], ...] = (
    DomNotFound,
    ScriptExecutionError,
    HarvestError,
    SurfaceLoadError,
)


def classify_page_error(message: str) -> SurfaceError:
    for error_cls in _PREFIXES:
        if message.startswith(f"{error_cls.prefix}:"):
            return error_cls(message)
    return ScriptExecutionError(message)


class AutomationSurface(Protocol):
    """The page-rendering engine as seen by the executor.

    Implementations report load completion and page callbacks only through the
    listener; the executor never reads page state directly.
    """

    def set_listener(self, listener: MessageListener) -> None:
        ...

    async def start(self, url: str) -> None:
        ...

    async def run_script(self, script: str) -> None:
        ...

    async def reload(self) -> None:
        ...

    async def close(self) -> None:
        ...
