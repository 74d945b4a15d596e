from __future__ import annotations

from dataclasses import dataclass

# Page-originated messages carry the cycle token they were issued under;
# ``None`` means the message is not tied to a dispatch/harvest cycle.


@dataclass(slots=True, frozen=True)
class ChunkProgress:
    current: int
    total: int
    cycle: int | None = None


@dataclass(slots=True, frozen=True)
class InjectionSuccess:
    message: str
    cycle: int | None = None


@dataclass(slots=True, frozen=True)
class Harvested:
    payload: str
    cycle: int | None = None


@dataclass(slots=True, frozen=True)
class ScriptError:
    message: str
    cycle: int | None = None


@dataclass(slots=True, frozen=True)
class SurfaceLoaded:
    url: str = ""


@dataclass(slots=True, frozen=True)
class SurfaceFailed:
    message: str


PageMessage = ChunkProgress | InjectionSuccess | Harvested | ScriptError
SurfaceMessage = PageMessage | SurfaceLoaded | SurfaceFailed

CALLBACK_NAMES: dict[str, type] = {
    "onChunkProgress": ChunkProgress,
    "onInjectionSuccess": InjectionSuccess,
    "onResponseHarvested": Harvested,
    "onError": ScriptError,
}


def message_from_callback(name: str, args: list[object], cycle: int | None) -> PageMessage:
    """Translate a bridge callback from the page into a typed message.

    Unknown callback names and malformed arguments become ``ScriptError`` so a
    misbehaving page always ends the cycle instead of being ignored.
    """
    if name == "onChunkProgress":
        try:
            return ChunkProgress(int(args[0]), int(args[1]), cycle)  # type: ignore[arg-type]
        except (IndexError, TypeError, ValueError):
            return ScriptError(f"EXECUTION_ERROR: malformed chunk progress {args!r}", cycle)
    if name not in CALLBACK_NAMES:
        return ScriptError(f"EXECUTION_ERROR: unknown bridge callback {name!r}", cycle)
    text = "" if not args or args[0] is None else str(args[0])
    return CALLBACK_NAMES[name](text, cycle)
