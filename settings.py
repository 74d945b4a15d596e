from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field

from surface.scripts import PageProfile

log = logging.getLogger(__name__)

DEFAULT_TARGET_URL = "https://chat.qwen.ai/"


def _env_float(name: str, default: float, *, min_value: float = 0.0, max_value: float = 3600.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = float(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r", name, raw)
        return default
    return min(max(parsed, min_value), max_value)


def _env_int(name: str, default: int, *, min_value: int = 0, max_value: int = 1_000_000) -> int:
    return int(_env_float(name, default, min_value=min_value, max_value=max_value))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Read a JSON array of strings; selectors may contain commas, so no CSV."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = json.loads(raw)
    except ValueError:
        log.warning("Ignoring %s: not a JSON array", name)
        return default
    if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
        log.warning("Ignoring %s: expected a JSON array of strings", name)
        return default
    return tuple(parsed)


def load_page_profile() -> PageProfile:
    base = PageProfile()
    return PageProfile(
        input_selectors=_env_list("KALL_INPUT_SELECTORS", base.input_selectors),
        send_selectors=_env_list("KALL_SEND_SELECTORS", base.send_selectors),
        send_icon_selector=os.getenv("KALL_SEND_ICON_SELECTOR") or base.send_icon_selector,
        response_selectors=_env_list("KALL_RESPONSE_SELECTORS", base.response_selectors),
        typing_selectors=_env_list("KALL_TYPING_SELECTORS", base.typing_selectors),
        placeholder_texts=_env_list("KALL_PLACEHOLDER_TEXTS", base.placeholder_texts),
        network_error_markers=_env_list("KALL_NETWORK_ERROR_MARKERS", base.network_error_markers),
    )


@dataclass(slots=True)
class WorkerSettings:
    store_url: str
    store_key: str
    target_url: str = DEFAULT_TARGET_URL
    table: str = "ai_tasks"
    schema: str = "public"
    store_timeout_s: float = 10.0
    finalize_attempts: int = 3
    realtime_enabled: bool = True
    poll_interval_s: float = 3.0
    reconnect_delay_s: float = 5.0
    chunk_size: int = 2048
    chunk_delay_ms: int = 50
    settle_delay_ms: int = 1000
    harvest_interval_ms: int = 1000
    stability_threshold: int = 5
    reload_backoff_s: float = 3.0
    dispatch_timeout_s: float = 120.0
    harvest_timeout_s: float = 600.0
    queue_limit: int = 8
    headless: bool = True
    user_data_dir: str | None = None
    profile: PageProfile = field(default_factory=PageProfile)

    @classmethod
    def from_env(cls) -> WorkerSettings:
        store_url = (os.getenv("SUPABASE_URL") or "").strip()
        store_key = (os.getenv("SUPABASE_KEY") or "").strip()
        if not store_url or not store_key:
            raise SystemExit("ERROR: SUPABASE_URL and SUPABASE_KEY must be set")
        return cls(
            store_url=store_url,
            store_key=store_key,
            target_url=os.getenv("KALL_TARGET_URL") or DEFAULT_TARGET_URL,
            table=os.getenv("KALL_TABLE") or "ai_tasks",
            schema=os.getenv("KALL_SCHEMA") or "public",
            store_timeout_s=_env_float("KALL_STORE_TIMEOUT_S", 10.0, min_value=1.0, max_value=120.0),
            finalize_attempts=_env_int("KALL_FINALIZE_ATTEMPTS", 3, min_value=1, max_value=10),
            realtime_enabled=_env_bool("KALL_REALTIME_ENABLED", True),
            poll_interval_s=_env_float("KALL_POLL_INTERVAL_S", 3.0, min_value=0.5, max_value=300.0),
            reconnect_delay_s=_env_float("KALL_RECONNECT_DELAY_S", 5.0, min_value=0.5, max_value=300.0),
            chunk_size=_env_int("KALL_CHUNK_SIZE", 2048, min_value=1, max_value=1_000_000),
            chunk_delay_ms=_env_int("KALL_CHUNK_DELAY_MS", 50, max_value=10_000),
            settle_delay_ms=_env_int("KALL_SETTLE_DELAY_MS", 1000, max_value=30_000),
            harvest_interval_ms=_env_int("KALL_HARVEST_INTERVAL_MS", 1000, min_value=50, max_value=60_000),
            stability_threshold=_env_int("KALL_STABILITY_THRESHOLD", 5, min_value=1, max_value=120),
            reload_backoff_s=_env_float("KALL_RELOAD_BACKOFF_S", 3.0, max_value=600.0),
            dispatch_timeout_s=_env_float("KALL_DISPATCH_TIMEOUT_S", 120.0, max_value=86_400.0),
            harvest_timeout_s=_env_float("KALL_HARVEST_TIMEOUT_S", 600.0, max_value=86_400.0),
            queue_limit=_env_int("KALL_QUEUE_LIMIT", 8, max_value=1000),
            headless=_env_bool("KALL_HEADLESS", True),
            user_data_dir=os.getenv("KALL_USER_DATA_DIR") or None,
            profile=load_page_profile(),
        )
