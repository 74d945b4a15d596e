"""Drives the generated page scripts inside a real Chromium page.

Skipped when Playwright or its Chromium build is not installed.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest

playwright_api = pytest.importorskip("playwright.async_api")

sys.path.append(str(Path(__file__).resolve().parents[1]))

from surface.messages import (  # noqa: E402
    ChunkProgress,
    Harvested,
    InjectionSuccess,
    ScriptError,
    message_from_callback,
)
from surface.scripts import (  # noqa: E402
    BINDING_NAME,
    PageProfile,
    build_bridge_script,
    build_dispatch_script,
    build_harvest_script,
    build_retire_script,
)

CHAT_PAGE = """
<html><body>
  <textarea id="prompt"></textarea>
  <button aria-label="Send message"
          onclick="window.__sent = document.getElementById('prompt').value"><svg></svg></button>
  <div class="markdown-body" id="reply"></div>
</body></html>
"""

PROFILE = PageProfile(network_error_markers=())


async def _with_page(
    html: str,
    body: Callable[[Any, list], Awaitable[None]],
    profile: PageProfile = PROFILE,
) -> None:
    async with playwright_api.async_playwright() as pw:
        try:
            browser = await pw.chromium.launch(headless=True)
        except playwright_api.Error as exc:
            pytest.skip(f"Chromium is not available: {exc}")
        messages: list = []
        try:
            page = await browser.new_page()
            await page.expose_function(
                BINDING_NAME,
                lambda name, args, cycle: messages.append(message_from_callback(name, list(args), cycle)),
            )
            await page.set_content(html)
            await page.evaluate(build_bridge_script(profile))
            await body(page, messages)
        finally:
            await browser.close()


async def _wait_for(predicate: Callable[[], bool], timeout_s: float = 5.0) -> None:
    async with asyncio.timeout(timeout_s):
        while not predicate():
            await asyncio.sleep(0.02)


def test_dispatcher_types_chunks_and_clicks_send() -> None:
    prompt = 'Explain "this":\n  C:\\temp\\file\twith tabs ' + "x" * 30

    async def body(page, messages) -> None:
        await page.evaluate(
            build_dispatch_script(prompt, cycle=1, profile=PROFILE, chunk_size=8, chunk_delay_ms=1, settle_delay_ms=20)
        )
        await _wait_for(lambda: any(isinstance(m, (InjectionSuccess, ScriptError)) for m in messages))

        assert await page.evaluate("window.__sent") == prompt
        progress = [m for m in messages if isinstance(m, ChunkProgress)]
        total = -(-len(prompt) // 8)
        assert [m.current for m in progress] == list(range(1, total + 1))
        assert all(m.total == total and m.cycle == 1 for m in progress)
        success = [m for m in messages if isinstance(m, InjectionSuccess)]
        assert len(success) == 1 and success[0].cycle == 1

    asyncio.run(_with_page(CHAT_PAGE, body))


def test_dispatcher_keeps_carriage_returns_in_chunks() -> None:
    prompt = "a\r\nb\rc\u2028d"

    async def body(page, messages) -> None:
        await page.evaluate(build_dispatch_script(prompt, cycle=2, profile=PROFILE, chunk_size=2, chunk_delay_ms=1))
        assert await page.evaluate("window.__kallDispatcher.chunks.join('')") == prompt

    asyncio.run(_with_page(CHAT_PAGE, body))


def test_dispatcher_reports_missing_input() -> None:
    async def body(page, messages) -> None:
        await page.evaluate(build_dispatch_script("hello", cycle=3, profile=PROFILE))
        await _wait_for(lambda: bool(messages))

        assert messages == [ScriptError("DOM_ERROR: Input box not found", 3)]

    asyncio.run(_with_page("<html><body><p>no input here</p></body></html>", body))


def test_harvester_reports_after_threshold_unchanged_ticks() -> None:
    async def body(page, messages) -> None:
        await page.evaluate(build_harvest_script(cycle=4, profile=PROFILE, interval_ms=600_000, stability_threshold=5))
        for text in ("Thinking", "Thinking harder", '{"answer":', '{"answer": 42}'):
            await page.evaluate(
                "t => { document.getElementById('reply').innerText = t; window.__kallHarvester.tick(); }",
                text,
            )
        for _ in range(4):
            await page.evaluate("window.__kallHarvester.tick()")
        await asyncio.sleep(0.1)
        assert not any(isinstance(m, Harvested) for m in messages)

        await page.evaluate("window.__kallHarvester.tick()")
        await _wait_for(lambda: bool(messages))
        await page.evaluate("window.__kallHarvester.tick()")
        await asyncio.sleep(0.1)

        assert messages == [Harvested('{"answer": 42}', 4)]

    asyncio.run(_with_page(CHAT_PAGE, body))


def test_harvester_waits_while_typing_indicator_is_shown() -> None:
    async def body(page, messages) -> None:
        await page.evaluate(build_harvest_script(cycle=5, profile=PROFILE, interval_ms=600_000, stability_threshold=2))
        await page.evaluate(
            """() => {
              document.getElementById('reply').innerText = 'partial';
              const stop = document.createElement('button');
              stop.id = 'stop';
              stop.setAttribute('aria-label', 'Stop generating');
              document.body.appendChild(stop);
            }"""
        )
        for _ in range(6):
            await page.evaluate("window.__kallHarvester.tick()")
        await asyncio.sleep(0.1)
        assert messages == []

        await page.evaluate("document.getElementById('stop').remove()")
        for _ in range(2):
            await page.evaluate("window.__kallHarvester.tick()")
        await _wait_for(lambda: bool(messages))

        assert messages == [Harvested("partial", 5)]

    asyncio.run(_with_page(CHAT_PAGE, body))


def test_harvester_stops_when_cycle_is_superseded() -> None:
    async def body(page, messages) -> None:
        await page.evaluate(build_harvest_script(cycle=6, profile=PROFILE, interval_ms=600_000, stability_threshold=1))
        await page.evaluate("window.__kallCycle = 7")
        await page.evaluate("document.getElementById('reply').innerText = 'late'")
        for _ in range(3):
            await page.evaluate("window.__kallHarvester.tick()")
        await asyncio.sleep(0.1)

        assert messages == []
        assert await page.evaluate("window.__kallHarvester.state.done") is True

    asyncio.run(_with_page(CHAT_PAGE, body))


def test_watchdog_reports_network_failure_once() -> None:
    profile = PageProfile(network_error_markers=("Network Error",))

    async def body(page, messages) -> None:
        await page.evaluate(
            """() => {
              for (const text of ['Network error, please retry', 'Network error again']) {
                const banner = document.createElement('div');
                banner.innerText = text;
                document.body.appendChild(banner);
              }
            }"""
        )
        await _wait_for(lambda: bool(messages))
        await page.evaluate("document.body.appendChild(document.createElement('p'))")
        await asyncio.sleep(0.1)

        assert messages == [ScriptError("DOM_ERROR: page reports network failure", None)]

    asyncio.run(_with_page(CHAT_PAGE, body, profile))


def test_retired_cycle_stops_pending_submit() -> None:
    async def body(page, messages) -> None:
        await page.evaluate(
            build_dispatch_script("abort me", cycle=8, profile=PROFILE, chunk_delay_ms=1, settle_delay_ms=300)
        )
        await _wait_for(lambda: any(isinstance(m, ChunkProgress) for m in messages))
        await page.evaluate(build_retire_script(9))
        await asyncio.sleep(0.5)

        assert await page.evaluate("window.__sent === undefined") is True
        assert not any(isinstance(m, InjectionSuccess) for m in messages)
        await page.evaluate(build_retire_script(8))
        assert await page.evaluate("window.__kallCycle") == 9

    asyncio.run(_with_page(CHAT_PAGE, body))
