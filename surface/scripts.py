from __future__ import annotations

import json
from dataclasses import dataclass

BRIDGE_NAME = "KallBridge"
BINDING_NAME = "__kallBridgeEmit"
CYCLE_GLOBAL = "__kallCycle"

DEFAULT_CHUNK_SIZE = 2048
DEFAULT_CHUNK_DELAY_MS = 50
DEFAULT_SETTLE_DELAY_MS = 1000
DEFAULT_HARVEST_INTERVAL_MS = 1000
DEFAULT_STABILITY_THRESHOLD = 5


@dataclass(slots=True, frozen=True)
class PageProfile:
    """Selector priority lists describing the target chat page."""

    input_selectors: tuple[str, ...] = ("textarea", '[contenteditable="true"]')
    send_selectors: tuple[str, ...] = (
        'button[aria-label*="send" i]',
        'button[data-testid*="send" i]',
        "button.send-btn",
    )
    send_icon_selector: str = "svg"
    response_selectors: tuple[str, ...] = (
        ".markdown-body",
        ".prose",
        ".message-content",
        ".qwen-ui-message",
        'div[data-message-author="assistant"]',
        'div[class*="content"]',
    )
    typing_selectors: tuple[str, ...] = (
        'button[aria-label*="Stop"]',
        ".typing-indicator",
        '[class*="typing"]',
    )
    placeholder_texts: tuple[str, ...] = ("", "...", "[]", "[\n]")
    network_error_markers: tuple[str, ...] = ("network error", "failed to fetch", "no internet")


def escape_js_string(text: str) -> str:
    """Escape ``text`` for embedding inside a double-quoted JavaScript literal."""
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def split_chunks(text: str, size: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [text[i : i + size] for i in range(0, len(text), size)]


def _js_list(items: tuple[str, ...] | list[str]) -> str:
    return json.dumps(list(items), ensure_ascii=False)


def build_bridge_script(profile: PageProfile | None = None) -> str:
    """Init script installed on every page load.

    Defines the callback object the page scripts talk to and a watchdog that
    reports a network failure shown by the page itself.
    """
    profile = profile or PageProfile()
    markers = _js_list([marker.lower() for marker in profile.network_error_markers])
    return f"""
(() => {{
  if (window.{BRIDGE_NAME}) return;
  const send = (name, args, cycle) => {{
    try {{
      window.{BINDING_NAME}(name, args, cycle === undefined ? null : cycle);
    }} catch (e) {{
      console.error('bridge send failed', e);
    }}
  }};
  const cycle = () => window.{CYCLE_GLOBAL};
  window.{BRIDGE_NAME} = {{
    onChunkProgress: (current, total) => send('onChunkProgress', [current, total], cycle()),
    onInjectionSuccess: (message) => send('onInjectionSuccess', [String(message)], cycle()),
    onResponseHarvested: (payload) => send('onResponseHarvested', [String(payload)], cycle()),
    onError: (message) => send('onError', [String(message)], cycle()),
  }};
  const markers = {markers};
  if (!markers.length) return;
  const watch = () => {{
    if (!document.body) return;
    let fired = false;
    const observer = new MutationObserver(() => {{
      if (fired) return;
      const text = (document.body.innerText || '').toLowerCase();
      if (markers.some((marker) => text.includes(marker))) {{
        fired = true;
        observer.disconnect();
        send('onError', ['DOM_ERROR: page reports network failure'], null);
      }}
    }});
    observer.observe(document.body, {{ childList: true, subtree: true, characterData: true }});
  }};
  if (document.readyState === 'loading') {{
    document.addEventListener('DOMContentLoaded', watch, {{ once: true }});
  }} else {{
    watch();
  }}
}})();
"""


def build_dispatch_script(
    prompt: str,
    *,
    cycle: int,
    profile: PageProfile | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_delay_ms: int = DEFAULT_CHUNK_DELAY_MS,
    settle_delay_ms: int = DEFAULT_SETTLE_DELAY_MS,
) -> str:
    """Script that types ``prompt`` into the page in chunks and submits it."""
    profile = profile or PageProfile()
    chunks = ", ".join(f'"{escape_js_string(chunk)}"' for chunk in split_chunks(prompt, chunk_size))
    return f"""
(() => {{
  const CYCLE = {int(cycle)};
  window.{CYCLE_GLOBAL} = CYCLE;
  const bridge = window.{BRIDGE_NAME};
  const live = () => window.{CYCLE_GLOBAL} === CYCLE;
  const describe = (e) => (e && e.message ? e.message : String(e));
  try {{
    const inputSelectors = {_js_list(profile.input_selectors)};
    const sendSelectors = {_js_list(profile.send_selectors)};
    const iconSelector = {json.dumps(profile.send_icon_selector)};
    let inputEl = null;
    for (const selector of inputSelectors) {{
      inputEl = document.querySelector(selector);
      if (inputEl) break;
    }}
    if (!inputEl) {{
      bridge.onError('DOM_ERROR: Input box not found');
      return;
    }}
    const chunks = [{chunks}];
    const state = {{ cycle: CYCLE, chunks, index: 0 }};
    window.__kallDispatcher = state;

    const isField = inputEl instanceof HTMLTextAreaElement || inputEl instanceof HTMLInputElement;
    const proto = inputEl instanceof HTMLTextAreaElement
      ? HTMLTextAreaElement.prototype
      : HTMLInputElement.prototype;
    const setValue = (value) => {{
      Object.getOwnPropertyDescriptor(proto, 'value').set.call(inputEl, value);
    }};
    const append = (text) => {{
      if (isField) {{
        setValue(inputEl.value + text);
      }} else {{
        inputEl.append(document.createTextNode(text));
      }}
    }};

    inputEl.focus();
    if (isField) {{
      setValue('');
    }} else {{
      inputEl.textContent = '';
    }}

    const findSendButton = () => {{
      for (const selector of sendSelectors) {{
        const candidate = document.querySelector(selector);
        if (candidate && !candidate.disabled) return candidate;
      }}
      const withIcon = Array.from(document.querySelectorAll('button'))
        .filter((button) => !button.disabled && button.querySelector(iconSelector));
      return withIcon.length ? withIcon[withIcon.length - 1] : null;
    }};

    const submit = () => {{
      if (!live()) return;
      try {{
        const sendButton = findSendButton();
        if (!sendButton) {{
          bridge.onError('DOM_ERROR: Send button not found');
          return;
        }}
        sendButton.click();
        bridge.onInjectionSuccess('SUCCESS: ' + chunks.length + ' chunk(s) injected and submitted');
      }} catch (e) {{
        bridge.onError('EXECUTION_ERROR: ' + describe(e));
      }}
    }};

    const step = () => {{
      if (!live()) return;
      try {{
        if (state.index >= chunks.length) {{
          inputEl.dispatchEvent(new Event('change', {{ bubbles: true }}));
          setTimeout(submit, {int(settle_delay_ms)});
          return;
        }}
        append(chunks[state.index]);
        inputEl.dispatchEvent(new Event('input', {{ bubbles: true }}));
        state.index += 1;
        bridge.onChunkProgress(state.index, chunks.length);
        setTimeout(step, {int(chunk_delay_ms)});
      }} catch (e) {{
        bridge.onError('EXECUTION_ERROR: ' + describe(e));
      }}
    }};
    step();
  }} catch (e) {{
    bridge.onError('EXECUTION_ERROR: ' + describe(e));
  }}
}})();
"""


def build_harvest_script(
    *,
    cycle: int,
    profile: PageProfile | None = None,
    interval_ms: int = DEFAULT_HARVEST_INTERVAL_MS,
    stability_threshold: int = DEFAULT_STABILITY_THRESHOLD,
) -> str:
    """Script that waits for the latest reply to stop changing and reports its text."""
    profile = profile or PageProfile()
    return f"""
(() => {{
  const CYCLE = {int(cycle)};
  window.{CYCLE_GLOBAL} = CYCLE;
  const bridge = window.{BRIDGE_NAME};
  const responseSelectors = {_js_list(profile.response_selectors)};
  const typingSelectors = {_js_list(profile.typing_selectors)};
  const placeholders = {_js_list(profile.placeholder_texts)};
  const THRESHOLD = {int(stability_threshold)};
  if (window.__kallHarvester) window.__kallHarvester.stop();

  const latest = () => {{
    for (const selector of responseSelectors) {{
      const nodes = document.querySelectorAll(selector);
      if (nodes.length) {{
        const node = nodes[nodes.length - 1];
        return {{ count: nodes.length, text: (node.innerText || node.textContent || '').trim() }};
      }}
    }}
    return {{ count: 0, text: '' }};
  }};
  const isTyping = () => typingSelectors.some((selector) => document.querySelector(selector) !== null);

  const baseline = latest();
  const state = {{ lastSeen: '', stable: 0, typing: false, fresh: baseline.count === 0, done: false, timer: null }};
  const stop = () => {{
    state.done = true;
    if (state.timer !== null) {{
      clearInterval(state.timer);
      state.timer = null;
    }}
  }};

  const tick = () => {{
    if (state.done) return;
    if (window.{CYCLE_GLOBAL} !== CYCLE) {{
      stop();
      return;
    }}
    try {{
      const current = latest();
      if (current.count === 0) return;
      if (!state.fresh) {{
        if (current.count === baseline.count && current.text === baseline.text) return;
        state.fresh = true;
      }}
      const text = current.text;
      if (placeholders.includes(text)) return;
      state.typing = isTyping();
      if (state.typing) {{
        state.stable = 0;
        state.lastSeen = text;
        return;
      }}
      if (text === state.lastSeen) {{
        state.stable += 1;
      }} else {{
        state.stable = 0;
        state.lastSeen = text;
      }}
      if (state.stable >= THRESHOLD) {{
        stop();
        bridge.onResponseHarvested(text);
      }}
    }} catch (e) {{
      stop();
      bridge.onError('HARVEST_ERROR: ' + (e && e.message ? e.message : String(e)));
    }}
  }};

  window.__kallHarvester = {{ cycle: CYCLE, state, tick, stop }};
  state.timer = setInterval(tick, {int(interval_ms)});
}})();
"""


def build_retire_script(cycle: int) -> str:
    """Script that moves the page token forward to ``cycle`` so running loops stop."""
    return f"if (!(window.{CYCLE_GLOBAL} > {int(cycle)})) window.{CYCLE_GLOBAL} = {int(cycle)};"
