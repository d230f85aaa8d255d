"""Page-side scripts injected into the chat UI."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from chatbridge.constants import (
    BINDING_NAME,
    GENERIC_BLOCK_SELECTORS,
    GENERIC_MAX_CANDIDATES,
    GENERIC_MIN_LENGTH,
    INPUT_SELECTORS,
    LOGIN_SELECTORS,
    NEW_CHAT_SELECTORS,
    RESPONSE_CONTAINER_SELECTORS,
    SEND_SELECTORS,
    STOP_SELECTORS,
    TITLE_MARK,
)


@dataclass(frozen=True)
class PageSelectors:
    inputs: tuple[str, ...] = INPUT_SELECTORS
    send: tuple[str, ...] = SEND_SELECTORS
    stop: tuple[str, ...] = STOP_SELECTORS
    new_chat: tuple[str, ...] = NEW_CHAT_SELECTORS
    login: tuple[str, ...] = LOGIN_SELECTORS
    containers: tuple[str, ...] = RESPONSE_CONTAINER_SELECTORS
    generic: str = GENERIC_BLOCK_SELECTORS
    generic_min_length: int = GENERIC_MIN_LENGTH
    generic_max: int = GENERIC_MAX_CANDIDATES

    @classmethod
    def from_overrides(cls, overrides: dict[str, Any]) -> "PageSelectors":
        raw = overrides.get("selectors", {})
        if not isinstance(raw, dict):
            raise SystemExit("'selectors' must be a JSON object")
        kwargs: dict[str, Any] = {}
        for key in ("inputs", "send", "stop", "new_chat", "login", "containers"):
            if key in raw:
                value = raw[key]
                if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
                    raise SystemExit(f"'selectors.{key}' must be a list of strings")
                kwargs[key] = tuple(value)
        if "generic" in raw:
            kwargs["generic"] = str(raw["generic"])
        for key in ("generic_min_length", "generic_max"):
            if key in raw:
                kwargs[key] = int(raw[key])
        return cls(**kwargs)

    def to_script_config(self) -> dict[str, Any]:
        return {
            "input": list(self.inputs),
            "send": list(self.send),
            "stop": list(self.stop),
            "newChat": list(self.new_chat),
            "login": list(self.login),
            "containers": list(self.containers),
            "generic": self.generic,
            "genericMinLength": self.generic_min_length,
            "genericMax": self.generic_max,
            "titleMark": TITLE_MARK,
        }


_PAGE_SCRIPT_TEMPLATE = r"""
(() => {
  if (window.__chatBridge) return;
  const CFG = __CFG_JSON__;
  const INPUT_CONTROLS = 'input, textarea, [contenteditable="true"]';

  const post = (data) => {
    try {
      const fn = window['__BINDING__'];
      if (typeof fn === 'function') fn(data);
    } catch (e) {}
  };
  const sleep = (ms) => new Promise((r) => setTimeout(r, ms));
  const first = (selectors) => {
    for (const sel of selectors) {
      const el = document.querySelector(sel);
      if (el) return el;
    }
    return null;
  };
  const visible = (el) => !!el && !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length);
  const textOf = (el) => String((el && (el.innerText || el.textContent)) || '').trim();
  const errText = (e) => String((e && e.message) || e);

  const bridge = {
    checkLogin() {
      const onAccounts = location.hostname.startsWith('accounts.');
      const loggedIn = !onAccounts && !first(CFG.login);
      post({ type: 'LOGIN_STATUS', loggedIn });
      return loggedIn;
    },

    inputReady() {
      return !!first(CFG.input);
    },

    async newChat() {
      const btn = first(CFG.newChat);
      if (!btn) return false;
      btn.click();
      await sleep(400);
      return true;
    },

    async switchModel(labels) {
      const buttons = Array.from(document.querySelectorAll('button, [role="button"]'));
      const dropdown = buttons.find((btn) => {
        const text = textOf(btn);
        return /Gemini|Flash|Pro/.test(text) && text.length < 30;
      });
      if (!dropdown) return false;
      dropdown.click();
      await sleep(800);
      const options = Array.from(document.querySelectorAll('[role="menuitem"], [role="option"], mat-option'));
      const target = options.find((opt) =>
        labels.some((label) => textOf(opt).toLowerCase().includes(label.toLowerCase()))
      );
      if (!target) {
        document.dispatchEvent(new KeyboardEvent('keydown', { key: 'Escape', bubbles: true }));
        return false;
      }
      target.click();
      await sleep(500);
      const confirm = Array.from(document.querySelectorAll('button')).find((b) => {
        const t = textOf(b).toLowerCase();
        return t === 'switch' || t === 'ok';
      });
      if (confirm) confirm.click();
      await sleep(600);
      return true;
    },

    async focusInput() {
      let box = null;
      for (let i = 0; i < 50 && !box; i++) {
        box = first(CFG.input);
        if (!box) await sleep(100);
      }
      if (!box) throw new Error('Input box not found');
      box.focus();
      document.execCommand('selectAll', false, null);
      document.execCommand('delete', false, null);
      return true;
    },

    inputLength() {
      const box = first(CFG.input);
      return box ? textOf(box).length : -1;
    },

    async submit() {
      await sleep(200);
      const btn = first(CFG.send);
      if (btn && !btn.disabled) {
        btn.click();
        return 'button';
      }
      const box = first(CFG.input);
      if (!box) throw new Error('Input box not found');
      box.dispatchEvent(new KeyboardEvent('keydown', {
        key: 'Enter', code: 'Enter', keyCode: 13, bubbles: true,
      }));
      return 'enter';
    },

    collect() {
      const out = [];
      CFG.containers.forEach((sel, rank) => {
        const all = Array.from(document.querySelectorAll(sel));
        const keep = all.slice(-10);
        const base = all.length - keep.length;
        keep.forEach((el, i) => {
          out.push({
            source: 'container', rank, order: base + i,
            text: textOf(el), hasInput: !!el.querySelector(INPUT_CONTROLS),
          });
        });
      });
      const blocks = Array.from(document.querySelectorAll(CFG.generic)).filter((el) =>
        visible(el) && !el.closest('nav, header, footer, aside') &&
        textOf(el).length >= CFG.genericMinLength
      ).slice(-CFG.genericMax);
      blocks.forEach((el, i) => {
        out.push({
          source: 'generic', rank: 0, order: i,
          text: textOf(el), hasInput: !!el.querySelector(INPUT_CONTROLS),
        });
      });
      return out;
    },

    watch(id, opts) {
      if (bridge.cancelWatch) bridge.cancelWatch();
      const startTs = Date.now();
      const state = { started: false, finished: false, timer: null };
      let observer = null;
      let tick = null;

      const stopWatching = () => {
        state.finished = true;
        if (observer) observer.disconnect();
        if (tick) clearInterval(tick);
        if (state.timer) clearTimeout(state.timer);
      };
      const finish = (reason) => {
        if (state.finished) return;
        stopWatching();
        let candidates = [];
        try {
          candidates = bridge.collect();
        } catch (e) {
          post({ type: 'GEMINI_RESPONSE', id, error: 'script', detail: errText(e) });
          return;
        }
        post({ type: 'GEMINI_RESPONSE', id, started: state.started, reason, candidates });
      };
      const check = () => {
        if (state.finished) return;
        try {
          const stop = first(CFG.stop);
          if (stop && visible(stop)) {
            if (!state.started) {
              state.started = true;
              post({ type: 'STATUS', status: 'generating', id });
            }
            if (state.timer) {
              clearTimeout(state.timer);
              state.timer = null;
            }
          } else if (state.started) {
            if (!state.timer) state.timer = setTimeout(() => finish('debounce'), opts.debounceMs);
          } else if (Date.now() - startTs > opts.softMs) {
            stopWatching();
            post({ type: 'GEMINI_RESPONSE', id, started: false, reason: 'soft_timeout', candidates: [] });
            return;
          }
          if (Date.now() - startTs > opts.hardMs) finish('hard_timeout');
        } catch (e) {
          stopWatching();
          post({ type: 'GEMINI_RESPONSE', id, error: 'script', detail: errText(e) });
        }
      };

      observer = new MutationObserver(check);
      observer.observe(document.body, { childList: true, subtree: true, characterData: true, attributes: true });
      tick = setInterval(check, 250);
      bridge.cancelWatch = stopWatching;
      check();
      return true;
    },
  };

  window.__chatBridge = bridge;

  const keepTitle = () => {
    if (CFG.titleMark && !document.title.endsWith(CFG.titleMark)) {
      document.title = (document.title || 'chat') + CFG.titleMark;
    }
  };
  const announce = () => {
    keepTitle();
    const head = document.querySelector('head');
    if (head) new MutationObserver(keepTitle).observe(head, { subtree: true, childList: true, characterData: true });
    bridge.checkLogin();
    post({ type: 'STATUS', status: 'ready' });
  };
  if (document.readyState === 'complete') {
    setTimeout(announce, 500);
  } else {
    window.addEventListener('load', () => setTimeout(announce, 500));
  }
})();
"""


def build_page_script(selectors: PageSelectors) -> str:
    script = _PAGE_SCRIPT_TEMPLATE.replace(
        "__CFG_JSON__", json.dumps(selectors.to_script_config(), ensure_ascii=False)
    )
    return script.replace("__BINDING__", BINDING_NAME)


CHECK_LOGIN_JS = "() => window.__chatBridge ? window.__chatBridge.checkLogin() : null"
INPUT_READY_JS = "() => !!(window.__chatBridge && window.__chatBridge.inputReady())"
NEW_CHAT_JS = "() => window.__chatBridge.newChat()"
SWITCH_MODEL_JS = "(labels) => window.__chatBridge.switchModel(labels)"
FOCUS_INPUT_JS = "() => window.__chatBridge.focusInput()"
INPUT_LENGTH_JS = "() => window.__chatBridge.inputLength()"
SUBMIT_JS = "() => window.__chatBridge.submit()"
WATCH_JS = "([id, opts]) => window.__chatBridge.watch(id, opts)"
COLLECT_JS = "() => window.__chatBridge.collect()"
CANCEL_WATCH_JS = "() => window.__chatBridge && window.__chatBridge.cancelWatch && window.__chatBridge.cancelWatch()"
