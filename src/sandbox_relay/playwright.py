"""Playwright script builder.

Turns a URL plus a short list of browser actions into an ES module that the
``playwright`` action can run inside a sandbox. Every selector, value and
path is embedded as a JSON string literal, so action content can't break
out of the generated JavaScript.
"""

from __future__ import annotations

import json
from typing import Literal

from pydantic import BaseModel

DEFAULT_SCREENSHOT_PATH = "/home/user/screenshot.png"


class PlaywrightAction(BaseModel):
    type: Literal["click", "fill", "navigate", "screenshot", "wait"]
    selector: str | None = None
    value: str | None = None
    path: str | None = None
    duration: int | None = None  # ms, for "wait"


def _js(value: str) -> str:
    return json.dumps(value)


def _render(action: PlaywrightAction, screenshot_path: str) -> str:
    if action.type == "click":
        return f"await page.click({_js(action.selector or '')})"
    if action.type == "fill":
        return f"await page.fill({_js(action.selector or '')}, {_js(action.value or '')})"
    if action.type == "navigate":
        return f"await page.goto({_js(action.value or '')})"
    if action.type == "screenshot":
        return f"await page.screenshot({{ path: {_js(action.path or screenshot_path)} }})"
    return f"await page.waitForTimeout({int(action.duration or 1000)})"


def build_playwright_script(
    url: str,
    actions: list[PlaywrightAction] | None = None,
    screenshot_path: str = DEFAULT_SCREENSHOT_PATH,
) -> str:
    """Render a Chromium automation script.

    A final screenshot is appended when no action takes one, so every run
    leaves at least one artifact behind.
    """
    if not url or not url.strip():
        raise ValueError("url is required")
    actions = actions or []

    lines = [
        "import { chromium } from 'playwright'",
        "",
        "const browser = await chromium.launch()",
        "const context = await browser.newContext()",
        "const page = await context.newPage()",
        "",
        f"await page.goto({_js(url)})",
    ]
    lines.extend(_render(a, screenshot_path) for a in actions)

    if not any(a.type == "screenshot" for a in actions):
        lines.append(f"await page.screenshot({{ path: {_js(screenshot_path)} }})")

    lines.extend(["", "await browser.close()", "", "console.log('done')"])
    return "\n".join(lines)
