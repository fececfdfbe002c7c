"""Tests for the Playwright script builder."""

from __future__ import annotations

import pytest

from sandbox_relay.playwright import PlaywrightAction, build_playwright_script


class TestBuildScript:
    def test_minimal_script(self):
        script = build_playwright_script("https://example.com")

        assert script.startswith("import { chromium } from 'playwright'")
        assert 'await page.goto("https://example.com")' in script
        assert 'await page.screenshot({ path: "/home/user/screenshot.png" })' in script
        assert script.rstrip().endswith("console.log('done')")

    def test_actions_in_order(self):
        script = build_playwright_script(
            "https://example.com/login",
            [
                PlaywrightAction(type="fill", selector="#user", value="alice"),
                PlaywrightAction(type="click", selector="button[type=submit]"),
                PlaywrightAction(type="wait", duration=500),
                PlaywrightAction(type="navigate", value="https://example.com/home"),
            ],
        )
        lines = script.splitlines()
        fill = lines.index('await page.fill("#user", "alice")')
        click = lines.index('await page.click("button[type=submit]")')
        wait = lines.index("await page.waitForTimeout(500)")
        nav = lines.index('await page.goto("https://example.com/home")')
        assert fill < click < wait < nav

    def test_explicit_screenshot_suppresses_default(self):
        script = build_playwright_script(
            "https://example.com",
            [PlaywrightAction(type="screenshot", path="/app/page.png")],
        )
        assert script.count("page.screenshot") == 1
        assert '"/app/page.png"' in script

    def test_values_cannot_break_out(self):
        script = build_playwright_script(
            "https://example.com",
            [PlaywrightAction(type="fill", selector="#q", value="\"); process.exit(1); (\"")],
        )
        assert 'await page.fill("#q", "\\"); process.exit(1); (\\"")' in script

    def test_url_required(self):
        with pytest.raises(ValueError):
            build_playwright_script("  ")

    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError):
            PlaywrightAction(type="drag")
