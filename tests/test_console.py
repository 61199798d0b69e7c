from __future__ import annotations

import pytest

from envharness.console import Console, resolve_color_support


def make(use_icons: bool, use_color: bool = False):
    lines = []
    return Console("[Server]", use_color=use_color, use_icons=use_icons, print_fn=lines.append), lines


def test_icons_and_text_markers():
    console, lines = make(use_icons=True)
    console.success("ready")
    console.error("boom")
    console.info("plain")
    assert lines == ["[Server] ✓ ready", "[Server] ✗ boom", "[Server] plain"]

    console, lines = make(use_icons=False)
    console.warn("careful")
    console.detail("more")
    assert lines == ["[Server] [WARN] careful", "[Server] -> more"]


def test_color_codes_wrap_message():
    console, lines = make(use_icons=False, use_color=True)
    console.error("boom")
    assert lines[0].startswith("[Server] \033[")
    assert lines[0].endswith("\033[0m")


def test_child_shares_output():
    console, lines = make(use_icons=False)
    console.child("[Game]").info("hello")
    assert lines == ["[Game] hello"]


def test_phase_box():
    console, lines = make(use_icons=False)
    console.phase("Test", "NavigationTests.CanConnect")
    assert "│ [Test] NavigationTests.CanConnect" in lines[2]
    assert lines[1].startswith("╭") and lines[3].startswith("╰")
    assert len(lines[1]) == len(lines[2]) == len(lines[3])


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("HARNESS_COLOR", "NO_COLOR", "WT_SESSION", "CI", "TERM"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class _Stream:
    def __init__(self, tty: bool) -> None:
        self.tty = tty

    def isatty(self) -> bool:
        return self.tty


def test_color_support_explicit_override(clean_env):
    clean_env.setenv("HARNESS_COLOR", "false")
    clean_env.setenv("CI", "1")
    assert resolve_color_support(_Stream(True)) is False
    clean_env.setenv("HARNESS_COLOR", "true")
    assert resolve_color_support(_Stream(False)) is True


def test_color_support_no_color(clean_env):
    clean_env.setenv("NO_COLOR", "1")
    clean_env.setenv("TERM", "xterm")
    assert resolve_color_support(_Stream(True)) is False


def test_color_support_falls_back_to_tty(clean_env):
    assert resolve_color_support(_Stream(True)) is True
    assert resolve_color_support(_Stream(False)) is False
    clean_env.setenv("TERM", "dumb")
    assert resolve_color_support(_Stream(False)) is False
    clean_env.setenv("TERM", "xterm-256color")
    assert resolve_color_support(_Stream(False)) is True
