"""Shared fixtures: isolated state and stand-in browser/pager programs.

The stand-ins are small scripts run by the current interpreter so the
pipeline is exercised with real child processes.
"""

import shlex
import sys

import pytest

import dweb


FAKE_BROWSER = """\
import sys
print(" ".join(sys.argv[1:]))
print("see [1]one and [2]two")
print()
print("References:")
print()
print("[1] http://one.example/")
print("[2] http://two.example/")
"""

CAPTURING_PAGER = """\
import shutil, sys
with open(sys.argv[1], "wb") as out:
    shutil.copyfileobj(sys.stdin.buffer, out)
"""


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.setattr(dweb, "BOOKMARK_FILE", str(tmp_path / "bookmarks"))
    monkeypatch.setattr(dweb, "CONFIG_FILE", str(tmp_path / "config.json"))
    monkeypatch.setattr(dweb, "_cfg", dict(dweb.DEFAULT_CONFIG))
    monkeypatch.setattr(dweb, "BROWSER", "w3m")
    monkeypatch.setattr(dweb, "BROWSER_ARGS", ["-dump", "-o", "display_link_num=1"])
    monkeypatch.setattr(dweb, "PAGER", "more")
    monkeypatch.setattr(dweb, "SAFE_MODE", True)
    monkeypatch.setattr(dweb, "chatty", False)
    dweb.apply_color_theme("plain")
    dweb.clear_links()
    del dweb.history[:]
    yield
    dweb.clear_links()
    del dweb.history[:]


def python_command(tmp_path, name, source, *args):
    script = tmp_path / name
    script.write_text(source)
    return shlex.join([sys.executable, str(script), *map(str, args)])


@pytest.fixture
def fake_browser(tmp_path, monkeypatch):
    monkeypatch.setattr(dweb, "BROWSER", python_command(tmp_path, "browser.py", FAKE_BROWSER))
    return dweb.BROWSER


@pytest.fixture
def pager_output(tmp_path, monkeypatch):
    out = tmp_path / "paged.txt"
    monkeypatch.setattr(dweb, "PAGER", python_command(tmp_path, "pager.py", CAPTURING_PAGER, out))
    return out
