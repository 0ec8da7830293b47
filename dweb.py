#!/usr/bin/env python3
import os
import re
import sys
import json
import shlex
import shutil
import subprocess
import requests
from bs4 import BeautifulSoup
from urllib.parse import (
    urljoin, urlparse, parse_qs, unquote,
    urlunparse
)
from PIL import Image
from io import BytesIO


PROG = "dweb"

# ========= BASIC CONFIG =========
LINK_SLOTS = 512
BUILTIN = "builtin"
STRIP_DDG_TRACKING = True

BOOKMARK_FILE = os.path.expanduser("~/.dweb_bookmarks")

USAGE = """dweb usage:
 <url>      go to URL
 <number>   follow link
 i<number>  view linked image
 b          back
 r          reload
 m          bookmark page
 bm         bookmarks
 s          settings
 q          quit
"""

# ========= PERSISTENT CONFIG =========
CONFIG_FILE = os.path.expanduser("~/.dweb_config.json")

DEFAULT_CONFIG = {
    "BROWSER": "w3m",
    "BROWSER_ARGS": ["-dump", "-o", "display_link_num=1"],
    "PAGER": "more",
    "COLOR_THEME": "default",
    "SAFE_MODE": True,
}


def load_config():
    if not os.path.exists(CONFIG_FILE):
        return dict(DEFAULT_CONFIG)

    try:
        with open(CONFIG_FILE, "r") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return dict(DEFAULT_CONFIG)

    cfg = dict(DEFAULT_CONFIG)
    if not isinstance(data, dict):
        return cfg
    for k in DEFAULT_CONFIG:
        if k in data:
            cfg[k] = data[k]
    return cfg

def save_config(key, value):
    """Persist one setting, keeping the rest of the file as loaded."""
    _cfg[key] = value

    try:
        with open(CONFIG_FILE, "w") as f:
            json.dump(_cfg, f, indent=2)
    except OSError as e:
        error(f"cannot save config: {e}")

# load config into globals; $BROWSER and $PAGER win over the file but
# are never written back to it
_cfg = load_config()
BROWSER = os.environ.get("BROWSER") or _cfg["BROWSER"]
BROWSER_ARGS = list(_cfg["BROWSER_ARGS"])
PAGER = os.environ.get("PAGER") or _cfg["PAGER"]
COLOR_THEME = _cfg.get("COLOR_THEME", "default")
SAFE_MODE = bool(_cfg.get("SAFE_MODE", True))


# ========= COLORS =========
def apply_color_theme(theme):
    global C_RESET, C_TITLE, C_LINK, C_CMD, C_ERR, C_DIM

    if theme == "plain":
        C_RESET = C_TITLE = C_LINK = C_CMD = C_ERR = C_DIM = ""
    elif theme == "night":
        C_RESET = "\033[0m"
        C_TITLE = "\033[38;5;250m"
        C_LINK  = "\033[38;5;180m"
        C_CMD   = "\033[38;5;65m"
        C_ERR   = "\033[38;5;131m"
        C_DIM   = "\033[38;5;240m"
    else:
        C_RESET = "\033[0m"
        C_TITLE = "\033[96m"
        C_LINK  = "\033[93m"
        C_CMD   = "\033[92m"
        C_ERR   = "\033[91m"
        C_DIM   = "\033[90m"


apply_color_theme("plain")

# set in main() when stdin is a terminal
chatty = False


def error(msg):
    print(f"{C_ERR}{PROG}: {msg}{C_RESET}", file=sys.stderr, flush=True)

def read_line(prompt="> "):
    """Read one stripped line from stdin, or None at end of input."""
    if chatty:
        print(f"{C_CMD}{prompt}{C_RESET}", end="", flush=True)
    line = sys.stdin.readline()
    if not line:
        return None
    return line.strip()


# ========= HTTP SESSION =========
session = requests.Session()
session.headers.update({"User-Agent": "Mozilla/5.0"})

# ========= LINK TABLE =========
# links[N] holds the URL printed as "[N] URL" on the last rendered page
links = [None] * LINK_SLOTS

LINK_RE = re.compile(r"\[\s*([+-]?[0-9]+)\] (.*\S.*)")
INDEX_RE = re.compile(r"[+-]?[0-9]+")
IMAGE_RE = re.compile(r"i\s*([+-]?[0-9]+)")
DIGITS_RE = re.compile(r"[0-9]+")


def extract_link(line):
    """Store the URL of a "[N] URL" reference line in links[N].

    Anything else, and indices outside the table, are ignored. A later
    reference with the same number replaces the earlier one.
    """
    m = LINK_RE.match(line)
    if not m:
        return
    idx = int(m.group(1))
    if not 0 <= idx < len(links):
        return
    links[idx] = m.group(2)

def clear_links():
    for i in range(len(links)):
        links[i] = None

def parse_index(text):
    if INDEX_RE.fullmatch(text):
        return int(text)
    return None

def lookup_link(idx):
    """Return the URL in slot idx, reporting bad indices as errors."""
    if not 0 <= idx < len(links):
        error("index out of range")
        return None
    if links[idx] is None:
        error("no such link")
        return None
    return links[idx]

# ========= CLEANING + WRAPPING =========
def clean_paragraph(text):
    text = text.replace("\n", " ")
    text = re.sub(r"\s+", " ", text)
    return text.strip()

def wrap(text, width):
    words = text.split()
    lines = []
    current = ""

    for w in words:
        if len(current) + len(w) + (1 if current else 0) > width:
            if current:
                lines.append(current)
            current = w
        else:
            current = w if current == "" else current + " " + w

    if current:
        lines.append(current)

    return lines

# ========= URL HELPERS =========

def normalize_url(t):
    t = t.strip()
    if "://" in t:
        return t
    if "." in t:
        return "https://" + t
    return None

def strip_duckduckgo_tracking(url):
    if not STRIP_DDG_TRACKING:
        return url
    p = urlparse(url)
    if "duckduckgo.com" not in p.netloc:
        return url
    return urlunparse(p._replace(query=""))

def unwrap_duckduckgo_redirect(url):
    if url.startswith("//duckduckgo.com/l/?"):
        url = "https:" + url
    p = urlparse(url)
    if "duckduckgo.com" in p.netloc and p.path.startswith("/l"):
        qs = parse_qs(p.query)
        if "uddg" in qs:
            return unquote(qs["uddg"][0])
    return url

def unwrap_generic_redirect(url):
    return strip_duckduckgo_tracking(unwrap_duckduckgo_redirect(url))

def is_ad_or_tracker(url):
    if not SAFE_MODE:
        return False
    host = urlparse(url).netloc.lower()
    bad = ["doubleclick", "adservice", "adsystem", "tracking",
           "analytics", "pixel", "googlesyndication"]
    return any(b in host for b in bad)

# ========= BUILT-IN RENDERER =========
BLOCK_TAGS = ["title", "p", "div", "li", "tr", "pre", "blockquote",
              "article", "section", "h1", "h2", "h3", "h4", "h5", "h6"]


def fetch(url):
    r = session.get(url, timeout=15)
    r.raise_for_status()
    return r.text

def render_dump(html, base, width=None):
    """Dump html as text lines followed by a numbered reference list.

    Each kept link is tagged "[N]" in the text and listed once as
    "[N] URL" under "References:", numbered from 1.
    """
    if width is None:
        width = max(20, shutil.get_terminal_size().columns)
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    refs = []
    for a in soup.find_all("a", href=True):
        href = unwrap_generic_redirect(urljoin(base, a["href"]))
        if is_ad_or_tracker(href):
            continue
        refs.append(href)
        a.insert(0, f"[{len(refs)}]")

    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(BLOCK_TAGS):
        tag.insert_before("\n")
        tag.insert_after("\n")

    lines = []
    for raw in soup.get_text().splitlines():
        clean = clean_paragraph(raw)
        if not clean:
            if lines and lines[-1]:
                lines.append("")
            continue
        lines.extend(wrap(clean, width))

    while lines and not lines[-1]:
        lines.pop()

    if refs:
        lines.extend(["", "References:", ""])
        for i, href in enumerate(refs, 1):
            lines.append(f"[{i}] {href}")

    return lines

def dump_page(url):
    url = normalize_url(url) or url
    return render_dump(fetch(url), url)

# ========= PIPELINE =========
def browser_command(url):
    return shlex.split(BROWSER) + list(BROWSER_ARGS) + [url]

def pager_command():
    return shlex.split(PAGER) or [DEFAULT_CONFIG["PAGER"]]

def open_browser(url):
    """Start the dump browser on url; its stdout is a pipe to us."""
    return subprocess.Popen(browser_command(url), stdout=subprocess.PIPE)

def open_pager():
    """Start the pager reading from a pipe. Other pipes are not inherited."""
    return subprocess.Popen(pager_command(), stdin=subprocess.PIPE)

def pump(source, sink):
    """Copy byte lines from source to sink, scraping links on the way.

    Returns the first non-blank line. Once the sink goes away the rest of
    the source is still scanned for links.
    """
    title = ""
    for raw in source:
        line = raw.decode("utf-8", "replace")
        extract_link(line)
        if not title and line.strip():
            title = line.strip()
        if sink is None:
            continue
        try:
            sink.write(raw)
        except BrokenPipeError:
            sink = None
    return title

def close_quietly(stream):
    try:
        stream.close()
    except BrokenPipeError:
        pass

def browse(url):
    """Show url through the browser and the pager, refilling the link table.

    Returns the page title, or None when the page could not be loaded; in
    that case the previous links are left alone.
    """
    browser = None
    if BROWSER == BUILTIN:
        try:
            source = [line.encode("utf-8") + b"\n" for line in dump_page(url)]
        except requests.RequestException as e:
            error(e)
            return None
    else:
        try:
            browser = open_browser(url)
        except (OSError, ValueError) as e:
            error(e)
            return None
        source = browser.stdout

    try:
        pager = open_pager()
    except (OSError, ValueError) as e:
        error(e)
        if browser is not None:
            browser.stdout.close()
            browser.wait()
        return None

    clear_links()
    title = ""
    try:
        title = pump(source, pager.stdin)
    except OSError as e:
        error(e)
    except KeyboardInterrupt:
        print()
    finally:
        if browser is not None:
            browser.stdout.close()
        close_quietly(pager.stdin)
        if browser is not None:
            browser.wait()
        pager.wait()

    return title

# ========= IMAGES =========
def render_image_halfblocks(img, max_width):
    img = img.convert("RGB")
    new_width = max(1, max_width)
    new_height = max(1, int((img.height / img.width) * new_width * 0.5))
    img = img.resize((new_width, new_height * 2))

    pixels = img.load()
    lines = []

    for y in range(0, img.height, 2):
        line = ""
        for x in range(img.width):
            top = pixels[x, y]
            bottom = pixels[x, y+1] if y+1 < img.height else top
            line += (
                f"\033[38;2;{top[0]};{top[1]};{top[2]}m"
                f"\033[48;2;{bottom[0]};{bottom[1]};{bottom[2]}m▀"
            )
        line += "\033[0m"
        lines.append(line)

    return lines

def show_image(url):
    try:
        r = session.get(url, timeout=15)
        r.raise_for_status()
        img = Image.open(BytesIO(r.content))
        img.load()
    except (requests.RequestException, OSError) as e:
        error(f"image: {e}")
        return

    cols = shutil.get_terminal_size().columns
    max_width = min(img.width, max(20, cols - 2))
    for line in render_image_halfblocks(img, max_width):
        print(line)

# ========= BOOKMARKS =========
def load_bookmarks():
    if not os.path.exists(BOOKMARK_FILE):
        return []

    bookmarks = []
    with open(BOOKMARK_FILE) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue

            parts = line.split("|||")

            if len(parts) == 2:
                title, url = parts
                if url:
                    bookmarks.append((title if title else None, url))
            elif len(parts) == 1:
                # bare url
                bookmarks.append((None, parts[0]))

    return bookmarks

def write_bookmarks(bookmarks):
    with open(BOOKMARK_FILE, "w") as f:
        for title, url in bookmarks:
            safe_title = title.replace("|||", " ") if title else ""
            f.write(f"{safe_title}|||{url}\n")

def save_bookmark(url, title=None):
    bookmarks = load_bookmarks()

    for i, (t, u) in enumerate(bookmarks):
        if u == url:
            bookmarks[i] = (title if title else t, url)
            break
    else:
        bookmarks.append((title, url))

    write_bookmarks(bookmarks)

def delete_bookmark(i):
    b = load_bookmarks()
    if 0 <= i < len(b):
        del b[i]
        write_bookmarks(b)

def shorten_middle(text, max_len):
    if len(text) <= max_len:
        return text
    if max_len < 10:
        return text[:max_len]
    keep = (max_len - 3) // 2
    return text[:keep] + "..." + text[-keep:]

def bookmark_manager():
    """List bookmarks until one is picked; returns its URL or None."""
    while True:
        try:
            b = load_bookmarks()
        except OSError as e:
            error(e)
            return None
        print(f"{C_TITLE}=== BOOKMARKS ==={C_RESET}\n")

        if not b:
            print("No bookmarks.")
            return None

        cols = shutil.get_terminal_size().columns
        for i, (title, url) in enumerate(b, 1):
            label = title if title else url
            print(f"{C_LINK}{i}.{C_RESET} {label}")
            print(f"   {C_DIM}{shorten_middle(url, max(20, cols - 4))}{C_RESET}")

        print(f"\n{C_CMD}number=open  d#=delete  q=back{C_RESET}")

        c = read_line()
        if c is None or c == "q":
            return None
        if c.startswith("d") and DIGITS_RE.fullmatch(c[1:]):
            try:
                delete_bookmark(int(c[1:]) - 1)
            except OSError as e:
                error(e)
            continue
        if DIGITS_RE.fullmatch(c):
            i = int(c) - 1
            if 0 <= i < len(b):
                return b[i][1]
        error("invalid choice")

# ========= SETTINGS MENU =========
def settings_menu():
    global BROWSER, PAGER, COLOR_THEME, SAFE_MODE

    while True:
        print(f"{C_TITLE}=== SETTINGS ==={C_RESET}\n")
        print(f"1. Browser: {BROWSER} {' '.join(BROWSER_ARGS)}")
        print(f"2. Pager: {PAGER}")
        print(f"3. Color theme: {COLOR_THEME}")
        print(f"4. Safe mode: {'on' if SAFE_MODE else 'off'}")
        print("\nq = back\n")

        c = read_line()
        if c is None or c == "q":
            return

        if c == "1":
            val = read_line(f"Browser command ({BUILTIN} = built-in): ")
            if val:
                BROWSER = val
                save_config("BROWSER", BROWSER)
            continue

        if c == "2":
            val = read_line("Pager command: ")
            if val:
                PAGER = val
                save_config("PAGER", PAGER)
            continue

        if c == "3":
            print("1. default (bright)")
            print("2. night (dim grey, dark green)")
            s = read_line()
            if s in ("1", "2"):
                COLOR_THEME = "default" if s == "1" else "night"
                if chatty:
                    apply_color_theme(COLOR_THEME)
                save_config("COLOR_THEME", COLOR_THEME)
            continue

        if c == "4":
            SAFE_MODE = not SAFE_MODE
            save_config("SAFE_MODE", SAFE_MODE)
            continue

        error("invalid choice")

# ========= MAIN LOOP =========
# (url, title) of every page shown, newest last
history = []


def go(url):
    title = browse(url)
    if title is not None:
        history.append((url, title))

def go_back():
    if len(history) < 2:
        error("no previous page")
        return
    url = history[-2][0]
    title = browse(url)
    if title is not None:
        history.pop()
        history[-1] = (url, title)

def reload_page():
    if not history:
        error("no current page")
        return
    url = history[-1][0]
    title = browse(url)
    if title is not None:
        history[-1] = (url, title)

def mark_page():
    if not history:
        error("no current page")
        return
    url, title = history[-1]
    try:
        save_bookmark(url, title or None)
    except OSError as e:
        error(e)
        return
    if chatty:
        print(f"{C_DIM}Saved {url}{C_RESET}")

def handle(line):
    """Run one command line. Returns False when the shell should exit."""
    if line == "q":
        return False

    if line == "b":
        go_back()
        return True
    if line == "r":
        reload_page()
        return True
    if line == "m":
        mark_page()
        return True
    if line == "bm":
        url = bookmark_manager()
        if url:
            go(url)
        return True
    if line == "s":
        settings_menu()
        return True

    m = IMAGE_RE.fullmatch(line)
    if m:
        url = lookup_link(int(m.group(1)))
        if url:
            show_image(url)
        return True

    idx = parse_index(line)
    if idx is not None:
        url = lookup_link(idx)
        if url:
            if chatty:
                print(f"{C_DIM}({url}){C_RESET}")
            go(url)
        return True

    go(line)
    return True

def main():
    global chatty

    chatty = sys.stdin.isatty()
    apply_color_theme(COLOR_THEME if chatty else "plain")
    del history[:]

    if chatty:
        print(f"{C_TITLE}{USAGE}{C_RESET}")

    while True:
        try:
            line = read_line()
        except KeyboardInterrupt:
            print()
            continue
        except OSError as e:
            error(e)
            return 1

        if line is None:
            break
        if not line:
            continue

        try:
            if not handle(line):
                break
        except KeyboardInterrupt:
            print()

        if chatty:
            print()

    return 0

if __name__ == "__main__":
    sys.exit(main())
