#!/usr/bin/env python3
import argparse
import hashlib
import json
import logging
import os
import posixpath
import re
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib import robotparser
from urllib.parse import urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_OUTPUT_DIR = "./scraped-data"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_TIMEOUT_MS = 30000
ASSET_DOWNLOAD_TIMEOUT_MS = 15000
SETTLE_MS = 2000
ROBOTS_TIMEOUT = 10.0

INDEX_FILENAME = "index.html"
METADATA_FILENAME = "metadata.json"
ASSETS_DIRNAME = "assets"
SCREENSHOTS_DIRNAME = "screenshots"

IMAGE = "image"
STYLESHEET = "stylesheet"
SCRIPT = "script"
FONT = "font"
CATEGORIES = (IMAGE, STYLESHEET, SCRIPT, FONT)

CATEGORY_DIRS = {
    IMAGE: "images",
    STYLESHEET: "stylesheets",
    SCRIPT: "scripts",
    FONT: "fonts",
}
DEFAULT_EXTENSIONS = {
    IMAGE: ".jpg",
    STYLESHEET: ".css",
    SCRIPT: ".js",
    FONT: ".woff2",
}

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
UNSAFE_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9.-]+")
EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]{1,8}")
VIEWPORT_RE = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')

BACKGROUND_IMAGES_JS = """
() => {
  const out = [];
  for (const el of document.querySelectorAll('*')) {
    try {
      const bg = window.getComputedStyle(el).backgroundImage;
      if (bg && bg !== 'none') out.push(bg);
    } catch (e) {}
  }
  return out;
}
"""

# -------------------- Errors --------------------


class SnapshotError(Exception):
    pass


class ValidationError(SnapshotError):
    pass


class PolicyBlocked(SnapshotError):
    pass


class NavigationFailure(SnapshotError):
    pass


class AssetDownloadError(SnapshotError):
    pass


class ScreenshotError(SnapshotError):
    pass


# -------------------- Settings --------------------


@dataclass(frozen=True)
class Viewport:
    width: int
    height: int

    @classmethod
    def parse(cls, value: Union[str, Mapping[str, Any], "Viewport"]) -> "Viewport":
        if isinstance(value, Viewport):
            return value
        if isinstance(value, Mapping):
            return cls(int(value["width"]), int(value["height"]))
        m = VIEWPORT_RE.match(str(value))
        if not m:
            raise ValueError(f"invalid viewport {value!r}, expected WIDTHxHEIGHT")
        return cls(int(m.group(1)), int(m.group(2)))

    def as_dict(self) -> Dict[str, int]:
        return {"width": self.width, "height": self.height}


DESKTOP_VIEWPORT = Viewport(1920, 1080)
MOBILE_VIEWPORT = Viewport(375, 667)


@dataclass
class SnapshotOptions:
    url: str
    output_dir: str = DEFAULT_OUTPUT_DIR
    user_agent: str = DEFAULT_USER_AGENT
    respect_robots: bool = True
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    download_assets: bool = True
    take_screenshots: bool = True
    desktop_viewport: Viewport = DESKTOP_VIEWPORT
    mobile_viewport: Viewport = MOBILE_VIEWPORT

    asset_timeout_ms: int = ASSET_DOWNLOAD_TIMEOUT_MS
    settle_ms: int = SETTLE_MS
    workers: int = 4

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> "SnapshotOptions":
        """Build options from the camelCase invocation payload used by callers."""
        if not params.get("url"):
            raise ValidationError("url is required")
        opts = cls(url=str(params["url"]))
        keys = {
            "outputDir": ("output_dir", str),
            "userAgent": ("user_agent", str),
            "respectRobots": ("respect_robots", as_bool),
            "timeoutMs": ("timeout_ms", int),
            "timeout": ("timeout_ms", int),
            "downloadAssets": ("download_assets", as_bool),
            "takeScreenshots": ("take_screenshots", as_bool),
            "assetTimeoutMs": ("asset_timeout_ms", int),
            "settleMs": ("settle_ms", int),
            "workers": ("workers", int),
            "desktopViewport": ("desktop_viewport", Viewport.parse),
            "mobileViewport": ("mobile_viewport", Viewport.parse),
        }
        for key, (attr, conv) in keys.items():
            value = params.get(key)
            if value is None or (isinstance(value, (str, Mapping)) and not value):
                continue
            try:
                setattr(opts, attr, conv(value))
            except (TypeError, ValueError, KeyError) as e:
                raise ValidationError(f"Invalid {key}: {value!r}") from e
        return opts


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("1", "true", "yes", "on"):
            return True
        if v in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"not a boolean: {value!r}")
    return bool(value)


# -------------------- Data model --------------------


@dataclass(frozen=True)
class AssetReference:
    url: str
    original: str
    category: str

    def as_dict(self) -> Dict[str, str]:
        return {"url": self.url, "original": self.original, "category": self.category}


@dataclass
class ExtractedAssets:
    images: List[AssetReference] = field(default_factory=list)
    stylesheets: List[AssetReference] = field(default_factory=list)
    scripts: List[AssetReference] = field(default_factory=list)
    fonts: List[AssetReference] = field(default_factory=list)

    def add(self, ref: AssetReference) -> None:
        getattr(self, CATEGORY_DIRS[ref.category]).append(ref)

    def flatten(self) -> List[AssetReference]:
        return [*self.images, *self.stylesheets, *self.scripts, *self.fonts]

    def as_dict(self) -> Dict[str, List[Dict[str, str]]]:
        return {
            name: [r.as_dict() for r in getattr(self, name)]
            for name in ("images", "stylesheets", "scripts", "fonts")
        }


@dataclass(frozen=True)
class AssetRecord:
    url: str
    local_path: str
    size: int
    category: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "path": self.local_path,
            "size": self.size,
            "category": self.category,
        }


@dataclass(frozen=True)
class AssetFailure:
    url: str
    category: str
    error: str

    def as_dict(self) -> Dict[str, str]:
        return {"url": self.url, "category": self.category, "error": self.error}


AssetOutcome = Union[AssetRecord, AssetFailure]


@dataclass
class DownloadReport:
    records: List[AssetRecord] = field(default_factory=list)
    failures: List[AssetFailure] = field(default_factory=list)
    mapping: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.records) + len(self.failures)

    @property
    def downloaded(self) -> int:
        return len(self.records)

    @property
    def failed(self) -> int:
        return len(self.failures)


@dataclass
class ScreenshotPair:
    desktop: Optional[str] = None
    mobile: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"desktop": self.desktop, "mobile": self.mobile}


@dataclass
class SnapshotStatistics:
    total_assets: int = 0
    downloaded_assets: int = 0
    failed_assets: int = 0
    processing_time_ms: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "totalAssets": self.total_assets,
            "downloadedAssets": self.downloaded_assets,
            "failedAssets": self.failed_assets,
            "processingTimeMs": self.processing_time_ms,
        }


@dataclass
class LoadedPage:
    url: str
    final_url: str
    status: int
    html: str
    title: str
    metadata: Dict[str, str]


@dataclass(frozen=True)
class PageSnapshot:
    original_url: str
    final_url: str
    title: str
    metadata: Dict[str, str]
    html: str
    assets: ExtractedAssets
    asset_mapping: Dict[str, str]
    screenshots: ScreenshotPair
    statistics: SnapshotStatistics
    captured_at: str
    downloads: Tuple[AssetRecord, ...] = ()
    failures: Tuple[AssetFailure, ...] = ()

    def metadata_record(self) -> Dict[str, Any]:
        return {
            "url": self.final_url,
            "originalUrl": self.original_url,
            "title": self.title,
            "metadata": self.metadata,
            "scrapedAt": self.captured_at,
            "assets": self.assets.as_dict(),
            "assetMapping": self.asset_mapping,
            "downloads": [r.as_dict() for r in self.downloads],
            "failures": [f.as_dict() for f in self.failures],
            "screenshots": self.screenshots.as_dict(),
            "statistics": self.statistics.as_dict(),
        }


@dataclass
class SnapshotResult:
    url: str
    output_dir: str
    success: bool = False
    accessible: bool = False
    scraping_allowed: bool = False
    html: Optional[str] = None
    title: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    assets: ExtractedAssets = field(default_factory=ExtractedAssets)
    screenshots: ScreenshotPair = field(default_factory=ScreenshotPair)
    asset_mapping: Dict[str, str] = field(default_factory=dict)
    statistics: SnapshotStatistics = field(default_factory=SnapshotStatistics)
    message: str = ""
    # per-asset outcomes, not part of as_dict()
    downloads: List[AssetRecord] = field(default_factory=list)
    failures: List[AssetFailure] = field(default_factory=list)

    def as_dict(self, include_html: bool = True) -> Dict[str, Any]:
        return {
            "success": self.success,
            "url": self.url,
            "outputDir": self.output_dir,
            "accessible": self.accessible,
            "scrapingAllowed": self.scraping_allowed,
            "scrapedData": {
                "html": self.html if include_html else None,
                "title": self.title,
                "metadata": self.metadata,
                "assets": self.assets.as_dict(),
            },
            "screenshots": self.screenshots.as_dict(),
            "assetMapping": self.asset_mapping,
            "statistics": self.statistics.as_dict(),
            "message": self.message,
        }


@dataclass
class AccessReport:
    url: str
    success: bool = False
    accessible: bool = False
    scraping_allowed: bool = False
    status_code: Optional[int] = None
    title: Optional[str] = None
    redirect_url: Optional[str] = None
    message: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "url": self.url,
            "accessible": self.accessible,
            "scrapingAllowed": self.scraping_allowed,
            "statusCode": self.status_code,
            "title": self.title,
            "redirectUrl": self.redirect_url,
            "message": self.message,
        }


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def normalize_url(u: str) -> str:
    p = urlparse(u)
    return urlunparse((p.scheme, p.netloc, p.path, p.params, p.query, ""))


def resolve_reference(literal: str, base_url: str) -> Optional[str]:
    try:
        absu = urljoin(base_url, literal.strip())
        p = urlparse(absu)
        if p.scheme not in ("http", "https") or not p.hostname:
            return None
        return normalize_url(absu)
    except ValueError:
        return None


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: Path, text: str) -> None:
    ensure_parent_dir(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


def atomic_write_json(path: Path, data: dict) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False))


def utc_timestamp() -> str:
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def build_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    s = requests.Session()
    # failed fetches are terminal, never retried
    adapter = HTTPAdapter(
        max_retries=Retry(total=0, read=False),
        pool_connections=32,
        pool_maxsize=32,
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(
        {
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
    )
    return s


def asset_headers(user_agent: str) -> Dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "*/*",
        "Accept-Encoding": "gzip, deflate",
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }


# -------------------- Output layout --------------------


def assets_dir(output_dir: Path, category: Optional[str] = None) -> Path:
    root = output_dir / ASSETS_DIRNAME
    return root / CATEGORY_DIRS[category] if category else root


def screenshots_dir(output_dir: Path) -> Path:
    return output_dir / SCREENSHOTS_DIRNAME


def create_directory_structure(output_dir: Path) -> None:
    for d in [output_dir, assets_dir(output_dir), screenshots_dir(output_dir)] + [
        assets_dir(output_dir, c) for c in CATEGORIES
    ]:
        d.mkdir(parents=True, exist_ok=True)
    logging.debug("directory structure ready: %s", output_dir)


def asset_filename(url: str, category: str, digits: int = 8) -> str:
    path = urlparse(url).path
    base, ext = posixpath.splitext(posixpath.basename(path))
    if not ext or not EXTENSION_RE.fullmatch(ext):
        if ext:
            base = base + ext
        ext = DEFAULT_EXTENSIONS.get(category, ".bin")
    base = UNSAFE_NAME_CHARS_RE.sub("_", base).strip("_")[:100] or "asset"
    digest = hashlib.md5(url.encode("utf-8")).hexdigest()[:digits]
    return f"{base}-{digest}{ext}"


def asset_relative_path(category: str, filename: str) -> str:
    return posixpath.join(ASSETS_DIRNAME, CATEGORY_DIRS[category], filename)


# -------------------- Rendering --------------------


@dataclass
class NavigationResponse:
    status: Optional[int]
    status_text: str
    url: str

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300


class PageRenderer:
    """One browser page. Not safe for concurrent use."""

    def open(self) -> None:
        raise NotImplementedError

    def navigate(
        self, url: str, timeout_ms: int, wait_until: str = "networkidle"
    ) -> NavigationResponse:
        raise NotImplementedError

    def content(self) -> str:
        raise NotImplementedError

    def title(self) -> str:
        raise NotImplementedError

    def current_url(self) -> str:
        raise NotImplementedError

    def background_images(self) -> List[str]:
        return []

    def set_viewport(self, viewport: Viewport) -> None:
        raise NotImplementedError

    def wait(self, ms: int) -> None:
        if ms > 0:
            time.sleep(ms / 1000.0)

    def screenshot(self, path: Path) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "PageRenderer":
        try:
            self.open()
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class PlaywrightRenderer(PageRenderer):
    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        viewport: Viewport = DESKTOP_VIEWPORT,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        headless: bool = True,
    ):
        self.user_agent = user_agent
        self.viewport = viewport
        self.timeout_ms = timeout_ms
        self.headless = headless
        self._pl = None
        self._browser = None
        self._context = None
        self._page = None

    def open(self) -> None:
        logging.info("launching browser")
        self._pl = sync_playwright().start()
        self._browser = self._pl.chromium.launch(
            headless=self.headless, args=BROWSER_ARGS
        )
        self._context = self._browser.new_context(
            user_agent=self.user_agent,
            viewport=self.viewport.as_dict(),
            ignore_https_errors=True,
            bypass_csp=True,
        )
        self._context.on(
            "request", lambda r: logging.debug("request: %s %s", r.method, r.url)
        )
        self._context.on(
            "response", lambda r: logging.debug("response: %s %s", r.status, r.url)
        )
        self._page = self._context.new_page()
        self._page.set_default_timeout(self.timeout_ms)
        self._page.set_default_navigation_timeout(self.timeout_ms)

    def navigate(
        self, url: str, timeout_ms: int, wait_until: str = "networkidle"
    ) -> NavigationResponse:
        try:
            resp = self._page.goto(url, wait_until=wait_until, timeout=timeout_ms)
            self._page.wait_for_load_state("domcontentloaded")
        except PlaywrightTimeoutError as e:
            raise NavigationFailure(f"navigation timed out after {timeout_ms}ms") from e
        except PlaywrightError as e:
            raise NavigationFailure(str(e)) from e
        if resp is None:
            return NavigationResponse(None, "Navigation failed", self._page.url)
        return NavigationResponse(resp.status, resp.status_text, self._page.url)

    def content(self) -> str:
        return self._page.content()

    def title(self) -> str:
        return self._page.title()

    def current_url(self) -> str:
        return self._page.url

    def background_images(self) -> List[str]:
        return list(self._page.evaluate(BACKGROUND_IMAGES_JS) or [])

    def set_viewport(self, viewport: Viewport) -> None:
        self._page.set_viewport_size(viewport.as_dict())

    def wait(self, ms: int) -> None:
        if ms > 0:
            self._page.wait_for_timeout(ms)

    def screenshot(self, path: Path) -> None:
        self._page.screenshot(path=str(path), full_page=True, type="png")

    def close(self) -> None:
        for name in ("_page", "_context", "_browser"):
            obj = getattr(self, name)
            if obj is None:
                continue
            try:
                obj.close()
            except PlaywrightError as e:
                logging.warning("cleanup error (%s): %s", name.lstrip("_"), e)
            setattr(self, name, None)
        if self._pl is not None:
            try:
                self._pl.stop()
            except PlaywrightError as e:
                logging.warning("cleanup error (playwright): %s", e)
            self._pl = None
            logging.info("browser cleanup completed")


RendererFactory = Callable[[SnapshotOptions], PageRenderer]


def default_renderer(options: SnapshotOptions) -> PageRenderer:
    return PlaywrightRenderer(
        options.user_agent, options.desktop_viewport, options.timeout_ms
    )


# -------------------- Loader --------------------


def validate_url(url: str) -> None:
    try:
        p = urlparse(url)
    except ValueError as e:
        raise ValidationError(f"Invalid URL: {url}") from e
    if p.scheme not in ("http", "https"):
        raise ValidationError("Only HTTP and HTTPS URLs are supported")
    if not p.netloc:
        raise ValidationError(f"Invalid URL: {url}")


def robots_url_for(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}/robots.txt"


def fetch_robots(
    url: str, session: requests.Session, timeout: float = ROBOTS_TIMEOUT
) -> Optional[robotparser.RobotFileParser]:
    robots_url = robots_url_for(url)
    try:
        r = session.get(robots_url, timeout=timeout)
    except requests.RequestException as e:
        logging.warning("robots.txt not accessible (%s) - proceeding", e)
        return None
    if r.status_code >= 400 or not r.text:
        logging.warning("robots.txt not accessible (HTTP %s) - proceeding", r.status_code)
        return None
    rp = robotparser.RobotFileParser(robots_url)
    rp.parse(r.text.splitlines())
    return rp


def check_robots(
    url: str,
    session: requests.Session,
    user_agent: str,
    timeout: float = ROBOTS_TIMEOUT,
) -> None:
    rp = fetch_robots(url, session, timeout)
    if rp is not None and not rp.can_fetch(user_agent, url):
        raise PolicyBlocked("Access blocked by robots.txt")


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        resolved = resolve_reference(tag["href"], fallback)
        if resolved:
            return resolved
    return fallback


def extract_metadata(soup: BeautifulSoup, final_url: str) -> Dict[str, str]:
    metadata: Dict[str, str] = {}
    for meta in soup.find_all("meta"):
        name = meta.get("name") or meta.get("property") or meta.get("http-equiv")
        content = meta.get("content")
        if name and content:
            metadata[name] = content
    root = soup.find("html")
    charset = soup.find("meta", charset=True)
    metadata["lang"] = (root.get("lang") if root else None) or "en"
    metadata["charset"] = (charset.get("charset") if charset else None) or "UTF-8"
    metadata["url"] = final_url
    metadata["domain"] = urlparse(final_url).hostname or ""
    return metadata


def load_page(
    renderer: PageRenderer, url: str, timeout_ms: int, settle_ms: int = SETTLE_MS
) -> LoadedPage:
    logging.info("navigating to %s", url)
    resp = renderer.navigate(url, timeout_ms)
    if not resp.ok:
        raise NavigationFailure(
            f"HTTP {resp.status or 'unknown'}: {resp.status_text or 'Navigation failed'}"
        )
    logging.info("page loaded with status %s", resp.status)
    renderer.wait(settle_ms)

    html = renderer.content()
    final_url = renderer.current_url() or resp.url or url
    page = LoadedPage(
        url=url,
        final_url=final_url,
        status=resp.status,
        html=html,
        title=renderer.title() or "",
        metadata=extract_metadata(bs4_parse(html), final_url),
    )
    logging.info('extracted: title="%s", html=%d chars', page.title, len(html))
    return page


# -------------------- Extraction --------------------


def parse_css_urls(text: str) -> List[str]:
    return [m.group(2).strip() for m in CSS_URL_RE.finditer(text or "")]


def extract_assets(
    html: str, page_url: str, background_images: Iterable[str] = ()
) -> ExtractedAssets:
    soup = bs4_parse(html)
    base = effective_base_url(soup, page_url)
    assets = ExtractedAssets()

    def add(literal: Optional[str], category: str) -> None:
        if not can_fetch_url(literal):
            return
        absu = resolve_reference(literal, base)
        if absu is None:
            logging.debug("dropping unresolvable %s reference: %r", category, literal)
            return
        assets.add(AssetReference(absu, literal, category))

    for img in soup.select("img[src]"):
        add(img.get("src"), IMAGE)

    css_sources = list(background_images)
    css_sources.extend(tag.get("style") or "" for tag in soup.select("[style]"))
    css_sources.extend(style.string or "" for style in soup.find_all("style"))
    for css in css_sources:
        for u in parse_css_urls(css):
            add(u, IMAGE)

    for link in soup.select("link[href]"):
        rels = {r.lower() for r in (link.get("rel") or [])}
        if "stylesheet" in rels:
            add(link.get("href"), STYLESHEET)

    for tag in soup.select("script[src]"):
        add(tag.get("src"), SCRIPT)

    for link in soup.select('link[href*="font"]'):
        add(link.get("href"), FONT)

    logging.info(
        "assets found: %d images, %d CSS, %d JS, %d fonts",
        len(assets.images),
        len(assets.stylesheets),
        len(assets.scripts),
        len(assets.fonts),
    )
    return assets


def extract_page_assets(renderer: PageRenderer, page: LoadedPage) -> ExtractedAssets:
    try:
        backgrounds = renderer.background_images()
    except Exception as e:
        logging.warning("computed style scan failed: %s", e)
        backgrounds = []
    return extract_assets(page.html, page.final_url, backgrounds)


# -------------------- Downloaders --------------------


def unique_references(
    refs: Iterable[AssetReference],
) -> List[Tuple[AssetReference, List[str]]]:
    by_url: Dict[str, Tuple[AssetReference, List[str]]] = {}
    for ref in refs:
        entry = by_url.get(ref.url)
        if entry is None:
            by_url[ref.url] = (ref, [ref.original])
        elif ref.original not in entry[1]:
            entry[1].append(ref.original)
    return list(by_url.values())


def plan_targets(
    refs: Iterable[AssetReference], known: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    claimed: Dict[str, str] = dict(known or {})
    targets: Dict[str, str] = {}
    for ref in refs:
        rel = asset_relative_path(ref.category, asset_filename(ref.url, ref.category))
        if rel in claimed and claimed[rel] != ref.url:
            rel = asset_relative_path(
                ref.category, asset_filename(ref.url, ref.category, digits=32)
            )
        claimed[rel] = ref.url
        targets[ref.url] = rel
    return targets


def fetch_asset(
    session: requests.Session, url: str, user_agent: str, timeout: float
) -> bytes:
    deadline = time.monotonic() + timeout
    try:
        resp = session.get(
            url, headers=asset_headers(user_agent), timeout=timeout, stream=True
        )
    except requests.RequestException as e:
        raise AssetDownloadError(str(e)) from e
    try:
        if not 200 <= resp.status_code < 300:
            raise AssetDownloadError(f"HTTP {resp.status_code}: {resp.reason}")
        chunks = []
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            if time.monotonic() > deadline:
                raise AssetDownloadError(f"timed out after {timeout:g}s")
            if chunk:
                chunks.append(chunk)
        return b"".join(chunks)
    except requests.RequestException as e:
        raise AssetDownloadError(str(e)) from e
    finally:
        resp.close()


def download_one(
    session: requests.Session,
    ref: AssetReference,
    relative_path: str,
    output_dir: Path,
    user_agent: str,
    timeout: float,
    reuse: bool = False,
) -> AssetOutcome:
    target = output_dir / relative_path
    if reuse and target.exists():
        logging.debug("already present: %s", relative_path)
        return AssetRecord(ref.url, relative_path, 0, ref.category)
    try:
        body = fetch_asset(session, ref.url, user_agent, timeout)
        ensure_parent_dir(target)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(body)
        os.replace(tmp, target)
    except (AssetDownloadError, OSError) as e:
        logging.warning("failed to download %s: %s", ref.url, e)
        return AssetFailure(ref.url, ref.category, str(e))
    logging.debug("downloaded: %s (%d bytes)", relative_path, len(body))
    return AssetRecord(ref.url, relative_path, len(body), ref.category)


def download_assets(
    assets: ExtractedAssets,
    output_dir: Path,
    session: requests.Session,
    user_agent: str = DEFAULT_USER_AGENT,
    timeout: float = ASSET_DOWNLOAD_TIMEOUT_MS / 1000.0,
    workers: int = 4,
    known: Optional[Mapping[str, str]] = None,
) -> DownloadReport:
    report = DownloadReport()
    unique = unique_references(assets.flatten())
    if not unique:
        return report
    known = known or {}
    targets = plan_targets((ref for ref, _ in unique), known)
    logging.info("downloading %d unique assets", len(unique))

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = [
            pool.submit(
                download_one,
                session,
                ref,
                targets[ref.url],
                output_dir,
                user_agent,
                timeout,
                known.get(targets[ref.url]) == ref.url,
            )
            for ref, _ in unique
        ]
        for (ref, literals), fut in zip(unique, futures):
            try:
                outcome = fut.result()
            except Exception as e:
                logging.exception("unexpected error downloading %s", ref.url)
                outcome = AssetFailure(ref.url, ref.category, str(e))
            if isinstance(outcome, AssetFailure):
                report.failures.append(outcome)
                continue
            report.records.append(outcome)
            report.mapping[outcome.url] = outcome.local_path
            for literal in literals:
                report.mapping[literal] = outcome.local_path

    logging.info(
        "assets processed: %d/%d successful", report.downloaded, report.total
    )
    return report


# -------------------- Screenshots --------------------


def take_screenshot(
    renderer: PageRenderer, viewport: Viewport, path: Path, settle_ms: int
) -> str:
    try:
        renderer.set_viewport(viewport)
        renderer.wait(settle_ms)
        renderer.screenshot(path)
    except Exception as e:
        raise ScreenshotError(f"{path.name}: {e}") from e
    logging.debug("screenshot saved: %s", path.name)
    return str(path)


def capture_one(
    renderer: PageRenderer, viewport: Viewport, path: Path, settle_ms: int
) -> Optional[str]:
    try:
        return take_screenshot(renderer, viewport, path, settle_ms)
    except ScreenshotError as e:
        logging.error("screenshot error: %s", e)
        return None


def capture_screenshots(
    renderer: PageRenderer,
    output_dir: Path,
    host: str,
    desktop: Viewport = DESKTOP_VIEWPORT,
    mobile: Viewport = MOBILE_VIEWPORT,
    settle_ms: int = SETTLE_MS,
) -> ScreenshotPair:
    logging.info("capturing screenshots")
    shots = screenshots_dir(output_dir)
    shots.mkdir(parents=True, exist_ok=True)
    stamp = int(time.time() * 1000)
    prefix = sanitize_filename(host) or "page"
    return ScreenshotPair(
        desktop=capture_one(
            renderer, desktop, shots / f"{prefix}-desktop-{stamp}.png", settle_ms
        ),
        mobile=capture_one(
            renderer, mobile, shots / f"{prefix}-mobile-{stamp}.png", settle_ms
        ),
    )


# -------------------- Rewriters --------------------


def literal_variants(literal: str) -> List[str]:
    # serialized markup escapes only & inside attribute values
    escaped = literal.replace("&", "&amp;")
    return [literal] if escaped == literal else [literal, escaped]


def rewrite_html(html: str, mapping: Mapping[str, str]) -> str:
    if not mapping:
        return html
    out = html
    for literal, local_path in mapping.items():
        if not literal:
            continue
        for variant in literal_variants(literal):
            esc = re.escape(variant)
            out = re.sub(
                r"src\s*=\s*['\"]" + esc + r"['\"]",
                lambda _m: f'src="{local_path}"',
                out,
            )
            out = re.sub(
                r"href\s*=\s*['\"]" + esc + r"['\"]",
                lambda _m: f'href="{local_path}"',
                out,
            )
            out = re.sub(
                r"url\(\s*['\"]?" + esc + r"['\"]?\s*\)",
                lambda _m: f'url("{local_path}")',
                out,
            )
    return out


# -------------------- Archive writer --------------------


def write_archive(snapshot: PageSnapshot, output_dir: Path) -> Tuple[Path, Path]:
    html_path = output_dir / INDEX_FILENAME
    meta_path = output_dir / METADATA_FILENAME
    atomic_write_text(html_path, snapshot.html)
    atomic_write_json(meta_path, snapshot.metadata_record())
    logging.info("results saved to %s", output_dir)
    return html_path, meta_path


def previous_downloads(output_dir: Path) -> Dict[str, str]:
    """Local path -> canonical URL for assets an earlier run recorded."""
    meta_path = output_dir / METADATA_FILENAME
    try:
        data = json.loads(meta_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logging.warning("ignoring unreadable %s: %s", meta_path, e)
        return {}
    if not isinstance(data, dict):
        return {}
    known: Dict[str, str] = {}
    for rec in data.get("downloads") or []:
        if isinstance(rec, dict) and rec.get("path") and rec.get("url"):
            known[rec["path"]] = rec["url"]
    return known


# -------------------- Main: snapshot --------------------


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def snapshot_page(
    options: SnapshotOptions,
    *,
    renderer_factory: Optional[RendererFactory] = None,
    session: Optional[requests.Session] = None,
) -> SnapshotResult:
    started = time.monotonic()
    result = SnapshotResult(url=options.url, output_dir=str(options.output_dir))
    own_session = session is None
    factory = renderer_factory or default_renderer

    try:
        logging.info("starting snapshot of %s", options.url)
        validate_url(options.url)

        output_dir = Path(options.output_dir)
        create_directory_structure(output_dir)

        if session is None:
            session = build_session(options.user_agent)
        if options.respect_robots:
            check_robots(options.url, session, options.user_agent)
        result.scraping_allowed = True

        screenshots = ScreenshotPair()
        with factory(options) as renderer:
            page = load_page(renderer, options.url, options.timeout_ms, options.settle_ms)
            result.accessible = True
            result.title = page.title
            result.metadata = page.metadata
            result.html = page.html
            assets = extract_page_assets(renderer, page)
            result.assets = assets
            if options.take_screenshots:
                host = urlparse(options.url).hostname or "page"
                screenshots = capture_screenshots(
                    renderer,
                    output_dir,
                    host,
                    options.desktop_viewport,
                    options.mobile_viewport,
                    options.settle_ms,
                )
        result.screenshots = screenshots

        if options.download_assets:
            report = download_assets(
                assets,
                output_dir,
                session,
                options.user_agent,
                options.asset_timeout_ms / 1000.0,
                options.workers,
                known=previous_downloads(output_dir),
            )
            result.asset_mapping = report.mapping
            result.statistics.total_assets = report.total
            result.statistics.downloaded_assets = report.downloaded
            result.statistics.failed_assets = report.failed
            result.downloads = report.records
            result.failures = report.failures

        rewritten = rewrite_html(page.html, result.asset_mapping)
        result.statistics.processing_time_ms = elapsed_ms(started)
        snapshot = PageSnapshot(
            original_url=options.url,
            final_url=page.final_url,
            title=page.title,
            metadata=page.metadata,
            html=rewritten,
            assets=assets,
            asset_mapping=result.asset_mapping,
            screenshots=screenshots,
            statistics=result.statistics,
            captured_at=utc_timestamp(),
            downloads=tuple(result.downloads),
            failures=tuple(result.failures),
        )
        write_archive(snapshot, output_dir)
        result.html = rewritten

        result.success = True
        result.statistics.processing_time_ms = elapsed_ms(started)
        result.message = (
            f"Successfully scraped page and processed "
            f"{result.statistics.downloaded_assets}/{result.statistics.total_assets} "
            f"assets in {result.statistics.processing_time_ms}ms"
        )
        logging.info(result.message)
    except ValidationError as e:
        logging.error("validation failed: %s", e)
        result.message = str(e)
    except (PolicyBlocked, NavigationFailure) as e:
        logging.error("scraping failed: %s", e)
        result.message = f"Scraping error: {e}"
    except Exception as e:
        logging.exception("scraping failed")
        result.message = f"Scraping error: {e}"
    finally:
        result.statistics.processing_time_ms = elapsed_ms(started)
        if own_session and session is not None:
            session.close()
    return result


# -------------------- Main: access check --------------------


def check_url(
    options: SnapshotOptions,
    *,
    renderer_factory: Optional[RendererFactory] = None,
    session: Optional[requests.Session] = None,
) -> AccessReport:
    report = AccessReport(url=options.url)
    own_session = session is None
    factory = renderer_factory or default_renderer
    try:
        validate_url(options.url)
        if session is None:
            session = build_session(options.user_agent)
        if options.respect_robots:
            check_robots(options.url, session, options.user_agent)
        report.scraping_allowed = True

        with factory(options) as renderer:
            resp = renderer.navigate(
                options.url, options.timeout_ms, wait_until="domcontentloaded"
            )
            report.status_code = resp.status
            if not resp.ok:
                raise NavigationFailure(
                    f"HTTP {resp.status or 'unknown'}: {resp.status_text or 'Navigation failed'}"
                )
            report.title = renderer.title()
            final_url = renderer.current_url() or resp.url
            if final_url and final_url != options.url:
                report.redirect_url = final_url
        report.accessible = True
        report.success = True
        report.message = f"URL is accessible (Status: {report.status_code})"
    except ValidationError as e:
        report.message = f"Validation error: {e}"
    except PolicyBlocked as e:
        report.message = str(e)
    except NavigationFailure as e:
        report.message = f"URL not accessible: {e}"
    except Exception as e:
        logging.exception("access check failed")
        report.message = f"URL not accessible: {e}"
    finally:
        if own_session and session is not None:
            session.close()
    return report


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            import tomli as tomllib  # backport
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Snapshot a web page with its assets and screenshots.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL")
    p.add_argument(
        "output_dir", nargs="?", default=DEFAULT_OUTPUT_DIR, help="output directory"
    )
    p.add_argument("--user-agent", type=str, default=DEFAULT_USER_AGENT)
    p.add_argument(
        "--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS, help="page load timeout"
    )
    p.add_argument(
        "--asset-timeout-ms",
        type=int,
        default=ASSET_DOWNLOAD_TIMEOUT_MS,
        help="per-asset download timeout",
    )
    p.add_argument(
        "--settle-ms",
        type=int,
        default=SETTLE_MS,
        help="wait after load and after each viewport change",
    )
    p.add_argument("--workers", type=int, default=4, help="concurrent downloads")
    p.add_argument(
        "--ignore-robots", action="store_true", help="do not check robots.txt"
    )
    p.add_argument("--no-assets", action="store_true", help="skip asset downloads")
    p.add_argument("--no-screenshots", action="store_true", help="skip screenshots")
    p.add_argument(
        "--desktop",
        type=Viewport.parse,
        default=DESKTOP_VIEWPORT,
        help="desktop viewport WIDTHxHEIGHT",
    )
    p.add_argument(
        "--mobile",
        type=Viewport.parse,
        default=MOBILE_VIEWPORT,
        help="mobile viewport WIDTHxHEIGHT",
    )
    p.add_argument(
        "--check", action="store_true", help="only check that the URL is reachable"
    )
    p.add_argument("--json", action="store_true", help="print the result as JSON")
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
            for g in ("general", "render", "assets", "screenshots"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            for key in ("desktop", "mobile"):
                if key in flat:
                    flat[key] = Viewport.parse(flat[key])
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def options_from_args(args: argparse.Namespace) -> SnapshotOptions:
    return SnapshotOptions(
        url=args.url,
        output_dir=args.output_dir,
        user_agent=args.user_agent,
        respect_robots=not args.ignore_robots,
        timeout_ms=max(1, args.timeout_ms),
        download_assets=not args.no_assets,
        take_screenshots=not args.no_screenshots,
        desktop_viewport=args.desktop,
        mobile_viewport=args.mobile,
        asset_timeout_ms=max(1, args.asset_timeout_ms),
        settle_ms=max(0, args.settle_ms),
        workers=max(1, args.workers),
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    options = options_from_args(args)

    if args.check:
        report = check_url(options)
        print(json.dumps(report.as_dict(), indent=2) if args.json else report.message)
        sys.exit(0 if report.success else 1)

    result = snapshot_page(options)
    if args.json:
        print(json.dumps(result.as_dict(include_html=False), indent=2))
    else:
        print(result.message)
        if result.success:
            print(f"Saved to: {Path(options.output_dir) / INDEX_FILENAME}")
            for label, path in result.screenshots.as_dict().items():
                if path:
                    print(f"{label} screenshot: {path}")
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
