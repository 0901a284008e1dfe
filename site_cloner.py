#!/usr/bin/env python3
import argparse
import json
import logging
import os
import random
import re
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)
from urllib.parse import quote, unquote, urldefrag, urljoin, urlparse

import requests
from bs4 import BeautifulSoup, Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/109.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/109.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/108.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.1 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/108.0.0.0 Safari/537.36",
)

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
ASSET_ACCEPT = "*/*"
ACCEPT_LANGUAGE = "en-US,en;q=0.7"

DEFAULT_PLACEHOLDER_URL = (
    "https://placehold.co/{width}x{height}/EEE/31343C?text=Failed+to+Load"
)

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
# only the string form; @import url(...) is matched by CSS_URL_RE
CSS_IMPORT_RE = re.compile(r"@import\s+([\"'])([^\"']+)\1", re.IGNORECASE)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
INVALID_PATH_CHARS_RE = re.compile(r'[:?#<>\\|*"\x00-\x1f]')
# a quoted data: URI may itself contain url(...) text, e.g. SVG fill='url(%23g)'
DATA_URL_SPAN_RE = re.compile(
    r"url\(\s*([\"'])\s*data:.*?\1\s*\)|url\(\s*data:[^)]*\)",
    re.IGNORECASE | re.DOTALL,
)
REF_SAFE_CHARS = "/@!$&*+;=~"
DIMENSION_RE = re.compile(r"^\s*(\d+)\s*(?:px)?\s*$", re.IGNORECASE)

NON_FETCHABLE_PREFIXES = (
    "#",
    "mailto:",
    "tel:",
    "javascript:",
    "data:",
    "blob:",
    "about:",
)

LINK_ASSET_RELS = {
    "stylesheet",
    "icon",
    "apple-touch-icon",
    "apple-touch-icon-precomposed",
    "mask-icon",
    "manifest",
}
PRELOAD_AS_TYPES = {"style", "script", "image", "font"}

META_URL_KEYS = {
    "og:image",
    "og:image:url",
    "og:image:secure_url",
    "og:video",
    "og:video:url",
    "og:video:secure_url",
    "og:audio",
    "og:audio:url",
    "twitter:image",
    "twitter:image:src",
    "thumbnail",
    "image",
    "msapplication-tileimage",
    "msapplication-square150x150logo",
}

SRI_ATTRS = ("integrity", "crossorigin", "referrerpolicy")


# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 30.0
    concurrency: int = 5
    batch_delay: float = 1.0
    retries: int = 0
    output_base: str = "clones"
    placeholder_url: str = DEFAULT_PLACEHOLDER_URL
    placeholder_width: int = 400
    placeholder_height: int = 300


# -------------------- Errors --------------------


class CloneError(Exception):
    pass


class InvalidInput(CloneError):
    pass


class PathTraversal(CloneError):
    pass


class NetworkFailure(CloneError):
    pass


class ParseFailure(CloneError, ValueError):
    pass


# -------------------- Data model --------------------


@dataclass(frozen=True)
class CloneJob:
    url: str
    output_dir: Path
    assets_dir: Path

    @classmethod
    def create(
        cls, url: str, settings: Settings, now_ms: Optional[int] = None
    ) -> "CloneJob":
        host = safe_filename(urlparse(url).hostname or "") or "site"
        stamp = now_ms if now_ms is not None else int(time.time() * 1000)
        out = Path(settings.output_base).resolve() / f"{host}_{stamp}"
        return cls(url=url, output_dir=out, assets_dir=out / "assets")


@dataclass
class AssetReference:
    url: str
    cited_by: List[str] = field(default_factory=list)
    from_srcset: bool = False
    stylesheet: bool = False


@dataclass(frozen=True)
class DownloadSuccess:
    url: str
    local_path: str
    content: bytes = field(repr=False)

    ok = True


@dataclass(frozen=True)
class DownloadFailure:
    url: str
    error: str

    ok = False


DownloadOutcome = Union[DownloadSuccess, DownloadFailure]


class UrlToLocalMap:
    """Absolute asset URL -> path relative to the job's output directory.

    Entries are write-once: binding a URL to a second, different path raises
    ValueError, so the CSS and HTML rewrites always agree on a target.
    """

    def __init__(self, init: Optional[Mapping[str, str]] = None):
        self._m: Dict[str, str] = {}
        for u, p in (init or {}).items():
            self.set(u, p)

    def get(self, url: str) -> Optional[str]:
        return self._m.get(url)

    def set(self, url: str, local_path: str) -> None:
        current = self._m.get(url)
        if current is not None and current != local_path:
            raise ValueError(f"{url} already mapped to {current}")
        self._m[url] = local_path

    def update_from_outcomes(self, outcomes: Iterable[DownloadOutcome]) -> None:
        for o in outcomes:
            if isinstance(o, DownloadSuccess) and o.url not in self._m:
                self.set(o.url, o.local_path)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._m.items())

    def __contains__(self, url: object) -> bool:
        return url in self._m

    def __len__(self) -> int:
        return len(self._m)


@dataclass(frozen=True)
class CloneManifest:
    status: str
    message: str
    dir: str
    assets_count: int
    failed_downloads: int

    def as_dict(self) -> Dict[str, Union[str, int]]:
        return {
            "status": self.status,
            "message": self.message,
            "dir": self.dir,
            "assetsCount": self.assets_count,
            "failedDownloads": self.failed_downloads,
        }


# -------------------- URL + path utils --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u or u.lower().startswith(NON_FETCHABLE_PREFIXES):
        return False
    return True


def is_http_url(u: str) -> bool:
    return urlparse(u).scheme in ("http", "https")


def origin_of(u: str) -> str:
    p = urlparse(u)
    return f"{p.scheme}://{p.netloc}"


def resolve_url(ref: str, base: str) -> str:
    """Resolve ``ref`` against ``base``; the fragment is dropped."""
    try:
        absu, _ = urldefrag(urljoin(base, ref.strip()))
        # port parsing is lazy in urllib; force it so bad ports fail here
        urlparse(absu).port
    except ValueError as e:
        raise ParseFailure(f"cannot resolve {ref!r} against {base}: {e}") from e
    return absu


def validate_url(url: Optional[str]) -> str:
    if not url or not url.strip():
        raise InvalidInput("No URL provided")
    url = url.strip()
    try:
        p = urlparse(url)
        p.port
    except ValueError:
        raise InvalidInput(f"Invalid URL: {url}")
    if p.scheme not in ("http", "https") or not p.hostname:
        raise InvalidInput(f"Invalid URL: {url}")
    return url


def safe_filename(p: str) -> str:
    return INVALID_PATH_CHARS_RE.sub("_", p)


def local_path_for_url(url: str, root: Path) -> Path:
    """Map an absolute URL onto a file under ``root``.

    Scheme, host and query are dropped; only the URL path is kept. Raises
    PathTraversal when the result would land outside ``root``.
    """
    rel = safe_filename(unquote(urlparse(url).path).lstrip("/"))
    if not rel:
        rel = "index.html"
    elif rel.endswith("/"):
        rel += "index.html"
    root_resolved = root.resolve()
    target = (root_resolved / rel).resolve()
    if target == root_resolved or not target.is_relative_to(root_resolved):
        raise PathTraversal(f"{url} resolves outside {root_resolved}")
    return target


def to_rel(p: Path, start: Path) -> str:
    return Path(os.path.relpath(p, start)).as_posix()


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def write_text_atomic(path: Path, text: str) -> None:
    ensure_parent_dir(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        try:
            return resolve_url(tag["href"], fallback)
        except ParseFailure as e:
            logging.warning("ignoring <base href>: %s", e)
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


# -------------------- Asset catalogue --------------------


@dataclass(frozen=True)
class AssetSlot:
    selector: str
    attr: str
    placeholder: bool = False

    def __str__(self) -> str:
        return f"{self.selector} {self.attr}"


ASSET_SLOTS: Tuple[AssetSlot, ...] = (
    AssetSlot("link[href]", "href"),
    AssetSlot("script[src]", "src"),
    AssetSlot("img[src]", "src", placeholder=True),
    AssetSlot("img[srcset]", "srcset"),
    AssetSlot("source[src]", "src", placeholder=True),
    AssetSlot("source[srcset]", "srcset"),
    AssetSlot("audio[src]", "src", placeholder=True),
    AssetSlot("video[src]", "src", placeholder=True),
    AssetSlot("video[poster]", "poster", placeholder=True),
    AssetSlot("track[src]", "src"),
    AssetSlot("input[type=image][src]", "src", placeholder=True),
    AssetSlot("embed[src]", "src"),
    AssetSlot("object[data]", "data"),
    AssetSlot("meta[content]", "content"),
)


def link_rels(tag: Tag) -> Set[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return {r.lower() for r in rel}


def carries_asset(tag: Tag) -> bool:
    if tag.name == "link":
        rels = link_rels(tag)
        if rels & LINK_ASSET_RELS or "modulepreload" in rels:
            return True
        if "preload" in rels:
            return (tag.get("as") or "").lower() in PRELOAD_AS_TYPES
        return False
    if tag.name == "meta":
        key = tag.get("property") or tag.get("name") or tag.get("itemprop") or ""
        return key.lower() in META_URL_KEYS
    return True


def iter_asset_slots(soup: BeautifulSoup) -> Iterator[Tuple[Tag, AssetSlot]]:
    for slot in ASSET_SLOTS:
        for tag in soup.select(slot.selector):
            if carries_asset(tag):
                yield tag, slot


def is_stylesheet_link(tag: Tag) -> bool:
    return tag.name == "link" and "stylesheet" in link_rels(tag)


def parse_srcset(v: str) -> List[Tuple[str, str]]:
    entries: List[Tuple[str, str]] = []
    if not v:
        return entries
    for cand in SRCSET_SPLIT_RE.split(v.strip()):
        if not cand:
            continue
        parts = WS_RE.split(cand.strip())
        entries.append((parts[0], " ".join(parts[1:])))
    return entries


def data_url_spans(text: str) -> List[Tuple[int, int]]:
    return [m.span() for m in DATA_URL_SPAN_RE.finditer(text)]


def inside_spans(pos: int, spans: List[Tuple[int, int]]) -> bool:
    return any(start <= pos < end for start, end in spans)


def parse_css_urls(text: str) -> List[str]:
    spans = data_url_spans(text)
    refs: List[str] = []
    for pattern in (CSS_URL_RE, CSS_IMPORT_RE):
        for m in pattern.finditer(text):
            if not inside_spans(m.start(), spans):
                refs.append(m.group(2).strip())
    return [u for u in dict.fromkeys(refs) if can_fetch_url(u)]


def iter_inline_css(soup: BeautifulSoup) -> Iterator[str]:
    for tag in soup.select("[style]"):
        css = tag.get("style")
        if css:
            yield css
    for style in soup.find_all("style"):
        if style.string:
            yield str(style.string)


# -------------------- Discovery --------------------


def discover_assets(
    soup: BeautifulSoup, page_url: str
) -> Dict[str, AssetReference]:
    """Collect every fetchable asset URL cited by the page, keyed by URL."""
    base = effective_base_url(soup, page_url)
    found: Dict[str, AssetReference] = {}

    def add(ref: str, where: str, *, srcset: bool = False, css: bool = False) -> None:
        if not can_fetch_url(ref):
            return
        try:
            absu = resolve_url(ref, base)
        except ParseFailure as e:
            logging.warning("skipping reference in %s: %s", where, e)
            return
        if not is_http_url(absu):
            logging.debug("skipping non-http reference %s", absu)
            return
        entry = found.get(absu)
        if entry is None:
            entry = found[absu] = AssetReference(absu)
        entry.cited_by.append(where)
        entry.from_srcset = entry.from_srcset or srcset
        entry.stylesheet = entry.stylesheet or css

    for tag, slot in iter_asset_slots(soup):
        value = tag.get(slot.attr)
        if not value:
            continue
        if slot.attr == "srcset":
            for u, _ in parse_srcset(value):
                add(u, str(slot), srcset=True)
        else:
            add(value, str(slot), css=is_stylesheet_link(tag))

    for css in iter_inline_css(soup):
        for u in parse_css_urls(css):
            add(u, "inline css")
    return found


# -------------------- HTTP --------------------


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


def request_headers(
    referer: str,
    user_agent: Callable[[], str] = random_user_agent,
    accept: str = ASSET_ACCEPT,
) -> Dict[str, str]:
    return {
        "User-Agent": user_agent(),
        "Referer": referer,
        "Accept": accept,
        "Accept-Language": ACCEPT_LANGUAGE,
    }


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(
        max_retries=retry,
        pool_connections=settings.concurrency,
        pool_maxsize=max(settings.concurrency, 10),
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    return s


def fetch_document(
    session: requests.Session,
    url: str,
    *,
    headers: Mapping[str, str],
    timeout: float,
) -> str:
    try:
        resp = session.get(url, headers=dict(headers), timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise NetworkFailure(str(e)) from e
    return resp.text


def fetch_asset(
    session: requests.Session,
    url: str,
    job: CloneJob,
    *,
    headers: Mapping[str, str],
    timeout: float,
) -> DownloadOutcome:
    """GET one asset and store it under the job's assets directory.

    Never raises for per-asset problems: path traversal, network errors,
    non-2xx statuses and write errors all come back as DownloadFailure.
    """
    try:
        local_path = local_path_for_url(url, job.assets_dir)
        resp = session.get(url, headers=dict(headers), timeout=timeout)
        if not 200 <= resp.status_code < 300:
            raise NetworkFailure(f"HTTP {resp.status_code}")
        content = resp.content
        ensure_parent_dir(local_path)
        local_path.write_bytes(content)
    except (CloneError, requests.RequestException, OSError) as e:
        logging.warning("failed %s: %s", url, e)
        return DownloadFailure(url, str(e))
    rel = to_rel(local_path, job.output_dir.resolve())
    logging.info("downloaded asset: %s -> %s", url, rel)
    return DownloadSuccess(url, rel, content)


# -------------------- Batch downloader --------------------


class BatchThrottle:
    """Keeps successive batch starts ``delay`` seconds apart.

    One instance spans a whole job, so the pause also separates the last
    page-asset batch from the first nested-stylesheet batch.
    """

    def __init__(self, delay: float, sleep: Callable[[float], None] = time.sleep):
        self.delay = delay
        self.sleep = sleep
        self.batches = 0

    def wait(self) -> None:
        if self.batches and self.delay > 0:
            self.sleep(self.delay)
        self.batches += 1


def download_in_batches(
    urls: Iterable[str],
    fetch: Callable[[str], DownloadOutcome],
    *,
    concurrency: int,
    throttle: Optional[BatchThrottle] = None,
) -> List[DownloadOutcome]:
    """Run ``fetch`` over ``urls`` in fixed-size parallel batches.

    Batches run one after another, paced by ``throttle``; the result holds
    exactly one outcome per distinct input URL.
    """
    if throttle is None:
        throttle = BatchThrottle(0)
    pending = list(dict.fromkeys(urls))
    outcomes: List[DownloadOutcome] = []
    size = max(1, concurrency)
    for start in range(0, len(pending), size):
        throttle.wait()
        batch = pending[start : start + size]
        logging.debug("batch %d: %d urls", throttle.batches, len(batch))
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            future_map = {pool.submit(fetch, u): u for u in batch}
            for fut in as_completed(future_map):
                u = future_map[fut]
                try:
                    outcomes.append(fut.result())
                except Exception as e:
                    logging.error("unexpected error fetching %s: %s", u, e)
                    outcomes.append(DownloadFailure(u, str(e)))
    return outcomes


# -------------------- Rewriters --------------------


def lookup_local(
    ref: str, base: str, url_map: UrlToLocalMap
) -> Optional[Tuple[str, str]]:
    """Return ``(local_path, fragment)`` for a mapped reference, else None."""
    if not can_fetch_url(ref):
        return None
    try:
        absu = resolve_url(ref, base)
    except ParseFailure as e:
        logging.debug("leaving reference as-is: %s", e)
        return None
    local = url_map.get(absu)
    if local is None:
        return None
    return local, ref.partition("#")[2]


def href_for(path: str, fragment: str) -> str:
    """Quote a local file path for use in an attribute or url()."""
    href = quote(path, safe=REF_SAFE_CHARS)
    return f"{href}#{fragment}" if fragment else href


def rewrite_css_text(
    css_text: str,
    css_base_url: str,
    url_map: UrlToLocalMap,
    css_dir: Path,
    output_root: Path,
) -> str:
    def map_ref(ref: str) -> Optional[str]:
        hit = lookup_local(ref, css_base_url, url_map)
        if hit is None:
            return None
        local, frag = hit
        return href_for(to_rel(output_root / local, css_dir), frag)

    def repl_url(m: re.Match) -> str:
        if inside_spans(m.start(), spans):
            return m.group(0)
        q = m.group(1) or ""
        nu = map_ref(m.group(2).strip())
        return m.group(0) if nu is None else f"url({q}{nu}{q})"

    def repl_import(m: re.Match) -> str:
        if inside_spans(m.start(), spans):
            return m.group(0)
        q = m.group(1)
        nu = map_ref(m.group(2).strip())
        return m.group(0) if nu is None else f"@import {q}{nu}{q}"

    spans = data_url_spans(css_text)
    t = CSS_URL_RE.sub(repl_url, css_text)
    spans = data_url_spans(t)
    return CSS_IMPORT_RE.sub(repl_import, t)


def collect_css_references(css_text: str, css_base_url: str) -> List[str]:
    urls: List[str] = []
    for ref in parse_css_urls(css_text):
        try:
            absu = resolve_url(ref, css_base_url)
        except ParseFailure as e:
            logging.warning("skipping css url(): %s", e)
            continue
        if is_http_url(absu):
            urls.append(absu)
    return list(dict.fromkeys(urls))


def is_stylesheet(url: str, ref: Optional[AssetReference] = None) -> bool:
    if ref is not None and ref.stylesheet:
        return True
    return urlparse(url).path.lower().endswith(".css")


def resolve_stylesheet(
    css_url: str,
    job: CloneJob,
    url_map: UrlToLocalMap,
    download: Callable[[List[str]], List[DownloadOutcome]],
    attempted: Set[str],
) -> List[DownloadOutcome]:
    """Fetch the stylesheet's missing url() targets, then rewrite it in place."""
    local = url_map.get(css_url)
    if local is None:
        return []
    css_path = job.output_dir / local
    try:
        text = css_path.read_text(encoding="utf-8", errors="surrogateescape")
    except OSError as e:
        logging.warning("cannot read stylesheet %s: %s", css_path, e)
        return []

    pending = [
        u
        for u in collect_css_references(text, css_url)
        if u not in url_map and u not in attempted
    ]
    attempted.update(pending)
    outcomes = download(pending) if pending else []
    url_map.update_from_outcomes(outcomes)

    new_text = rewrite_css_text(
        text, css_url, url_map, css_path.parent, job.output_dir
    )
    if new_text != text:
        try:
            css_path.write_text(new_text, encoding="utf-8", errors="surrogateescape")
            logging.debug("rewrote stylesheet %s", local)
        except OSError as e:
            logging.warning("cannot rewrite stylesheet %s: %s", css_path, e)
    return outcomes


def resolve_stylesheets(
    job: CloneJob,
    url_map: UrlToLocalMap,
    references: Mapping[str, AssetReference],
    download: Callable[[List[str]], List[DownloadOutcome]],
) -> List[DownloadOutcome]:
    queue = [u for u, _ in url_map.items() if is_stylesheet(u, references.get(u))]
    scanned: Set[str] = set(queue)
    attempted: Set[str] = set(references)
    outcomes: List[DownloadOutcome] = []
    while queue:
        css_url = queue.pop(0)
        nested = resolve_stylesheet(css_url, job, url_map, download, attempted)
        outcomes.extend(nested)
        for o in nested:
            if o.ok and o.url not in scanned and is_stylesheet(o.url):
                scanned.add(o.url)
                queue.append(o.url)
    return outcomes


def dimension(value: Optional[str], default: int) -> int:
    m = DIMENSION_RE.match(value or "")
    if m and int(m.group(1)) > 0:
        return int(m.group(1))
    return default


def placeholder_for(tag: Tag, settings: Settings) -> str:
    return settings.placeholder_url.format(
        width=dimension(tag.get("width"), settings.placeholder_width),
        height=dimension(tag.get("height"), settings.placeholder_height),
    )


def rewrite_srcset(value: str, base: str, url_map: UrlToLocalMap) -> str:
    parts = []
    for ref, desc in parse_srcset(value):
        hit = lookup_local(ref, base, url_map)
        url_out = href_for(*hit) if hit else ref
        parts.append(f"{url_out} {desc}".strip())
    return ", ".join(parts)


def rewrite_html(
    soup: BeautifulSoup,
    page_url: str,
    url_map: UrlToLocalMap,
    settings: Settings,
) -> int:
    base = effective_base_url(soup, page_url)
    changed = 0
    for tag, slot in iter_asset_slots(soup):
        value = tag.get(slot.attr)
        if not value:
            continue
        if slot.attr == "srcset":
            new_value = rewrite_srcset(value, base, url_map)
        elif not can_fetch_url(value):
            continue
        else:
            hit = lookup_local(value, base, url_map)
            if hit is not None:
                new_value = href_for(*hit)
                for rm in SRI_ATTRS:
                    if rm in tag.attrs:
                        del tag.attrs[rm]
            elif slot.placeholder:
                new_value = placeholder_for(tag, settings)
            else:
                continue
        if new_value != value:
            tag[slot.attr] = new_value
            changed += 1

    # local paths are relative to index.html, not to the remote base
    for tag in soup.find_all("base", href=True):
        del tag["href"]
    return changed


def rewrite_inline_css(
    soup: BeautifulSoup, page_url: str, url_map: UrlToLocalMap, output_root: Path
) -> None:
    base = effective_base_url(soup, page_url)
    for tag in soup.select("[style]"):
        css = tag.get("style")
        if not css:
            continue
        new_css = rewrite_css_text(css, base, url_map, output_root, output_root)
        if new_css != css:
            tag["style"] = new_css
    for style in soup.find_all("style"):
        if style.string:
            text = str(style.string)
            new_text = rewrite_css_text(text, base, url_map, output_root, output_root)
            if new_text != text:
                style.string.replace_with(new_text)


# -------------------- Clone orchestration --------------------


def run_clone(
    job: CloneJob,
    settings: Settings,
    session: requests.Session,
    *,
    user_agent: Callable[[], str] = random_user_agent,
    sleep: Callable[[float], None] = time.sleep,
) -> CloneManifest:
    logging.info("GET %s", job.url)
    html = fetch_document(
        session,
        job.url,
        headers=request_headers(origin_of(job.url), user_agent, HTML_ACCEPT),
        timeout=settings.timeout,
    )
    soup = bs4_parse(html)
    references = discover_assets(soup, job.url)
    logging.info("discovered %d assets on %s", len(references), job.url)

    def fetch(url: str) -> DownloadOutcome:
        return fetch_asset(
            session,
            url,
            job,
            headers=request_headers(job.url, user_agent),
            timeout=settings.timeout,
        )

    throttle = BatchThrottle(settings.batch_delay, sleep)

    def download(urls: List[str]) -> List[DownloadOutcome]:
        return download_in_batches(
            urls, fetch, concurrency=settings.concurrency, throttle=throttle
        )

    outcomes = download(list(references))
    url_map = UrlToLocalMap()
    url_map.update_from_outcomes(outcomes)

    outcomes.extend(resolve_stylesheets(job, url_map, references, download))

    # inline CSS first: rewrite_html drops the <base> href both passes resolve against
    rewrite_inline_css(soup, job.url, url_map, job.output_dir)
    changed = rewrite_html(soup, job.url, url_map, settings)
    logging.debug("rewrote %d attributes", changed)

    write_text_atomic(job.output_dir / "index.html", serialize_html(soup))

    failed = {o.url for o in outcomes if not o.ok} - {u for u, _ in url_map.items()}
    manifest = CloneManifest(
        status="success",
        message=f"Cloned site to {job.output_dir}",
        dir=str(job.output_dir),
        assets_count=len(url_map),
        failed_downloads=len(failed),
    )
    logging.info(
        "saved %d assets (%d failed) to %s",
        manifest.assets_count,
        manifest.failed_downloads,
        job.output_dir,
    )
    return manifest


def clone_website(
    url: str = "",
    settings: Optional[Settings] = None,
    *,
    session: Optional[requests.Session] = None,
    user_agent: Callable[[], str] = random_user_agent,
    sleep: Callable[[float], None] = time.sleep,
) -> Union[Dict[str, Union[str, int]], str]:
    """Mirror ``url`` into a fresh directory.

    Returns the manifest as a JSON-ready dict, or a short error string when
    the URL is unusable, the page cannot be fetched, or the output directory
    cannot be written.
    """
    settings = settings or Settings()
    try:
        job = CloneJob.create(validate_url(url), settings)
    except InvalidInput as e:
        return str(e)

    try:
        job.output_dir.mkdir(parents=True, exist_ok=False)
        job.assets_dir.mkdir()
    except OSError as e:
        return f"Cannot create output directory {job.output_dir}: {e}"

    own_session = session is None
    if session is None:
        session = build_session(settings)
    try:
        manifest = run_clone(job, settings, session, user_agent=user_agent, sleep=sleep)
    except NetworkFailure as e:
        return f"Failed to fetch {job.url}: {e}"
    except OSError as e:
        return f"Cannot write mirror to {job.output_dir}: {e}"
    finally:
        if own_session:
            session.close()
    return manifest.as_dict()


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

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
        description="Mirror a web page and its assets into a local directory.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("url", help="http(s) URL")
    p.add_argument(
        "--output-base",
        type=str,
        default="clones",
        help="directory that receives <host>_<timestamp>/",
    )
    p.add_argument(
        "--timeout", type=float, default=30.0, help="request timeout seconds"
    )
    p.add_argument(
        "--concurrency", type=int, default=5, help="downloads per batch"
    )
    p.add_argument(
        "--batch-delay", type=float, default=1.0, help="pause between batches (s)"
    )
    p.add_argument(
        "--retries", type=int, default=0, help="retries for 429/5xx responses"
    )
    p.add_argument(
        "--placeholder-url",
        type=str,
        default=DEFAULT_PLACEHOLDER_URL,
        help="template for failed images, with {width} and {height}",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
        for g in ("general", "clone"):
            if isinstance(cfg.get(g), dict):
                flat.update(cfg[g])
        parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = Settings(
        timeout=max(1.0, args.timeout),
        concurrency=max(1, args.concurrency),
        batch_delay=max(0.0, args.batch_delay),
        retries=max(0, args.retries),
        output_base=args.output_base,
        placeholder_url=args.placeholder_url,
    )
    result = clone_website(args.url, settings)
    if isinstance(result, str):
        print(result, file=sys.stderr)
        sys.exit(1)
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
