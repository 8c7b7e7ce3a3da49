"""Filter-list and hosts-list acquisition.

Brief:
  Downloads adblock rule lists and hosts/domain blocklists, parses them into
  rule strings or domain sets, and keeps the raw text in a TTL cache (and
  optionally on disk) so repeated loads do not hit the network.

Inputs:
  - URLs or local file paths naming list sources

Outputs:
  - Lists of adblock rule strings and sets of normalized domains
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import os
import threading
import time
from typing import Callable, List, Optional, Set
from urllib.parse import urlparse

import requests
from cachetools import TTLCache

from .errors import FilterSourceUnavailable

logger = logging.getLogger(__name__)

ONE_DAY_SECONDS = 24 * 60 * 60


class FilterSources:
    """Well-known adblock rule lists, one per rule-set category."""

    EASYLIST = "https://easylist.to/easylist/easylist.txt"
    EASYPRIVACY = "https://easylist.to/easylist/easyprivacy.txt"
    MALWARE_DOMAINS = (
        "https://malware-filter.gitlab.io/malware-filter/urlhaus-filter-online.txt"
    )
    SOCIAL_ANNOYANCES = "https://easylist.to/easylist/fanboy-social.txt"


_BLOCKING_HOST_IPS = ("0.0.0.0", "127.0.0.1")


def is_remote_source(source: str) -> bool:
    return urlparse(source).scheme in ("http", "https")


def fetch_text(url: str, timeout: float = 20.0) -> str:
    """Brief: Download a list over HTTP(S).

    Inputs:
      - url: Source URL.
      - timeout: Request timeout in seconds.

    Outputs:
      - str: Response body.

    Raises:
      - FilterSourceUnavailable: on any network error or non-2xx status.
    """
    try:
        r = requests.get(url, timeout=timeout)
        r.raise_for_status()
    except requests.RequestException as e:
        raise FilterSourceUnavailable(f"failed to fetch {url}: {e}") from e
    return r.text


def read_text_file(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="ignore") as fh:
            return fh.read()
    except OSError as e:
        raise FilterSourceUnavailable(f"failed to read {path}: {e}") from e


def parse_filter_rules(text: str) -> List[str]:
    """Brief: Split adblock rule-list text into rule strings.

    Inputs:
      - text: Raw list body.

    Outputs:
      - List[str]: One entry per rule, in file order. Blank lines, '!'
        comments and '[Adblock Plus ...]' header lines are dropped.

    Example:
      >>> parse_filter_rules("! comment\\n\\n||ads.example^\\n/pagead/\\n")
      ['||ads.example^', '/pagead/']
    """
    rules: List[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("!") or line.startswith("["):
            continue
        rules.append(line)
    return rules


def _looks_like_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def parse_domain_list(text: str) -> Set[str]:
    """Brief: Extract blocked domains from hosts, adblock-domain or plain lists.

    Inputs:
      - text: Raw list body.

    Outputs:
      - Set[str]: Lower-cased domains. Accepted line shapes:
          * hosts format: "0.0.0.0 domain" / "127.0.0.1 domain" (other IPs
            are ignored, as are IP-literal "domains")
          * adblock domain anchors: "||domain^"
          * plain "domain" lines
        '#' starts a comment; entries without a dot are ignored.

    Example:
      >>> sorted(parse_domain_list("0.0.0.0 ads.example.com\\n||t.example.org^\\n# x\\n10.0.0.1 lan.example\\n"))
      ['ads.example.com', 't.example.org']
    """
    domains: Set[str] = set()
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or line.startswith("!"):
            continue
        parts = line.split()
        if len(parts) >= 2:
            if parts[0] not in _BLOCKING_HOST_IPS:
                continue
            candidate = parts[1]
        elif line.startswith("||") and line.endswith("^"):
            candidate = line[2:-1]
        else:
            candidate = line
        candidate = candidate.strip().rstrip(".").lower()
        if "." not in candidate or _looks_like_ip(candidate):
            continue
        domains.add(candidate)
    return domains


def cache_filename(url: str) -> str:
    """Brief: Build '{base}-{sha1[:12]}{ext}' for an on-disk list copy.

    Inputs:
      - url: Source URL.

    Outputs:
      - str: File name safe for local storage.

    Example:
      >>> cache_filename("https://easylist.to/easylist/easylist.txt").startswith("easylist-")
      True
    """
    url_hash = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
    p = urlparse(url)
    basename = os.path.basename(p.path)
    base, ext = os.path.splitext(basename) if basename else (p.netloc or "list", "")
    safe = "".join(ch if (ch.isalnum() or ch in "-_.") else "_" for ch in base)
    return f"{safe or 'list'}-{url_hash}{ext}"


class FilterListCache:
    """
    TTL cache of raw list bodies keyed by source.

    Sources may be HTTP(S) URLs or local file paths. Remote bodies are held
    in a ``cachetools.TTLCache`` and, when ``cache_dir`` is set, mirrored to
    disk so a restart within the TTL does not re-download. A stale disk copy
    is used as a last resort when the network fetch fails.

    Inputs (constructor):
      - ttl_seconds: Freshness window for memory and disk copies.
      - cache_dir: Optional directory for on-disk copies.
      - enabled: When False every load goes to the source.
      - fetcher: Callable used to download URLs (defaults to fetch_text).

    Example use:
        >>> cache = FilterListCache(ttl_seconds=3600)
        >>> rules = cache.load_rules(FilterSources.EASYLIST)  # doctest: +SKIP
    """

    def __init__(
        self,
        ttl_seconds: int = ONE_DAY_SECONDS,
        cache_dir: Optional[str] = None,
        enabled: bool = True,
        fetcher: Callable[[str], str] = fetch_text,
    ) -> None:
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.cache_dir = cache_dir
        self.enabled = bool(enabled)
        self._fetch = fetcher
        self._lock = threading.Lock()
        self._memory: TTLCache = TTLCache(maxsize=64, ttl=self.ttl_seconds)
        if self.cache_dir:
            os.makedirs(self.cache_dir, exist_ok=True)

    def _disk_path(self, url: str) -> Optional[str]:
        if not self.cache_dir:
            return None
        return os.path.join(self.cache_dir, cache_filename(url))

    def _read_disk(self, path: Optional[str], *, allow_stale: bool) -> Optional[str]:
        if not path or not os.path.exists(path):
            return None
        try:
            age = time.time() - os.path.getmtime(path)
        except OSError:
            return None
        if age >= self.ttl_seconds and not allow_stale:
            return None
        try:
            return read_text_file(path)
        except FilterSourceUnavailable:
            return None

    def _write_disk(self, path: Optional[str], body: str) -> None:
        if not path:
            return
        try:
            with open(path, "w", encoding="utf-8", errors="ignore") as fh:
                fh.write(body)
        except OSError as e:
            logger.warning("Could not write list cache %s: %s", path, e)

    def load_text(self, source: str) -> str:
        """Brief: Return the raw body of ``source``, using cached copies when fresh.

        Inputs:
          - source: URL or local path.

        Outputs:
          - str: List body.

        Raises:
          - FilterSourceUnavailable: when the source cannot be read and no
            cached copy exists.
        """
        if not is_remote_source(source):
            return read_text_file(source)

        if self.enabled:
            with self._lock:
                body = self._memory.get(source)
            if body is not None:
                return body

        disk_path = self._disk_path(source) if self.enabled else None
        body = self._read_disk(disk_path, allow_stale=False)
        if body is None:
            try:
                body = self._fetch(source)
            except FilterSourceUnavailable:
                body = self._read_disk(disk_path, allow_stale=True)
                if body is None:
                    raise
                logger.warning("Using stale cached copy of %s", source)
            else:
                logger.info("Downloaded list %s (%d bytes)", source, len(body))
                self._write_disk(disk_path, body)

        if self.enabled:
            with self._lock:
                self._memory[source] = body
        return body

    def load_rules(self, source: str) -> List[str]:
        return parse_filter_rules(self.load_text(source))

    def load_domains(self, source: str) -> Set[str]:
        return parse_domain_list(self.load_text(source))

    def clear(self) -> None:
        with self._lock:
            self._memory.clear()
