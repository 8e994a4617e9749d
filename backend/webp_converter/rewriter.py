"""Rewrite JPEG/PNG references in markup to their WebP siblings when those exist on disk.

Only local filesystem checks happen here, so the transform is safe to run over
every outgoing page.
"""
import logging
import os
import re
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote, urlsplit

from webp_converter.conversion.codec import has_source_extension, webp_name

logger = logging.getLogger("webp_converter.rewriter")

URL_ATTRIBUTES = ("src", "srcset", "data-src", "data-srcset", "href", "poster", "content")

_SCHEME_RE = re.compile(r"^https?:", re.IGNORECASE)
# Tokens inside one attribute value: candidates are separated by whitespace and/or commas
_TOKEN_RE = re.compile(r"[^\s,]+")
# Whole absolute URL up to a terminator; trailing sentence punctuation is not part of it
_BARE_URL_RE = re.compile(r"https?://[^\s\"'<>()]*[^\s\"'<>().,;:!?]", re.IGNORECASE)


def _attribute_re(names) -> re.Pattern:
    alternatives = "|".join(re.escape(n) for n in sorted(names, key=len, reverse=True))
    return re.compile(
        r"(?P<prefix>(?<![\w-])(?:" + alternatives + r")\s*=\s*(?P<quote>[\"']))(?P<value>.*?)(?P=quote)",
        re.IGNORECASE | re.DOTALL,
    )


def _strip_scheme(url: str) -> str:
    """http://host/x, https://host/x and //host/x all become host/x."""
    return _SCHEME_RE.sub("", url, count=1).lstrip("/")


class ReferenceRewriter:
    """Maps public upload URLs under base_url to files under base_dir."""

    def __init__(self, base_url: str, base_dir: Union[str, Path], attributes=URL_ATTRIBUTES):
        self.base_url = base_url.rstrip("/")
        self.base_dir = Path(base_dir)
        self._base_host_path = _strip_scheme(self.base_url)
        self._base_path = urlsplit(self.base_url if "//" in self.base_url else "//" + self.base_url).path.rstrip("/")
        self._attr_re = _attribute_re(attributes)

    def resolve(self, url: str) -> Optional[Path]:
        """Local file for a public URL or path, or None when it is not under the uploads base."""
        url = url.split("#", 1)[0].split("?", 1)[0]
        if _SCHEME_RE.match(url) or url.startswith("//"):
            host_path = _strip_scheme(url)
            if host_path != self._base_host_path and not host_path.startswith(self._base_host_path + "/"):
                return None
            relative = host_path[len(self._base_host_path):]
        elif url.startswith("/") and self._base_path and url.startswith(self._base_path + "/"):
            relative = url[len(self._base_path):]
        else:
            relative = url
        relative = unquote(relative).lstrip("/")
        if not relative:
            return None
        base = os.path.abspath(self.base_dir)
        candidate = os.path.abspath(os.path.join(base, relative))
        if os.path.commonpath([base, candidate]) != base:
            return None
        return Path(candidate)

    def webp_exists(self, webp_url: str) -> bool:
        path = self.resolve(webp_url)
        return path is not None and path.is_file()

    def rewrite_url(self, url: str) -> str:
        """WebP URL when the converted file exists, otherwise the URL unchanged."""
        if not has_source_extension(url):
            return url
        webp_url = webp_name(url)
        if self.webp_exists(webp_url):
            logger.debug("Rewrote %s -> %s", url, webp_url)
            return webp_url
        return url

    def _rewrite_value(self, value: str) -> str:
        return _TOKEN_RE.sub(lambda m: self.rewrite_url(m.group(0)), value)

    def rewrite(self, text: str) -> str:
        """Rewrite references inside URL-bearing attributes (src, srcset, ...)."""
        if not text:
            return text

        def _sub(m: re.Match) -> str:
            value = m.group("value")
            new_value = self._rewrite_value(value)
            if new_value == value:
                return m.group(0)
            return m.group("prefix") + new_value + m.group("quote")

        return self._attr_re.sub(_sub, text)

    def rewrite_content(self, text: str) -> str:
        """Rewrite bare absolute URLs anywhere in text (post bodies, inline styles)."""
        if not text:
            return text
        return _BARE_URL_RE.sub(lambda m: self.rewrite_url(m.group(0)), text)
