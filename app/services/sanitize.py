"""
app/services/sanitize.py

Higiene de HTML vindo de servidores remotos, com BeautifulSoup.

- `strip_html()`    — texto puro (títulos, nomes, endereços, tags)
- `sanitize_html()` — HTML restrito a uma allowlist (descrições, bios)
"""

from urllib.parse import urlparse

from bs4 import BeautifulSoup

SAFE_HTML_TAGS = frozenset({
    "p", "br", "b", "i", "em", "strong", "u",
    "a",
    "ul", "ol", "li",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "blockquote", "code", "pre",
    "hr",
    "span", "div",
})

SAFE_HTML_ATTRS = {"a": frozenset({"href", "rel", "target"})}

SAFE_HTML_SCHEMES = frozenset({"http", "https", "mailto"})

# Removidos junto com o conteúdo, não apenas desembrulhados
_DROP_WITH_CONTENT = frozenset({
    "script", "style", "iframe", "object", "embed", "template", "noscript",
    "svg", "math", "textarea", "select",
})


def strip_html(value: str) -> str:
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup.find_all(_DROP_WITH_CONTENT):
        tag.decompose()
    return soup.get_text().strip()


def _is_safe_href(href: str) -> bool:
    scheme = urlparse(href.strip()).scheme.lower()
    return not scheme or scheme in SAFE_HTML_SCHEMES


def sanitize_html(value: str) -> str:
    soup = BeautifulSoup(value, "html.parser")

    for tag in soup.find_all(True):
        if tag.decomposed:
            continue
        if tag.name in _DROP_WITH_CONTENT:
            tag.decompose()
            continue
        if tag.name not in SAFE_HTML_TAGS:
            tag.unwrap()
            continue

        allowed = SAFE_HTML_ATTRS.get(tag.name, frozenset())
        tag.attrs = {k: v for k, v in tag.attrs.items() if k in allowed}

        if tag.name == "a":
            href = tag.attrs.get("href")
            if href is not None and not _is_safe_href(href):
                del tag.attrs["href"]
            tag.attrs["rel"] = "nofollow noopener noreferrer"
            tag.attrs["target"] = "_blank"

    return str(soup)
