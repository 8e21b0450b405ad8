"""Text extraction from uploaded documents and fetched source URLs."""

from __future__ import annotations

from dataclasses import dataclass
import io
import ipaddress
import logging
import mimetypes
from pathlib import Path
import socket
from typing import Callable, Iterable, Sequence
from urllib.parse import urljoin, urlparse
from uuid import uuid4

import httpx
from bs4 import BeautifulSoup
from docx import Document as DocxDocument
from openpyxl import load_workbook
from pypdf import PdfReader

from .config import Settings
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"
ANALYSIS_MAX_URLS = 10
ANALYSIS_CHARS_PER_URL = 5_000
ANALYSIS_MAX_CHARS = 30_000

_TEXTUAL_TYPES = {
    "application/json",
    "application/xml",
    "application/xhtml+xml",
    "application/javascript",
}


@dataclass(slots=True)
class ExtractedDocument:
    text: str
    title: str | None
    content_type: str | None


@dataclass(slots=True)
class SourceDocument:
    """An uploaded document kept alongside URLs as source material."""

    id: str
    filename: str
    title: str
    text: str
    content_type: str | None = None


@dataclass(slots=True)
class FallbackContent:
    title: str
    url: str
    content: str


def extract_document(filename: str, data: bytes, content_type: str | None = None) -> ExtractedDocument:
    """Extract plain text and a best-effort title from an uploaded file."""

    suffix = Path(filename).suffix.lower()
    guessed_type = content_type or mimetypes.guess_type(filename)[0]

    if suffix in {".md", ".markdown"}:
        text = data.decode("utf-8", errors="ignore")
        return ExtractedDocument(
            text=text, title=_derive_markdown_title(text), content_type=guessed_type or "text/markdown"
        )

    if suffix in {".txt", ".csv", ""} or (
        guessed_type and guessed_type.startswith("text/") and "html" not in guessed_type.lower()
    ):
        text = data.decode("utf-8", errors="ignore")
        return ExtractedDocument(
            text=text, title=_derive_plain_title(text), content_type=guessed_type or "text/plain"
        )

    if suffix == ".pdf":
        try:
            reader = PdfReader(io.BytesIO(data))
            texts = [page.extract_text() or "" for page in reader.pages]
            metadata = reader.metadata
            metadata_title = metadata.title if metadata is not None and metadata.title else None
        except Exception as exc:
            raise ValueError(f"Failed to extract text from PDF: {exc}") from exc
        combined = "\n\n".join(filter(None, texts))
        return ExtractedDocument(
            text=combined,
            title=metadata_title or _derive_plain_title(combined),
            content_type="application/pdf",
        )

    if suffix == ".docx":
        try:
            document = DocxDocument(io.BytesIO(data))
        except Exception as exc:
            raise ValueError(f"Failed to extract text from DOCX: {exc}") from exc
        paragraphs = [paragraph.text.strip() for paragraph in document.paragraphs if paragraph.text.strip()]
        text = "\n\n".join(paragraphs)
        base_title = document.core_properties.title or (paragraphs[0] if paragraphs else None)
        return ExtractedDocument(
            text=text,
            title=(base_title or "").strip() or _derive_plain_title(text),
            content_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        )

    if suffix == ".xlsx":
        try:
            workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        except Exception as exc:
            raise ValueError(f"Failed to read spreadsheet: {exc}") from exc
        lines: list[str] = []
        for sheet in workbook.worksheets:
            lines.append(f"## {sheet.title}")
            for row in sheet.iter_rows(values_only=True):
                cells = ["" if value is None else str(value).strip() for value in row]
                if any(cells):
                    lines.append("\t".join(cells).rstrip())
        workbook.close()
        return ExtractedDocument(
            text="\n".join(lines),
            title=Path(filename).stem or None,
            content_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )

    if suffix in {".html", ".htm"} or (guessed_type and "html" in guessed_type):
        title, text = html_to_text(data)
        return ExtractedDocument(
            text=text, title=title or _derive_plain_title(text), content_type="text/html"
        )

    text = data.decode("utf-8", errors="ignore")
    return ExtractedDocument(
        text=text, title=_derive_plain_title(text), content_type=guessed_type or "text/plain"
    )


def html_to_text(data: bytes | str) -> tuple[str | None, str]:
    """Strip scripts and styles from HTML and return ``(title, text)``."""

    soup = BeautifulSoup(data, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.extract()
    title = soup.title.string.strip() if soup.title and soup.title.string else None
    lines = [line.strip() for line in soup.get_text(separator="\n").splitlines()]
    return title, "\n".join(line for line in lines if line)


def format_initial_message(source_material: str) -> str:
    return f"Source material:\n{source_material}\n\nReturn ONLY JSON in the expected shape."


def make_source_document(filename: str, data: bytes, content_type: str | None = None) -> SourceDocument:
    extracted = extract_document(filename, data, content_type)
    if not extracted.text.strip():
        raise ValueError(f"No text could be extracted from {filename}")
    return SourceDocument(
        id=uuid4().hex,
        filename=filename,
        title=extracted.title or filename,
        text=extracted.text,
        content_type=extracted.content_type,
    )


class SourceFetcher:
    """Fetches source URLs as plain text for skill building and answering.

    Every URL, including each redirect target, must resolve to public
    addresses only; loopback, private, link-local, reserved and multicast
    targets are refused before any request is sent.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        metrics: MetricsRecorder | None = None,
        resolver: Callable[[str], Sequence[str]] | None = None,
    ) -> None:
        self.settings = settings
        self._metrics = metrics or MetricsRecorder(enabled=False)
        self._resolve = resolver or _resolve_host

    def fetch_url_text(self, url: str, *, max_chars: int | None = None) -> str | None:
        """Return the text behind ``url`` or ``None`` when it cannot be used as a source."""

        limit = max_chars or self.settings.fetch_max_chars
        current = url
        redirects = 0
        while True:
            if not self._is_allowed(current):
                return None
            try:
                with self._metrics.track_timing("source.fetch.duration"):
                    response = httpx.get(
                        current,
                        timeout=self.settings.fetch_timeout,
                        follow_redirects=False,
                        headers={"User-Agent": self.settings.fetch_user_agent},
                    )
            except httpx.HTTPError as exc:
                logger.warning("source.fetch.failed url=%s error=%s", current, exc)
                self._metrics.increment("source.fetch.failures", reason="transport")
                return None
            location = response.headers.get("location")
            if 300 <= response.status_code < 400 and location:
                redirects += 1
                if redirects > self.settings.fetch_max_redirects:
                    logger.warning("source.fetch.rejected url=%s reason=redirects", url)
                    self._metrics.increment("source.fetch.failures", reason="redirects")
                    return None
                current = urljoin(current, location)
                continue
            break

        if response.status_code >= 400:
            logger.warning("source.fetch.failed url=%s status=%s", current, response.status_code)
            self._metrics.increment("source.fetch.failures", reason="status")
            return None

        content_type = (response.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
        if content_type and not (content_type.startswith("text/") or content_type in _TEXTUAL_TYPES):
            logger.warning("source.fetch.rejected url=%s content_type=%s", current, content_type)
            return None

        if "html" in content_type or (not content_type and "<html" in response.text[:500].lower()):
            _, text = html_to_text(response.text)
        else:
            text = response.text
        text = text.strip()
        if not text:
            return None
        logger.info("source.fetch.completed url=%s chars=%s", url, len(text))
        return text[:limit]

    def _is_allowed(self, url: str) -> bool:
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            logger.warning("source.fetch.rejected url=%s reason=scheme", url)
            return False
        if _is_ip_literal(parsed.hostname):
            addresses: Sequence[str] = [parsed.hostname]
        else:
            try:
                addresses = self._resolve(parsed.hostname)
            except OSError as exc:
                logger.warning("source.fetch.rejected url=%s reason=dns error=%s", url, exc)
                return False
        if not addresses or not all(_is_public_address(address) for address in addresses):
            logger.warning("source.fetch.rejected url=%s reason=ssrf", url)
            self._metrics.increment("source.fetch.failures", reason="ssrf")
            return False
        return True

    def build_source_material(
        self,
        *,
        source_text: str | None = None,
        urls: Iterable[str] = (),
        documents: Sequence[SourceDocument] = (),
    ) -> str:
        """Merge free text, fetched URLs and documents into one source block."""

        sections: list[str] = []
        if source_text and source_text.strip():
            sections.append(source_text.strip())
        for url in urls:
            if not url or not url.strip():
                continue
            text = self.fetch_url_text(url.strip())
            if text:
                sections.append(f"Source: {url.strip()}\n{text}")
        for document in documents:
            if document.text.strip():
                sections.append(f"Document: {document.title}\n{document.text.strip()}")
        if not sections:
            raise ValueError("Unable to load any content from the provided sources.")
        return SECTION_SEPARATOR.join(sections)[: self.settings.source_max_chars]

    def fetch_for_analysis(self, urls: Sequence[str]) -> tuple[str, list[str]]:
        """Fetch a short preview of each URL for topic analysis."""

        sections: list[str] = []
        fetched: list[str] = []
        for url in list(urls)[:ANALYSIS_MAX_URLS]:
            text = self.fetch_url_text(url, max_chars=ANALYSIS_CHARS_PER_URL)
            if text:
                sections.append(f"Source: {url}\n{text}")
                fetched.append(url)
        return SECTION_SEPARATOR.join(sections)[:ANALYSIS_MAX_CHARS], fetched

    def fetch_fallback_content(self, urls: Iterable[str]) -> list[FallbackContent]:
        results: list[FallbackContent] = []
        for url in urls:
            text = self.fetch_url_text(url)
            if text:
                results.append(FallbackContent(title=urlparse(url).netloc or url, url=url, content=text))
        return results


def _resolve_host(hostname: str) -> list[str]:
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return [info[4][0] for info in infos]


def _is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True


def _is_public_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def _derive_markdown_title(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("#"):
            return stripped.lstrip("#").strip()[:160] or None
        return stripped[:160]
    return None


def _derive_plain_title(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped[:160]
    return None


__all__ = [
    "ExtractedDocument",
    "FallbackContent",
    "SECTION_SEPARATOR",
    "SourceDocument",
    "SourceFetcher",
    "extract_document",
    "format_initial_message",
    "html_to_text",
    "make_source_document",
]
