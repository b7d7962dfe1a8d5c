"""PDF encoding gateway backed by Pillow and pypdf.

Image items are re-encoded as JPEG at the quality and width of the
selected compression level, then wrapped as one PDF page each. PDF and
document items are appended page by page. An item whose source does not
decode is replaced by a placeholder page naming it. All CPU-bound work
runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import io
import logging
import textwrap
from pathlib import Path
from typing import Sequence

from PIL import Image, ImageDraw, ImageFont, ImageOps
from pypdf import PageObject, PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from memorybook.constants import A4_HEIGHT_PT, A4_WIDTH_PT, IMAGE_ENCODING
from memorybook.encoding.gateway import CompressedItem
from memorybook.exceptions import TransientEncodingError
from memorybook.models import CompressionLevel, Item, ItemKind

logger = logging.getLogger(__name__)

_DECODE_ERRORS = (OSError, ValueError, PdfReadError)

PDF_MAGIC = b"%PDF"
PLACEHOLDER_QUALITY = 75


# ---------------------------------------------------------------------------
# Synchronous helpers (run via asyncio.to_thread)
# ---------------------------------------------------------------------------


def _read_source(item: Item) -> bytes:
    if not item.source:
        raise TransientEncodingError(f"Item {item.item_id} has no source to read")
    return Path(item.source).read_bytes()


def _label(item: Item) -> str:
    return Path(item.source).name if item.source else item.item_id


def compress_image(data: bytes, level: CompressionLevel) -> bytes:
    """Re-encode image bytes as JPEG using the level's quality and max width."""
    quality, max_width = IMAGE_ENCODING[level.value]
    with Image.open(io.BytesIO(data)) as img:
        img = ImageOps.exif_transpose(img).convert("RGB")
        if img.width > max_width:
            height = round(img.height * max_width / img.width)
            img = img.resize((max_width, height), Image.Resampling.LANCZOS)
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def _pdf_from_image(img: Image.Image, quality: int, page_width: float) -> bytes:
    buf = io.BytesIO()
    dpi = img.width * 72.0 / page_width
    img.save(buf, format="PDF", quality=quality, resolution=dpi)
    return buf.getvalue()


def _image_page(
    data: bytes, level: CompressionLevel, page_width: float = A4_WIDTH_PT
) -> PdfReader:
    """Wrap an image as a single PDF page *page_width* points wide."""
    quality, _ = IMAGE_ENCODING[level.value]
    with Image.open(io.BytesIO(data)) as img:
        pdf = _pdf_from_image(img.convert("RGB"), quality, page_width)
    return PdfReader(io.BytesIO(pdf))


def placeholder_pdf(name: str, reason: str, page_width: float = A4_WIDTH_PT) -> bytes:
    """One A4 page telling the reader that *name* could not be included."""
    width = round(page_width)
    height = round(page_width * A4_HEIGHT_PT / A4_WIDTH_PT)
    page = Image.new("L", (width, height), color=255)
    draw = ImageDraw.Draw(page)
    font = ImageFont.load_default()

    draw.rectangle((40, 60, width - 40, 200), outline=120, width=2)
    lines = [f"Could not include: {name}", ""]
    lines += textwrap.wrap(f"Reason: {reason}", width=80)[:4]
    y = 80
    for line in lines:
        draw.text((60, y), line, fill=0, font=font)
        y += 22
    return _pdf_from_image(page, PLACEHOLDER_QUALITY, page_width)


def _is_pdf(data: bytes) -> bool:
    return data.startswith(PDF_MAGIC)


def _pages_for(
    kind: ItemKind, data: bytes, level: CompressionLevel, page_width: float
) -> list[PageObject]:
    # Undecodable images are cached as placeholder PDFs.
    if kind is ItemKind.IMAGE and not _is_pdf(data):
        reader = _image_page(data, level, page_width)
    else:
        reader = PdfReader(io.BytesIO(data))
    return list(reader.pages)


def build_bundle(
    parts: Sequence[tuple[ItemKind, bytes, str]],
    title: str,
    level: CompressionLevel,
    page_width: float = A4_WIDTH_PT,
) -> bytes:
    """Merge item representations into a single PDF and return its bytes.

    An item that fails to decode is replaced by a placeholder page so the
    rest of the bundle is still produced.
    """
    writer = PdfWriter()
    for kind, data, label in parts:
        try:
            pages = _pages_for(kind, data, level, page_width)
        except _DECODE_ERRORS as exc:
            logger.warning("Could not include %s in '%s': %s", label, title, exc)
            placeholder = placeholder_pdf(label, str(exc), page_width)
            pages = list(PdfReader(io.BytesIO(placeholder)).pages)
        for page in pages:
            writer.add_page(page)
    writer.add_metadata({"/Title": title, "/Producer": "memorybook"})
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def count_pages(data: bytes) -> int:
    return len(PdfReader(io.BytesIO(data)).pages)


def prepare_item(
    raw: bytes,
    kind: ItemKind,
    level: CompressionLevel,
    label: str,
    page_width: float = A4_WIDTH_PT,
) -> bytes:
    """Compressed representation of one item's source bytes.

    Sources that do not decode become a placeholder PDF page.
    """
    try:
        if kind is ItemKind.IMAGE:
            return compress_image(raw, level)
        count_pages(raw)
        return raw
    except _DECODE_ERRORS as exc:
        logger.warning("Could not decode %s, using a placeholder page: %s", label, exc)
        return placeholder_pdf(label, str(exc), page_width)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class PdfEncodingGateway:
    """Local :class:`~memorybook.encoding.gateway.EncodingGateway` implementation.

    Usage::

        gateway = PdfEncodingGateway()
        compressed = await gateway.compress(item, CompressionLevel.HIGH)
        bundle = await gateway.encode(items, "Grandma's letters (Part 1)", level)
    """

    def __init__(self, page_width: float = A4_WIDTH_PT) -> None:
        self.page_width = page_width

    async def compress(self, item: Item, level: CompressionLevel) -> CompressedItem:
        try:
            raw = await asyncio.to_thread(_read_source, item)
        except OSError as exc:
            raise TransientEncodingError(f"Could not read {item.item_id}: {exc}") from exc
        data = await asyncio.to_thread(
            prepare_item, raw, item.kind, level, _label(item), self.page_width
        )
        logger.debug(
            "Compressed %s (%s): %d -> %d bytes",
            item.item_id,
            level.value,
            item.raw_size,
            len(data),
        )
        return CompressedItem(data=data, size=len(data))

    async def encode(
        self, items: Sequence[Item], title: str, level: CompressionLevel
    ) -> bytes:
        parts: list[tuple[ItemKind, bytes, str]] = []
        for item in items:
            if item.is_current(level):
                data = item.cached.data  # type: ignore[union-attr]
            else:
                data = (await self.compress(item, level)).data
            parts.append((item.kind, data, _label(item)))

        try:
            bundle = await asyncio.to_thread(build_bundle, parts, title, level, self.page_width)
        except _DECODE_ERRORS as exc:
            raise TransientEncodingError(f"Could not encode '{title}': {exc}") from exc
        logger.debug("Encoded '%s': %d items, %d bytes", title, len(items), len(bundle))
        return bundle

    async def page_count(self, data: bytes) -> int:
        try:
            return await asyncio.to_thread(count_pages, data)
        except _DECODE_ERRORS as exc:
            raise TransientEncodingError(f"Could not count pages: {exc}") from exc
