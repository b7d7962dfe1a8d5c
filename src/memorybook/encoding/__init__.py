"""Encoding gateway: exact bundle encoding and per-item compression."""

from memorybook.encoding.gateway import CompressedItem, EncodingGateway
from memorybook.encoding.pdf import PdfEncodingGateway

__all__ = ["CompressedItem", "EncodingGateway", "PdfEncodingGateway"]
