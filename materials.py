"""Course material ingestion: pasted text, .txt and .pdf uploads.

PDF extraction is the expensive step, so its output is cached under the
SHA-256 of the uploaded bytes; uploading the same file again (under any
name) reuses the cached text.
"""

import hashlib
import io
import os
import threading
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from errors import ValidationError

TEXT_TYPES = ("text/plain",)
PDF_TYPES = ("application/pdf",)


def material_key(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def _kind_of(filename: str, content_type: Optional[str]) -> Optional[str]:
    name = (filename or "").lower()
    ctype = (content_type or "").split(";")[0].strip().lower()
    if name.endswith(".pdf") or ctype in PDF_TYPES:
        return "pdf"
    if name.endswith(".txt") or ctype in TEXT_TYPES:
        return "txt"
    return None


class MaterialExtractor:

    def __init__(self, max_bytes: int = 10 * 1024 * 1024, cache_size: int = 32):
        self.max_bytes = int(max_bytes)
        self.cache_size = int(cache_size)
        self._cache: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.Lock()
        self.pdf_extractions = 0

    @classmethod
    def from_env(cls) -> "MaterialExtractor":
        max_mb = float(os.getenv("UPLOAD_MAX_MB") or 10)
        return cls(max_bytes=int(max_mb * 1024 * 1024), cache_size=int(os.getenv("PDF_CACHE_SIZE") or 32))

    def _cache_get(self, key: str) -> Optional[str]:
        with self._lock:
            text = self._cache.get(key)
            if text is not None:
                self._cache.move_to_end(key)
            return text

    def _cache_put(self, key: str, text: str):
        with self._lock:
            self._cache[key] = text
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    def _extract_pdf(self, data: bytes) -> str:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [(p.extract_text() or "") for p in reader.pages]
        except (PdfReadError, ValueError, OSError) as e:
            raise ValidationError(f"Could not read the PDF file: {e}")
        self.pdf_extractions += 1
        return "\n\n".join(t.strip() for t in pages if t and t.strip())

    def extract(self, data: bytes, filename: str = "", content_type: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
        """Returns (text, meta). meta: kind, key, cached, sourceName."""
        if not data:
            raise ValidationError("The uploaded file is empty.")
        if len(data) > self.max_bytes:
            limit_mb = self.max_bytes / (1024 * 1024)
            raise ValidationError(f"File too large. Please upload a file smaller than {limit_mb:g}MB.")
        kind = _kind_of(filename, content_type)
        if kind is None:
            raise ValidationError(
                f"Files of type '{content_type or filename}' are not supported. "
                "Please upload a .txt or .pdf file, or paste content directly."
            )

        key = material_key(data)
        meta = {"kind": kind, "key": key, "cached": False, "sourceName": filename or None}
        if kind == "txt":
            text = data.decode("utf-8", errors="ignore")
        else:
            text = self._cache_get(key)
            if text is not None:
                meta["cached"] = True
            else:
                text = self._extract_pdf(data)
                print(f"[materials] extracted {len(text)} chars from '{filename}' ({key[:19]})")
                self._cache_put(key, text)

        if not text.strip():
            raise ValidationError("No readable text was found in the file.")
        return text, meta


__all__ = ["MaterialExtractor", "material_key"]
