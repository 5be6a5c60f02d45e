# statement_analyzer/extract.py
import io
import logging
import math
import re
from typing import List, Optional

import pdfplumber
from pypdf import PdfReader
from pdf2image import convert_from_bytes
import pytesseract

from .errors import DocumentError
from .schema import Document, ExtractionJob, PageRange

logger = logging.getLogger("statement-analyzer.extract")

PAGES_COUNT_RE = re.compile(rb"/Type\s*/Pages\b[\s\S]*?/Count\s+(\d+)")
PAGE_MARKER_RE = re.compile(rb"/Type\s*/Page\b")


# -------- Page counting / partitioning --------

def _structural_page_count(raw_bytes: bytes) -> int:
    """
    Estimate the page count from the raw object stream. The last /Pages
    /Count wins (the root tree is usually written last); otherwise count
    individual /Type /Page markers.
    """
    count_estimate = 0
    for m in PAGES_COUNT_RE.finditer(raw_bytes):
        c = int(m.group(1))
        if c > 0:
            count_estimate = c
    if count_estimate > 0:
        return count_estimate
    return len(PAGE_MARKER_RE.findall(raw_bytes))


def count_pages(raw_bytes: bytes) -> int:
    """Page count from pypdf, falling back to a structural scan; never below 1."""
    num_pages = 0
    try:
        num_pages = len(PdfReader(io.BytesIO(raw_bytes)).pages)
    except Exception as e:
        logger.warning("pypdf could not count pages (%s: %s); using structural scan", type(e).__name__, e)
    if not num_pages:
        num_pages = _structural_page_count(raw_bytes)
    return num_pages or 1


def load_document(raw_bytes: bytes, filename: str = "statement.pdf") -> Document:
    return Document(content=raw_bytes, page_count=count_pages(raw_bytes), filename=filename)


def partition_pages(page_count: int, chunk_size: int = 2) -> List[PageRange]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    page_count = max(page_count, 1)
    ranges: List[PageRange] = []
    for idx in range(math.ceil(page_count / chunk_size)):
        start = idx * chunk_size + 1
        ranges.append(PageRange(start=start, end=min(start + chunk_size - 1, page_count), index=idx))
    return ranges


def build_jobs(ranges: List[PageRange]) -> List[ExtractionJob]:
    return [ExtractionJob(range=r, is_first=r.start == 1) for r in ranges]


# -------- Page text (for backends without native PDF input) --------

SCANNED_RATIO = 0.6


def open_reader(raw_bytes: bytes, password: Optional[str] = None) -> PdfReader:
    """pypdf reader, decrypted with `password` when the file is protected."""
    reader = PdfReader(io.BytesIO(raw_bytes))
    if reader.is_encrypted:
        if not password:
            raise DocumentError("PDF is password-protected; no password provided.")
        if reader.decrypt(password) in (0, False, None):
            raise DocumentError("Incorrect PDF password.")
    return reader


def extract_text_by_page(raw_bytes: bytes, password: Optional[str] = None) -> List[str]:
    try:
        with pdfplumber.open(io.BytesIO(raw_bytes), password=password) as pdf:
            return [(p.extract_text() or "").strip() for p in pdf.pages]
    except Exception as e:
        # pypdf is less table-aware but opens more files
        logger.info("pdfplumber failed (%s); falling back to pypdf text extraction", type(e).__name__)
    return [(page.extract_text() or "").strip() for page in open_reader(raw_bytes, password).pages]


def blank_pages(pages_text: List[str]) -> List[int]:
    """1-based numbers of pages without a text layer."""
    return [n for n, text in enumerate(pages_text, start=1) if not text]


def ocr_page(raw_bytes: bytes, page_number: int) -> str:
    images = convert_from_bytes(raw_bytes, dpi=300, first_page=page_number, last_page=page_number)
    return "\n".join((pytesseract.image_to_string(img) or "").strip() for img in images).strip()


def get_pages_text(raw_bytes: bytes, password: Optional[str] = None) -> List[str]:
    open_reader(raw_bytes, password)
    pages_text = extract_text_by_page(raw_bytes, password)

    # Mostly blank means a scan; OCR only the blank pages
    blanks = blank_pages(pages_text)
    if pages_text and len(blanks) / len(pages_text) > SCANNED_RATIO:
        logger.info("%d/%d pages have no text layer; running OCR", len(blanks), len(pages_text))
        for n in blanks:
            pages_text[n - 1] = ocr_page(raw_bytes, n)
    return pages_text


def pages_in_range(pages_text: List[str], page_range: PageRange) -> dict:
    """1-based page number -> text for the pages of one chunk that exist."""
    return {
        n: pages_text[n - 1]
        for n in range(page_range.start, page_range.end + 1)
        if n - 1 < len(pages_text)
    }
