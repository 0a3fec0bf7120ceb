"""Plain-text extraction for documents referenced from chat messages."""

import csv
import io
import logging
import os
import re

import docx
import httpx
import openpyxl
import pptx
import pypdf
import xlrd

logger = logging.getLogger(__name__)

DOCUMENT_MAX_LENGTH = 10000

_RTF_CONTROL_WORD = re.compile(r"\\[a-z]+\d*\s?")


def _strip_rtf(text: str) -> str:
    text = _RTF_CONTROL_WORD.sub("", text)
    text = re.sub(r"[{}]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def _format_sheets(sheets) -> str:
    """Render ``(name, rows)`` pairs as tab-separated blocks.

    Each sheet becomes ``[Sheet: name]`` followed by one line per
    non-empty row.  Sheets without rows are skipped.
    """
    blocks = []
    for name, rows in sheets:
        lines = []
        for row in rows:
            cells = ["" if value is None else str(value) for value in row]
            if any(cells):
                lines.append("\t".join(cells))
        if lines:
            blocks.append(f"[Sheet: {name}]\n" + "\n".join(lines))
    return "\n\n".join(blocks)


def _pdf_text(data: bytes) -> str:
    reader = pypdf.PdfReader(io.BytesIO(data))
    return "\n".join(page.extract_text() or "" for page in reader.pages).strip()


def _docx_text(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    return "\n".join(p.text for p in document.paragraphs if p.text.strip())


def _xlsx_text(data: bytes) -> str:
    workbook = openpyxl.load_workbook(
        io.BytesIO(data), read_only=True, data_only=True,
    )
    try:
        return _format_sheets(
            (sheet.title, sheet.iter_rows(values_only=True))
            for sheet in workbook.worksheets
        )
    finally:
        workbook.close()


def _xls_text(data: bytes) -> str:
    book = xlrd.open_workbook(file_contents=data)
    return _format_sheets(
        (sheet.name, (sheet.row_values(i) for i in range(sheet.nrows)))
        for sheet in book.sheets()
    )


def _csv_text(data: bytes) -> str:
    reader = csv.reader(io.StringIO(data.decode("utf-8-sig", errors="replace")))
    return _format_sheets([("Sheet1", reader)])


def _pptx_text(data: bytes) -> str:
    presentation = pptx.Presentation(io.BytesIO(data))
    runs = []
    for slide in presentation.slides:
        for shape in slide.shapes:
            if not shape.has_text_frame:
                continue
            for paragraph in shape.text_frame.paragraphs:
                runs.extend(run.text for run in paragraph.runs if run.text)
    return " ".join(runs).strip()


def _rtf_text(data: bytes) -> str:
    return _strip_rtf(data.decode("utf-8", errors="replace"))


# extension -> (label used in markers, what an empty file lacks, extractor)
EXTRACTORS = {
    ".pdf": ("PDF", "text", _pdf_text),
    ".docx": ("Word", "text", _docx_text),
    ".xlsx": ("Excel", "data", _xlsx_text),
    ".xls": ("Excel", "data", _xls_text),
    ".csv": ("CSV", "data", _csv_text),
    ".pptx": ("PowerPoint", "text", _pptx_text),
    ".rtf": ("RTF", "text", _rtf_text),
}


def parse_document(data: bytes, name: str) -> str:
    """Extract text from a downloaded document.

    The file extension of *name* picks the extractor.  Spreadsheets
    and CSV files come back as ``[Sheet: name]`` blocks of
    tab-separated rows.  A file with nothing to extract, or one its
    extractor cannot read, yields a bracketed marker such as
    ``[PDF file has no text content]`` or ``[Excel parsing failed]``
    so the prompt still says what was attached.  Unknown extensions
    are decoded as UTF-8, replacing undecodable bytes.
    """
    ext = os.path.splitext(name)[1].lower()
    if ext not in EXTRACTORS:
        return data.decode("utf-8", errors="replace")

    label, missing, extract = EXTRACTORS[ext]
    try:
        text = extract(data)
    except Exception as e:
        logger.error(f"{label} parsing failed [{name}]: {e}")
        return f"[{label} parsing failed]"
    if not text:
        logger.debug(f"{name} has no {missing} content")
        return f"[{label} file has no {missing} content]"
    return text


async def fetch_document(client: httpx.AsyncClient, url: str, name: str) -> str:
    """Download *url* and return its text.

    Raises:
        httpx.HTTPError: The download failed or returned an error status.
    """
    response = await client.get(url)
    response.raise_for_status()
    logger.debug(f"Fetched {name} ({len(response.content)} bytes)")
    return parse_document(response.content, name)


def format_document_prompt(
    name: str, content: str, max_length: int = DOCUMENT_MAX_LENGTH,
) -> str:
    """Frame document text for inclusion in a prompt, truncating long ones."""
    if len(content) > max_length:
        content = content[:max_length] + "\n...(content truncated)"
    return f"\n\n--- Document: {name} ---\n{content}\n--- End of Document ---\n\n"
