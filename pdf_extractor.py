import logging
from io import BytesIO
from typing import Dict, Any, Optional, List, Iterable

import fitz  # PyMuPDF
import PyPDF2

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class PDFExtractor:
    """PDF access helpers: page counts, password handling and text extraction"""

    def __init__(self):
        self.supported_formats = ['application/pdf']

    def _open(self, pdf_content: bytes):
        return fitz.open(stream=pdf_content, filetype="pdf")

    def page_count(self, pdf_content: bytes, password: Optional[str] = None) -> int:
        doc = self._open(pdf_content)
        try:
            if doc.needs_pass and password:
                doc.authenticate(password)
            return doc.page_count
        finally:
            doc.close()

    def is_password_protected(self, pdf_content: bytes) -> bool:
        doc = self._open(pdf_content)
        try:
            return bool(doc.needs_pass)
        finally:
            doc.close()

    def unlock(self, pdf_content: bytes, password: str) -> bool:
        """True if `password` opens the document"""
        if not password:
            return False
        doc = self._open(pdf_content)
        try:
            if not doc.needs_pass:
                return True
            return bool(doc.authenticate(str(password)))
        finally:
            doc.close()

    def open_document(self, pdf_content: bytes, passwords: Iterable[Optional[str]] = ()) -> Dict[str, Any]:
        """
        Open a PDF, trying each candidate password in order when it is
        encrypted. The caller owns the returned document and must close it.
        """
        doc = self._open(pdf_content)

        if not doc.needs_pass:
            return {"success": True, "document": doc, "password_used": None}

        for password in passwords:
            if password and doc.authenticate(str(password)):
                logger.info("PDF unlocked with candidate password")
                return {"success": True, "document": doc, "password_used": str(password)}

        doc.close()
        return {
            "success": False,
            "requires_password": True,
            "error": "PDF is password protected and no working password was found"
        }

    def decrypt(self, pdf_content: bytes, password: str) -> bytes:
        """Return an unencrypted copy of the PDF"""
        doc = self._open(pdf_content)
        try:
            if doc.needs_pass and not doc.authenticate(str(password)):
                raise ValueError("Incorrect PDF password")
            return doc.tobytes(encryption=fitz.PDF_ENCRYPT_NONE)
        finally:
            doc.close()

    def extract_text_from_pdf(self, pdf_content: bytes, password: Optional[str] = None) -> str:
        """Extract text from PDF using PyMuPDF for better accuracy"""
        try:
            doc = self._open(pdf_content)
            if doc.needs_pass and password:
                doc.authenticate(password)
            text = ""
            for page_num in range(len(doc)):
                page = doc.load_page(page_num)
                text += page.get_text()
            doc.close()
            return text.strip()
        except Exception as e:
            logger.error(f"Error extracting text from PDF: {str(e)}")
            # Fallback to PyPDF2
            try:
                pdf_reader = PyPDF2.PdfReader(BytesIO(pdf_content))
                if pdf_reader.is_encrypted and password:
                    pdf_reader.decrypt(password)
                text = ""
                for page in pdf_reader.pages:
                    text += page.extract_text() or ""
                return text.strip()
            except Exception as e2:
                logger.error(f"Fallback PDF extraction also failed: {str(e2)}")
                return ""

    def extract_text_by_page(self, pdf_content: bytes, pages: Optional[List[int]] = None,
                             password: Optional[str] = None) -> Dict[int, str]:
        """
        Text of the requested 1-based pages (all pages when `pages` is None).
        Out-of-range page numbers are skipped.
        """
        doc = self._open(pdf_content)
        try:
            if doc.needs_pass:
                if not password or not doc.authenticate(str(password)):
                    raise ValueError("PDF is password protected")

            total = doc.page_count
            wanted = pages if pages is not None else range(1, total + 1)

            texts = {}
            for page_number in wanted:
                if 1 <= page_number <= total:
                    texts[page_number] = doc.load_page(page_number - 1).get_text().strip()
            return texts
        finally:
            doc.close()
