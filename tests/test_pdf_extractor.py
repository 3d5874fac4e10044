import pytest

from pdf_extractor import PDFExtractor


@pytest.fixture
def extractor():
    return PDFExtractor()


class TestPasswords:
    def test_plain_pdf(self, extractor, pdf_bytes):
        assert extractor.page_count(pdf_bytes) == 3
        assert extractor.is_password_protected(pdf_bytes) is False
        assert extractor.unlock(pdf_bytes, "anything") is True

    def test_encrypted_pdf(self, extractor, encrypted_pdf_bytes):
        assert extractor.is_password_protected(encrypted_pdf_bytes) is True
        assert extractor.unlock(encrypted_pdf_bytes, "5678") is True
        assert extractor.unlock(encrypted_pdf_bytes, "0000") is False
        assert extractor.unlock(encrypted_pdf_bytes, "") is False

    def test_open_tries_candidates_in_order(self, extractor, encrypted_pdf_bytes):
        opened = extractor.open_document(encrypted_pdf_bytes, [None, "0000", 5678])

        assert opened["success"] is True
        assert opened["password_used"] == "5678"
        opened["document"].close()

    def test_open_without_working_password(self, extractor, encrypted_pdf_bytes):
        opened = extractor.open_document(encrypted_pdf_bytes, ["0000"])
        assert opened["success"] is False
        assert opened["requires_password"] is True

    def test_decrypt(self, extractor, encrypted_pdf_bytes):
        decrypted = extractor.decrypt(encrypted_pdf_bytes, "5678")
        assert extractor.is_password_protected(decrypted) is False

        with pytest.raises(ValueError):
            extractor.decrypt(encrypted_pdf_bytes, "wrong")


class TestText:
    def test_full_text(self, extractor, pdf_bytes):
        text = extractor.extract_text_from_pdf(pdf_bytes)
        assert "Statement page one" in text
        assert "Statement page three" in text

    def test_selected_pages(self, extractor, pdf_bytes):
        texts = extractor.extract_text_by_page(pdf_bytes, [1, 3, 9])

        assert list(texts) == [1, 3]
        assert texts[3] == "Statement page three"

    def test_locked_pages(self, extractor, encrypted_pdf_bytes):
        with pytest.raises(ValueError):
            extractor.extract_text_by_page(encrypted_pdf_bytes, [1])

        assert extractor.extract_text_by_page(encrypted_pdf_bytes, [1], "5678") == {1: "Locked statement"}
