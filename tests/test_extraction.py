import unittest

from errors import ExtractionFailure
from extraction import base_media_type, extract_text, resolve_media_type
from pdfs import blank_pdf, text_pdf


class TestExtractText(unittest.TestCase):
    def test_plain_text_is_decoded_as_utf8(self):
        self.assertEqual(extract_text("Ingresos crecieron 10%.".encode("utf-8"), "text/plain"), "Ingresos crecieron 10%.")

    def test_media_type_parameters_are_ignored(self):
        self.assertEqual(extract_text(b"hello", "text/plain; charset=utf-8"), "hello")

    def test_invalid_utf8_bytes_are_dropped(self):
        self.assertEqual(extract_text(b"caf\xff\xfee", "text/plain"), "cafe")

    def test_unsupported_media_type_yields_empty_text(self):
        self.assertEqual(extract_text(b"\x89PNG\r\n", "image/png"), "")
        self.assertEqual(extract_text(b"whatever", None), "")

    def test_pdf_text(self):
        text = extract_text(text_pdf("Quarterly revenue grew"), "application/pdf")
        self.assertIn("Quarterly revenue grew", text)

    def test_pdf_without_text_layer_yields_empty_text(self):
        self.assertEqual(extract_text(blank_pdf(), "application/pdf"), "")

    def test_corrupted_pdf_raises(self):
        with self.assertRaises(ExtractionFailure) as ctx:
            extract_text(b"this is not a pdf", "application/pdf")
        self.assertIn("could not be parsed", ctx.exception.reason)

    def test_empty_pdf_raises(self):
        with self.assertRaises(ExtractionFailure):
            extract_text(b"", "application/pdf")


class TestMediaTypes(unittest.TestCase):
    def test_base_media_type(self):
        self.assertEqual(base_media_type("Application/PDF"), "application/pdf")
        self.assertEqual(base_media_type(None), "")

    def test_declared_type_wins(self):
        self.assertEqual(resolve_media_type("text/plain", "report.pdf"), "text/plain")

    def test_generic_type_falls_back_to_extension(self):
        self.assertEqual(resolve_media_type("application/octet-stream", "report.pdf"), "application/pdf")
        self.assertEqual(resolve_media_type(None, "notes.txt"), "text/plain")
        self.assertEqual(resolve_media_type("", "noextension"), "application/octet-stream")


if __name__ == "__main__":
    unittest.main()
