"""Tests for signature decoding, blank detection and signing the stored document."""

import io
import base64
from datetime import datetime, timezone

import pytest
from PIL import Image, ImageDraw
from pypdf import PdfReader
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from src.core.errors import ValidationError, RenderFailure
from src.core.quote_ledger import PendingQuote
from src.forms.signature import (
    decode_signature, is_blank_signature, render_signed_quote, sign_pdf,
)


def _png(img):
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def pending_quote():
    return PendingQuote(id="q123", project_id="p1", number=7,
                        pdf_url="https://blob.test/quotes/quote-000007.pdf")


@pytest.fixture
def context():
    return {"quote_number": "000007", "prospect_name": "Alice Martin",
            "prospect_email": "a@b.com", "project_name": "Site vitrine",
            "issued_on": "01/10/2026", "amount": 990.0, "services": [], "delay": None}


class TestDecode:
    def test_valid_png(self, signature_data_url):
        assert decode_signature(signature_data_url).startswith(b"\x89PNG")

    @pytest.mark.parametrize("bad", [
        None, "", "data:image/png;base64,", "data:image/jpeg;base64,AAAA",
        "not a data url", "data:image/png;base64,@@@not-base64@@@",
    ])
    def test_rejected(self, bad):
        with pytest.raises(ValidationError):
            decode_signature(bad)

    def test_not_an_image(self):
        payload = base64.b64encode(b"hello world, definitely not a png").decode()
        with pytest.raises(ValidationError):
            decode_signature("data:image/png;base64," + payload)

    def test_jpeg_bytes_behind_png_prefix(self):
        buf = io.BytesIO()
        Image.new("RGB", (10, 10), "black").save(buf, format="JPEG")
        payload = base64.b64encode(buf.getvalue()).decode()
        with pytest.raises(ValidationError):
            decode_signature("data:image/png;base64," + payload)


class TestBlank:
    def test_transparent_canvas_is_blank(self):
        assert is_blank_signature(_png(Image.new("RGBA", (300, 100), (0, 0, 0, 0))))

    def test_white_canvas_is_blank(self):
        assert is_blank_signature(_png(Image.new("RGB", (300, 100), "white")))

    def test_stroke_is_not_blank(self, signature_data_url):
        assert not is_blank_signature(decode_signature(signature_data_url))

    def test_stray_dots_are_blank(self):
        img = Image.new("RGB", (300, 100), "white")
        for x in (40, 90, 150, 210, 260):
            img.putpixel((x, 50), (0, 0, 0))
        assert is_blank_signature(_png(img))

    def test_single_opaque_pixel_on_transparent_is_blank(self):
        img = Image.new("RGBA", (300, 100), (0, 0, 0, 0))
        img.putpixel((150, 50), (0, 0, 0, 255))
        assert is_blank_signature(_png(img))

    def test_faint_smudge_is_blank(self):
        img = Image.new("RGB", (300, 100), "white")
        ImageDraw.Draw(img).rectangle([50, 30, 250, 70], fill=(240, 240, 240))
        assert is_blank_signature(_png(img))

    def test_short_initials_count(self):
        img = Image.new("RGBA", (300, 100), (0, 0, 0, 0))
        ImageDraw.Draw(img).line([(100, 70), (130, 30), (160, 70)], fill=(0, 0, 0, 255), width=3)
        assert not is_blank_signature(_png(img))


def _custom_pdf(pages=2, size=A4):
    """A document laid out by someone else: two pages, no reserved box."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=size)
    for n in range(pages):
        c.setFont("Helvetica", 14)
        c.drawString(72, size[1] - 100, f"CUSTOM OPERATOR QUOTE 7777 EUR page {n + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def _image_count(page):
    resources = page["/Resources"]
    return len(resources["/XObject"].get_object()) if "/XObject" in resources else 0


SIGNED_AT = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


class TestSignPdf:
    def test_stamps_last_page_only(self, signature_data_url):
        signed = sign_pdf(_custom_pdf(), decode_signature(signature_data_url), SIGNED_AT)

        reader = PdfReader(io.BytesIO(signed))
        assert len(reader.pages) == 2
        first, last = (p.extract_text() for p in reader.pages)
        assert "CUSTOM OPERATOR QUOTE 7777 EUR page 1" in first
        assert "Signé le" not in first
        assert "CUSTOM OPERATOR QUOTE 7777 EUR page 2" in last
        assert "Signé le 17/10/2026 à 11:00" in last
        assert _image_count(reader.pages[0]) == 0
        assert _image_count(reader.pages[1]) == 1

    def test_keeps_page_size(self, signature_data_url):
        letter = (612, 792)
        signed = sign_pdf(_custom_pdf(pages=1, size=letter),
                          decode_signature(signature_data_url), SIGNED_AT)
        box = PdfReader(io.BytesIO(signed)).pages[0].mediabox
        assert (float(box.width), float(box.height)) == letter


class TestSignedRender:
    def test_signs_the_stored_document(self, pending_quote, context,
                                       signature_data_url, memory_store):
        memory_store.objects["quotes/quote-000007.pdf"] = _custom_pdf()
        url = render_signed_quote(pending_quote, decode_signature(signature_data_url),
                                  SIGNED_AT, context=context)

        (path,) = [p for p in memory_store.objects if p.startswith("quotes/quote-signed-")]
        assert path.startswith("quotes/quote-signed-q123-")
        assert url.endswith(path)
        reader = PdfReader(io.BytesIO(memory_store.objects[path]))
        assert len(reader.pages) == 2
        text = reader.pages[-1].extract_text()
        assert "CUSTOM OPERATOR QUOTE 7777 EUR" in text
        assert "Signé le 17/10/2026" in text
        # the context is only a fallback, never rendered over an available original
        assert "DEVIS : 000007" not in text

    def test_missing_original_rerenders_own_quote(self, pending_quote, context,
                                                  signature_data_url, memory_store):
        render_signed_quote(pending_quote, decode_signature(signature_data_url),
                            SIGNED_AT, context=context)

        (path,) = memory_store.objects.keys()
        text = PdfReader(io.BytesIO(memory_store.objects[path])).pages[-1].extract_text()
        assert "DEVIS : 000007" in text
        assert "Signé le 17/10/2026" in text

    def test_missing_upload_is_a_failure(self, pending_quote, signature_data_url, memory_store):
        with pytest.raises(RenderFailure):
            render_signed_quote(pending_quote, decode_signature(signature_data_url), SIGNED_AT)
        assert memory_store.objects == {}

    def test_unreadable_original(self, pending_quote, signature_data_url, memory_store):
        memory_store.objects["quotes/quote-000007.pdf"] = b"%PDF-1.4 truncated"
        with pytest.raises(RenderFailure):
            render_signed_quote(pending_quote, decode_signature(signature_data_url), SIGNED_AT)

    def test_storage_failure(self, pending_quote, context, signature_data_url, failing_store):
        with pytest.raises(RenderFailure):
            render_signed_quote(pending_quote, decode_signature(signature_data_url),
                                datetime.now(timezone.utc), context=context)
