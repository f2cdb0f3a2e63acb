"""
Signature capture → signed quote document.

The browser signature pad posts a PNG data URL. It is decoded, checked to be
an actual drawing (not an empty canvas or a stray dot), and stamped onto the
last page of the document the prospect was actually sent: the stored PDF is
fetched back and a one-page signature overlay is merged onto it, so uploaded
operator documents are signed as-is.
"""

import io
import base64
import binascii
import logging
from datetime import datetime

from PIL import Image, ImageChops, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter

from src.core.errors import ValidationError, RenderFailure
from src.core.storage import StorageError, get_store
from src.forms.quote_generator import render_quote_pdf, render_signature_overlay, store_pdf

log = logging.getLogger("quotes.signature")

DATA_URL_PREFIX = "data:image/png;base64,"
MAX_SIGNATURE_BYTES = 2 * 1024 * 1024
INK_LEVEL = 32            # grey levels away from white before a pixel counts as ink
MIN_INK_PIXELS = 20


def decode_signature(data_url: str) -> bytes:
    """PNG bytes from a `data:image/png;base64,...` URL. Raises ValidationError."""
    if not data_url or not isinstance(data_url, str):
        raise ValidationError("Signature manquante")
    if not data_url.startswith(DATA_URL_PREFIX):
        raise ValidationError("Signature invalide : une image PNG est attendue")
    payload = data_url[len(DATA_URL_PREFIX):].strip()
    if not payload:
        raise ValidationError("Signature vide")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Signature invalide : encodage base64 incorrect")
    if len(raw) > MAX_SIGNATURE_BYTES:
        raise ValidationError("Signature trop volumineuse")
    try:
        with Image.open(io.BytesIO(raw)) as img:
            if img.format != "PNG":
                raise ValidationError("Signature invalide : une image PNG est attendue")
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise ValidationError("Signature invalide : image illisible")
    return raw


def is_blank_signature(png: bytes) -> bool:
    """True when nothing meaningful was drawn.

    Transparent pixels are flattened onto white; anything within
    INK_LEVEL grey levels of white is paper. Fewer than MIN_INK_PIXELS inked
    pixels (a tap or a stray dot) is treated as no signature.
    """
    with Image.open(io.BytesIO(png)) as img:
        rgba = img.convert("RGBA")
    if rgba.getchannel("A").getbbox() is None:
        return True
    white = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
    flat = Image.alpha_composite(white, rgba).convert("L")
    ink = ImageChops.invert(flat).point(lambda p: 255 if p > INK_LEVEL else 0)
    return ink.histogram()[255] < MIN_INK_PIXELS


def sign_pdf(original: bytes, signature_png: bytes, signed_at: datetime) -> bytes:
    """Stamp the signature onto the last page of `original`; other pages untouched."""
    reader = PdfReader(io.BytesIO(original))
    if not reader.pages:
        raise RenderFailure("Le devis d'origine ne contient aucune page.")
    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)

    last = writer.pages[-1]
    box = last.mediabox
    overlay = render_signature_overlay((float(box.width), float(box.height)),
                                       signature_png, signed_at)
    overlay_page = PdfReader(io.BytesIO(overlay)).pages[0]
    last.merge_translated_page(overlay_page, float(box.left), float(box.bottom))

    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def _original_document(quote, store, context):
    """Bytes of the document the prospect was sent.

    Falls back to a fresh render only for quotes we rendered ourselves
    (they carry a render context); an operator upload that can't be fetched
    is a failure, never silently replaced by a generated devis.
    """
    try:
        return store.get(quote.pdf_url)
    except StorageError as e:
        if not context:
            raise RenderFailure(f"Devis d'origine introuvable : {e}",
                                quote_id=quote.id) from e
        log.warning("Original of quote %s unreachable (%s), re-rendering",
                    quote.formatted_number, e, extra={"quote_id": quote.id})
    try:
        return render_quote_pdf(context)
    except Exception as e:
        raise RenderFailure(f"Génération du devis signé impossible : {e}",
                            quote_id=quote.id) from e


def render_signed_quote(quote, signature_png: bytes, signed_at: datetime,
                        store=None, context: dict = None) -> str:
    """Overlay the signature on the stored quote and upload it. Returns its URL."""
    store = store or get_store()
    original = _original_document(quote, store, context)
    try:
        pdf = sign_pdf(original, signature_png, signed_at)
    except RenderFailure:
        raise
    except Exception as e:
        raise RenderFailure(f"Génération du devis signé impossible : {e}",
                            quote_id=quote.id) from e
    url = store_pdf(pdf, "quote-signed", quote.id, store)
    log.info("Signed render for quote %s (%d bytes)", quote.formatted_number, len(pdf),
             extra={"quote_id": quote.id})
    return url
