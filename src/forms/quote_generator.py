"""
Orylis Quote PDF Generator
==========================
Fixed-layout A4 offer document ("devis") for a web-design project.

Layout (top → bottom):
  - Logo (local asset → remote URL → app URL → "Orylis" wordmark) and
    DEVIS number + DATE right-aligned
  - CLIENT block (left) / PRESTATAIRE block (right)
  - Grey pricing panel: headline service + price, bullet lines, maintenance
    allowance, "Total HT"
  - Payment method note
  - Signature zone, fixed coordinates on the last page so the signature
    overlay lands in it without re-flowing anything

Quote data keys:
    quote_number (display form), prospect_name, prospect_email,
    prospect_phone?, company_name?, project_name, issued_on? (dd/mm/yyyy),
    amount? (euros), services?[], delay?
"""

import io
import os
import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from src.core.errors import RenderFailure
from src.core.paths import ASSETS_DIR, PUBLIC_DIR, PROJECT_ROOT
from src.core.storage import StorageError, artifact_path, get_store

log = logging.getLogger("quotes.render")

# ═══════════════════════════════════════════════════════════════════════════════
# COLORS
# ═══════════════════════════════════════════════════════════════════════════════
BLACK      = HexColor("#000000")
TEXT_DARK  = HexColor("#333333")
TEXT_MUTED = HexColor("#666666")
BRAND      = HexColor("#005eff")
PANEL_FILL = HexColor("#f5f5f5")
PANEL_BD   = HexColor("#e0e0e0")
WHITE      = HexColor("#ffffff")

# ═══════════════════════════════════════════════════════════════════════════════
# ISSUER
# ═══════════════════════════════════════════════════════════════════════════════
ORYLIS = {
    "name":  "Orylis",
    "email": "orylisfrance@gmail.com",
}

DEFAULT_AMOUNT = 1490.00
DEFAULT_HEADLINE = "Site internet optimisé Orylis"
DEFAULT_SERVICES = [
    "Branding et design sur-mesure",
    "Responsive PC, Tablette et Smartphone",
    "Référencement Google optimisé",
    "Intégration de plugin premium gratuitement",
]
MAINTENANCE_TITLE = "Service de maintenance (offert pendant 90 jours)"
MAINTENANCE_LINES = [
    "Hébergement optimisé sur serveur dédié inclus (valeur 19,90 € /mois)",
    "Nom de domaine (.fr ou .com) inclus (valeur 9,90 € /an)",
    "Mise à jour, maintenance et sécurité inclus",
    "Modification site internet illimitées inclus",
    "Suivi et accompagnement pour la prise en main",
]

DEFAULT_REMOTE_LOGO_URL = "https://orylis.fr/wp-content/uploads/2023/08/Frame-454507529-1.png"
LOGO_FILE = "logo-orylis.png"
LOGO_FETCH_TIMEOUT = 5

# ═══════════════════════════════════════════════════════════════════════════════
# PAGE GEOMETRY: reportlab y is from the bottom, layout is written top-down
# ═══════════════════════════════════════════════════════════════════════════════
W, H = A4
MARGIN = 50
CONTENT_W = W - 2 * MARGIN

PANEL_MIN_H = 280
PANEL_PAD_X = 15

SIG_W = 220
SIG_H = 120
SIG_X = W - MARGIN - SIG_W
SIG_BOTTOM = MARGIN + 60                 # reportlab y of the box bottom
SIG_TOP = H - (SIG_BOTTOM + SIG_H)       # top-origin y of the box top
SIG_PAD = 10
SIG_CAPTION = "Signature du client"

# Panel rows must stay above the signature caption
PANEL_LIMIT = SIG_TOP - 24


def _display_tz():
    try:
        return ZoneInfo(os.environ.get("QUOTE_TIMEZONE", "Europe/Paris"))
    except ZoneInfoNotFoundError:
        return timezone.utc


def format_amount(amount) -> str:
    """1490.5 → '1 490,50 €' (fallback 1 490,00 € when no amount)."""
    value = DEFAULT_AMOUNT if amount is None else float(amount)
    return f"{value:,.2f}".replace(",", " ").replace(".", ",") + " €"


def format_issue_date(when: datetime = None) -> str:
    when = when or datetime.now(timezone.utc)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(_display_tz()).strftime("%d/%m/%Y")


def format_signed_stamp(signed_at: datetime) -> str:
    if signed_at.tzinfo is None:
        signed_at = signed_at.replace(tzinfo=timezone.utc)
    local = signed_at.astimezone(_display_tz())
    return f"Signé le {local.strftime('%d/%m/%Y')} à {local.strftime('%H:%M')}"


# ═══════════════════════════════════════════════════════════════════════════════
# LOGO: ordered fallback, first source that yields a readable image wins
# ═══════════════════════════════════════════════════════════════════════════════

def _local_logo():
    for d in (PUBLIC_DIR, ASSETS_DIR, PROJECT_ROOT):
        p = os.path.join(d, LOGO_FILE)
        if os.path.exists(p):
            with open(p, "rb") as f:
                return f.read()
    return None


def _fetch_remote_logo(url: str):
    if not url:
        return None
    resp = requests.get(url, timeout=LOGO_FETCH_TIMEOUT)
    if resp.status_code != 200:
        return None
    return resp.content


def _public_logo():
    url = os.environ.get("QUOTE_LOGO_URL") or DEFAULT_REMOTE_LOGO_URL
    return _fetch_remote_logo(url)


def _app_logo():
    app_url = os.environ.get("APP_URL", "")
    return _fetch_remote_logo(f"{app_url.rstrip('/')}/{LOGO_FILE}") if app_url else None


LOGO_SOURCES = [
    ("local", _local_logo),
    ("public_url", _public_logo),
    ("app_url", _app_logo),
]


def resolve_logo():
    """Return (ImageReader, source_name) or (None, None) for the text wordmark."""
    for name, loader in LOGO_SOURCES:
        try:
            data = loader()
            if not data:
                continue
            img = ImageReader(io.BytesIO(data))
            img.getSize()
            return img, name
        except Exception as e:
            log.warning("Logo source %s failed: %s", name, e)
    return None, None


# ═══════════════════════════════════════════════════════════════════════════════
# PRICING PANEL LAYOUT
# ═══════════════════════════════════════════════════════════════════════════════

def _panel_rows(data: dict, price: str) -> list:
    """Rows as (kind, text, height). Heights are in points."""
    services = [str(s).strip() for s in (data.get("services") or []) if str(s).strip()]
    headline = services[0] if services else DEFAULT_HEADLINE
    bullets = services[1:] if len(services) > 1 else DEFAULT_SERVICES
    text_w = CONTENT_W - 2 * PANEL_PAD_X - 10

    rows = [("headline", headline, 20)]
    for b in bullets:
        lines = simpleSplit(f"• {b}", "Helvetica", 9, text_w)
        rows.append(("bullet", lines, 15 + 11 * (len(lines) - 1)))
    if data.get("delay"):
        rows.append(("note", f"Délai de réalisation estimé : {data['delay']}", 15))
    rows.append(("spacer", "", 30))
    rows.append(("section", MAINTENANCE_TITLE, 20))
    for b in MAINTENANCE_LINES:
        rows.append(("bullet", [f"• {b}"], 15))
    rows.append(("total", price, 40))
    return rows


def _layout_panel(rows: list, panel_top: float) -> tuple:
    """Place rows on pages. Returns (placed, segments).

    placed:   [(page, top_y, kind, text)]
    segments: {page: [top_y, bottom_y]} grey box extent per page
    """
    placed, segments = [], {}
    page, y = 0, panel_top + 20
    segments[page] = [panel_top, panel_top]
    for kind, txt, h in rows:
        if y + h > PANEL_LIMIT:
            segments[page][1] = y
            page += 1
            y = MARGIN + 20
            segments[page] = [MARGIN, MARGIN]
        placed.append((page, y, kind, txt))
        y += h
        segments[page][1] = y
    # Keep the fixed panel height on a single-page document
    first_top = segments[0][0]
    if len(segments) == 1 and segments[0][1] - first_top < PANEL_MIN_H:
        segments[0][1] = min(first_top + PANEL_MIN_H, PANEL_LIMIT)
    return placed, segments


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN PDF RENDERER
# ═══════════════════════════════════════════════════════════════════════════════

def render_quote_pdf(data: dict) -> bytes:
    """Render the quote document to PDF bytes.

    The last page carries an empty signature zone; signing stamps into it
    later (see render_signature_overlay).
    """
    quote_number = str(data.get("quote_number", ""))
    price = format_amount(data.get("amount"))
    issued_on = data.get("issued_on") or format_issue_date()

    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4, invariant=1)
    c.setTitle(f"Devis {quote_number}")
    c.setAuthor(ORYLIS["name"])
    c.setSubject(data.get("project_name", ""))

    def Y(top_y):
        return H - top_y

    def text(x, yt, txt, font="Helvetica", size=10, color=BLACK, align="left"):
        c.setFont(font, size)
        c.setFillColor(color)
        s = str(txt) if txt is not None else ""
        if align == "right":
            c.drawRightString(x, Y(yt), s)
        elif align == "center":
            c.drawCentredString(x, Y(yt), s)
        else:
            c.drawString(x, Y(yt), s)

    # ── Header: logo ───────────────────────────────────────────────────────────
    logo, logo_source = resolve_logo()
    if logo is not None:
        iw, ih = logo.getSize()
        scale = min(100 / iw, 32 / ih)
        dw, dh = iw * scale, ih * scale
        c.drawImage(logo, MARGIN, Y(MARGIN) - dh, width=dw, height=dh,
                    preserveAspectRatio=True, mask="auto")
    else:
        text(MARGIN, MARGIN + 24, ORYLIS["name"], "Helvetica-Bold", 28, BRAND)
    log.debug("Quote %s logo: %s", quote_number, logo_source or "wordmark")

    # ── Header: number + date ──────────────────────────────────────────────────
    text(W - MARGIN, MARGIN + 10, f"DEVIS : {quote_number}", "Helvetica", 10, BLACK, "right")
    text(W - MARGIN, MARGIN + 25, f"DATE : {issued_on}", "Helvetica", 10, BLACK, "right")

    # ── Party block ────────────────────────────────────────────────────────────
    y = 110
    text(MARGIN, y, "CLIENT :", "Helvetica-Bold", 11)
    client_lines = [f"Nom : {data.get('prospect_name', '')}",
                    f"Email : {data.get('prospect_email', '')}"]
    if data.get("prospect_phone"):
        client_lines.append(f"Téléphone : {data['prospect_phone']}")
    if data.get("company_name"):
        client_lines.append(f"Société : {data['company_name']}")
    y += 5
    for line in client_lines:
        y += 15
        for part in simpleSplit(line, "Helvetica", 10, CONTENT_W / 2 - 10):
            text(MARGIN, y, part, "Helvetica", 10, TEXT_DARK)

    yp = 110
    text(W - MARGIN, yp, "PRESTATAIRE :", "Helvetica-Bold", 11, BLACK, "right")
    yp += 20
    text(W - MARGIN, yp, f"Nom : {ORYLIS['name']}", "Helvetica", 10, TEXT_DARK, "right")
    yp += 15
    text(W - MARGIN, yp, f"Email : {ORYLIS['email']}", "Helvetica", 10, TEXT_DARK, "right")

    # ── Pricing panel ──────────────────────────────────────────────────────────
    panel_top = max(y, yp) + 40
    placed, segments = _layout_panel(_panel_rows(data, price), panel_top)
    last_page = max(segments)

    # Payment note sits below the panel, left column (beside the signature zone)
    pay_page = last_page
    pay_y = segments[last_page][1] + 30
    if pay_y + 35 > H - MARGIN:
        pay_page += 1
        pay_y = MARGIN + 20
    total_pages = pay_page + 1

    for page in range(total_pages):
        if page > 0:
            c.showPage()

        if page in segments:
            top, bottom = segments[page]
            c.setFillColor(PANEL_FILL)
            c.rect(MARGIN, Y(bottom), CONTENT_W, bottom - top, fill=1, stroke=0)
            c.setStrokeColor(PANEL_BD)
            c.setLineWidth(1)
            c.rect(MARGIN, Y(bottom), CONTENT_W, bottom - top, fill=0, stroke=1)

        for p, ry, kind, txt in placed:
            if p != page:
                continue
            px = MARGIN + PANEL_PAD_X
            if kind == "headline":
                text(px, ry, simpleSplit(txt, "Helvetica", 11, CONTENT_W - 250)[0],
                     "Helvetica", 11)
                text(W - MARGIN - 20, ry, price, "Helvetica", 10, BLACK, "right")
            elif kind == "section":
                text(px, ry, txt, "Helvetica", 11)
            elif kind == "bullet":
                for i, line in enumerate(txt):
                    text(px + 5 + (8 if i else 0), ry + 11 * i, line, "Helvetica", 9, TEXT_MUTED)
            elif kind == "note":
                text(px + 5, ry, txt, "Helvetica-Oblique", 9, TEXT_MUTED)
            elif kind == "total":
                # Pinned to the bottom of the panel box
                total_y = segments[page][1] - 18
                text(W - MARGIN - 130, total_y, "Total HT :", "Helvetica", 12, BLACK, "right")
                text(W - MARGIN - 20, total_y, price, "Helvetica", 12, BLACK, "right")

        if page == pay_page:
            text(MARGIN, pay_y, "MOYEN DE PAIEMENT :", "Helvetica", 10)
            text(MARGIN, pay_y + 20, "Lien de paiement sécurisé", "Helvetica", 9, TEXT_MUTED)

        if page == total_pages - 1:
            _draw_signature_zone(c)

        if total_pages > 1:
            c.setFillColor(TEXT_MUTED)
            c.setFont("Helvetica", 8)
            c.drawRightString(W - MARGIN, 20, f"{page + 1} / {total_pages}")

    c.save()
    return buf.getvalue()


def _draw_signature_zone(c):
    """Reserved box on the last page, where the signature overlay lands."""
    c.setFillColor(WHITE)
    c.rect(SIG_X, SIG_BOTTOM, SIG_W, SIG_H, fill=1, stroke=0)
    c.setStrokeColor(PANEL_BD)
    c.setLineWidth(1)
    c.rect(SIG_X, SIG_BOTTOM, SIG_W, SIG_H, fill=0, stroke=1)
    c.setFont("Helvetica", 9)
    c.setFillColor(TEXT_MUTED)
    c.drawString(SIG_X, SIG_BOTTOM + SIG_H + 5, SIG_CAPTION)


def _draw_signature(c, box_x: float, signature: bytes, signed_at: datetime = None):
    """Signature image fitted and centred in the box, stamp right-aligned beneath."""
    img = ImageReader(io.BytesIO(signature))
    iw, ih = img.getSize()
    max_w, max_h = SIG_W - 2 * SIG_PAD, SIG_H - 2 * SIG_PAD
    scale = min(max_w / iw, max_h / ih)
    dw, dh = iw * scale, ih * scale
    c.drawImage(img, box_x + (SIG_W - dw) / 2, SIG_BOTTOM + (SIG_H - dh) / 2,
                width=dw, height=dh, mask="auto")

    if signed_at is not None:
        c.setFont("Helvetica", 8)
        c.setFillColor(BRAND)
        c.drawRightString(box_x + SIG_W, SIG_BOTTOM - 12, format_signed_stamp(signed_at))


def render_signature_overlay(page_size: tuple, signature: bytes, signed_at: datetime) -> bytes:
    """One transparent page of `page_size` holding only the signature and stamp.

    The box is anchored to the bottom-right corner (same margins as the
    rendered layout), so on an A4 devis it lands exactly in the reserved zone
    and on any other PDF it lands in the same corner.
    """
    width, height = page_size
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height), invariant=1)
    _draw_signature(c, width - MARGIN - SIG_W, signature, signed_at)
    c.save()
    return buf.getvalue()


# ═══════════════════════════════════════════════════════════════════════════════
# RENDER + STORE
# ═══════════════════════════════════════════════════════════════════════════════

def store_pdf(pdf: bytes, prefix: str, key: str, store=None) -> str:
    """Upload rendered bytes as a new artifact. Storage errors → RenderFailure."""
    store = store or get_store()
    path = artifact_path(prefix, key)
    try:
        return store.put(path, pdf, "application/pdf")
    except StorageError as e:
        raise RenderFailure(f"Stockage du PDF impossible : {e}", path=path) from e


def generate_quote_pdf(data: dict, store=None) -> str:
    """Render the unsigned quote and upload it. Returns its public URL."""
    quote_number = str(data.get("quote_number", ""))
    log.info("Generating quote %s for %s", quote_number,
             (data.get("project_name") or "?")[:40],
             extra={"quote_number": quote_number})
    try:
        pdf = render_quote_pdf(data)
    except Exception as e:
        raise RenderFailure(f"Génération du PDF impossible : {e}",
                            quote_number=quote_number) from e
    url = store_pdf(pdf, "quote", quote_number, store)
    log.info("Quote %s rendered (%d bytes) → %s", quote_number, len(pdf), url,
             extra={"quote_number": quote_number})
    return url
