"""Quote PDF rendering.

Key exports:
    render_quote_pdf()     — Lay out the A4 devis to bytes
    generate_quote_pdf()   — Render + upload, returns the artifact URL
    render_signed_quote()  — Signature stamped onto an issued quote
"""
