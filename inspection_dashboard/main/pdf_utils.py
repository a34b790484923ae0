"""PDF rendering for the quality report export.

Backends are tried in order: WeasyPrint, then wkhtmltopdf through pdfkit.
Each backend raises :class:`PdfGenerationError` with an installation hint
when it cannot run; only when every backend fails does the error reach the
caller, with all hints joined.
"""
from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


class PdfGenerationError(RuntimeError):
    """Raised when no PDF backend is able to render the report."""


WEASYPRINT_HINT = (
    "WeasyPrint could not render the DPU report: install the Pango, GObject "
    "and Cairo system libraries."
)

WKHTMLTOPDF_HINT = (
    "wkhtmltopdf could not render the DPU report: install the binary or point "
    "WKHTMLTOPDF_CMD at it."
)


def _weasyprint_pdf(html: str, base_url: str | None = None) -> bytes:
    try:
        from weasyprint import HTML
        from weasyprint.text.fonts import FontConfiguration
    except (ImportError, OSError) as exc:
        raise PdfGenerationError(WEASYPRINT_HINT) from exc

    fonts = FontConfiguration()
    try:
        return HTML(string=html, base_url=base_url).write_pdf(font_config=fonts)
    except OSError as exc:
        raise PdfGenerationError(WEASYPRINT_HINT) from exc


def wkhtmltopdf_command() -> str | None:
    """``WKHTMLTOPDF_CMD`` from the environment, else from the Flask config."""

    command = os.environ.get("WKHTMLTOPDF_CMD")
    if command:
        return command

    from flask import current_app, has_app_context

    if has_app_context():
        return current_app.config.get("WKHTMLTOPDF_CMD")
    return None


def _wkhtmltopdf_pdf(html: str, base_url: str | None = None) -> bytes:
    try:
        import pdfkit
    except ImportError as exc:
        raise PdfGenerationError(WKHTMLTOPDF_HINT) from exc

    command = wkhtmltopdf_command()
    try:
        if command:
            configuration = pdfkit.configuration(wkhtmltopdf=command)
        else:
            configuration = pdfkit.configuration()
    except OSError as exc:
        raise PdfGenerationError(WKHTMLTOPDF_HINT) from exc

    options: dict[str, str] = {"encoding": "UTF-8", "quiet": "", "page-size": "A4"}
    if base_url:
        # Relative chart and stylesheet URLs resolve against the app root.
        options["--base-url"] = base_url
        options["enable-local-file-access"] = ""

    try:
        return pdfkit.from_string(html, False, options=options, configuration=configuration)
    except OSError as exc:
        raise PdfGenerationError(WKHTMLTOPDF_HINT) from exc


BACKENDS = (
    ("weasyprint", _weasyprint_pdf),
    ("wkhtmltopdf", _wkhtmltopdf_pdf),
)


def render_html_to_pdf(html: str, base_url: str | None = None) -> bytes:
    """Render the report ``html`` to PDF bytes with the first working backend."""

    failures = []
    for name, backend in BACKENDS:
        try:
            return backend(html, base_url=base_url)
        except PdfGenerationError as exc:
            logger.warning("PDF backend %s unavailable: %s", name, exc)
            failures.append(exc)

    raise PdfGenerationError(" ".join(str(exc) for exc in failures)) from failures[-1]
