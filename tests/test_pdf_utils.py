import pytest

from inspection_dashboard import create_app
from inspection_dashboard.main import pdf_utils
from inspection_dashboard.main.pdf_utils import PdfGenerationError


def _failing(message):
    def backend(html, base_url=None):
        raise PdfGenerationError(message)

    return backend


def test_first_backend_output_is_returned(monkeypatch):
    def _unexpected(html, base_url=None):
        raise AssertionError("fallback should not run")

    monkeypatch.setattr(
        pdf_utils,
        "BACKENDS",
        (("weasyprint", lambda html, base_url=None: b"%PDF-weasy"), ("wkhtmltopdf", _unexpected)),
    )
    assert pdf_utils.render_html_to_pdf("<html></html>") == b"%PDF-weasy"


def test_falls_back_to_wkhtmltopdf(monkeypatch):
    seen = {}

    def _wkhtmltopdf(html, base_url=None):
        seen["base_url"] = base_url
        return b"%PDF-wk"

    monkeypatch.setattr(
        pdf_utils,
        "BACKENDS",
        (("weasyprint", _failing(pdf_utils.WEASYPRINT_HINT)), ("wkhtmltopdf", _wkhtmltopdf)),
    )

    assert pdf_utils.render_html_to_pdf("<html></html>", base_url="http://localhost/") == b"%PDF-wk"
    assert seen["base_url"] == "http://localhost/"


def test_error_joins_every_backend_hint(monkeypatch):
    monkeypatch.setattr(
        pdf_utils,
        "BACKENDS",
        (("weasyprint", _failing("weasyprint broke.")), ("wkhtmltopdf", _failing("wkhtmltopdf broke."))),
    )

    with pytest.raises(PdfGenerationError) as excinfo:
        pdf_utils.render_html_to_pdf("<html></html>")
    assert str(excinfo.value) == "weasyprint broke. wkhtmltopdf broke."


def test_wkhtmltopdf_command_from_environment(monkeypatch):
    monkeypatch.setenv("WKHTMLTOPDF_CMD", "/opt/bin/wkhtmltopdf")
    assert pdf_utils.wkhtmltopdf_command() == "/opt/bin/wkhtmltopdf"


def test_wkhtmltopdf_command_from_app_config(monkeypatch):
    monkeypatch.delenv("WKHTMLTOPDF_CMD", raising=False)
    assert pdf_utils.wkhtmltopdf_command() is None

    monkeypatch.setenv("SECRET_KEY", "test")
    app = create_app(store=object())
    app.config["WKHTMLTOPDF_CMD"] = "/usr/local/bin/wkhtmltopdf"
    with app.app_context():
        assert pdf_utils.wkhtmltopdf_command() == "/usr/local/bin/wkhtmltopdf"
