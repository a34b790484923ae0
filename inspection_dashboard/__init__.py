import os

from flask import Flask, session
from supabase import create_client

from .auth.routes import auth_bp
from .calculator import format_dpu, format_number
from .db import InspectionStore
from .glide_path import format_reduction
from .main.routes import main_bp

DEFAULT_YEAR_END_TARGET = 8.2


def _year_end_target() -> float:
    raw = os.environ.get("DPU_YEAR_END_TARGET")
    if not raw:
        return DEFAULT_YEAR_END_TARGET
    try:
        return float(raw)
    except ValueError:
        return DEFAULT_YEAR_END_TARGET


def create_app(store: InspectionStore | None = None):
    """Build the Flask application.

    ``store`` is the storage collaborator; when omitted a Supabase client is
    created from ``SUPABASE_URL`` and ``SUPABASE_SERVICE_KEY``.
    """

    app = Flask(
        __name__,
        template_folder="../templates",
        static_folder="../static",
    )
    app.secret_key = os.environ["SECRET_KEY"]

    if store is None:
        store = InspectionStore(
            create_client(
                os.environ["SUPABASE_URL"],
                os.environ["SUPABASE_SERVICE_KEY"],
            )
        )
    app.config["INSPECTION_STORE"] = store
    app.config["DPU_YEAR_END_TARGET"] = _year_end_target()
    app.config["LOCAL_TIMEZONE"] = os.environ.get("LOCAL_TIMEZONE", "Europe/London")
    if os.environ.get("WKHTMLTOPDF_CMD"):
        app.config["WKHTMLTOPDF_CMD"] = os.environ["WKHTMLTOPDF_CMD"]

    app.register_blueprint(auth_bp)
    app.register_blueprint(main_bp)

    app.add_template_filter(format_number, "number")
    app.add_template_filter(format_dpu, "dpu")
    app.add_template_filter(format_reduction, "reduction")

    @app.context_processor
    def inject_user_context():
        username = session.get("username")
        return {
            "username": username,
            "user_role": session.get("role") or username,
        }

    return app
