"""Serve the inspection dashboard with werkzeug's WSGI server."""

from __future__ import annotations

import os

from dotenv import load_dotenv
from werkzeug.serving import make_server

# Before the package import: login passwords are read at import time.
load_dotenv()

from inspection_dashboard import create_app
from inspection_dashboard.db import open_store


def run_server() -> None:
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5000"))

    with open_store(
        os.environ["SUPABASE_URL"], os.environ["SUPABASE_SERVICE_KEY"]
    ) as store:
        app = create_app(store)
        server = make_server(host, port, app, threaded=True)
        app.logger.info("Serving inspection dashboard on http://%s:%s", host, port)
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            app.logger.info("Shutting down")
        finally:
            server.server_close()


if __name__ == "__main__":
    run_server()
