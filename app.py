"""
=============================================================================
INTERVIEW SIGNAL PIPELINE: APPLICATION ENTRY POINT (app.py)
=============================================================================

Starts the HTTP server for interview practice sessions. The server:

  1. Creates and drives interview sessions (start, pause, resume, complete).
  2. Samples the candidate's video on a fixed interval, or accepts signals
     detected in the browser, and turns them into engagement metrics.
  3. Streams live metrics to dashboards over Server-Sent Events.
  4. Stores finished sessions and applies the data-retention policy.

URL handlers live in routes.py; the work is done in services/ and utils/.

HOW TO RUN:
-----------
  - From project root:  python app.py
  - By default the app is at:  http://localhost:5000
  - Retention cleanup without the server:  python cleanup_data.py --dry-run

CONFIGURATION:
--------------
  - Settings come from the .env file and config.py (see config.py for names).
=============================================================================
"""

# Load .env before config.py reads the environment.
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

import atexit
import logging

from flask import Flask
from flask_cors import CORS
from flask_compress import Compress

from routes import register_routes
from services.session_lifecycle import shutdown_session_manager
import config

logging.basicConfig(
    level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

config.warn_missing_config()


# Sessions still sampling at exit are completed so their metrics are stored.
atexit.register(shutdown_session_manager)


def create_app() -> Flask:
    """
    Create and configure the Flask application.

      - CORS is open so the practice frontend can run on another origin.
      - Responses are compressed when the client supports it.
      - All API routes come from routes.register_routes.
    """
    app = Flask(__name__)

    CORS(app, resources={r"/*": {"origins": "*"}})

    # SSE responses must stream unbuffered.
    app.config["COMPRESS_MIMETYPES"] = [
        "text/html", "text/css", "text/plain", "text/csv", "application/json", "application/javascript",
    ]
    Compress(app)

    register_routes(app)

    return app


app = create_app()


if __name__ == "__main__":
    # FLASK_DEBUG uses Flask's reloader and debugger; otherwise Waitress serves
    # with a small thread pool (each SSE subscriber holds one thread).
    if config.FLASK_DEBUG:
        app.run(
            host=config.FLASK_HOST,
            port=config.FLASK_PORT,
            debug=True,
            threaded=True,
        )
    else:
        import waitress
        logger.info("Serving on http://%s:%s", config.FLASK_HOST, config.FLASK_PORT)
        waitress.serve(app, host=config.FLASK_HOST, port=config.FLASK_PORT, threads=6)
