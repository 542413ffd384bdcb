"""
Flask application factory and server entry-point.
"""

import logging
import os
import sys
import traceback

from flask import Flask
from flask_cors import CORS

from caregate.config import API_HOST, API_PORT, SESSION_TTL_DAYS
from caregate.database import init_engine, init_schema
from caregate.api.routes import register_routes


def create_app(engine=None):
    """Build and return a fully configured Flask application."""
    app = Flask(__name__)
    CORS(app)

    # ── Initialise shared resources ──────────────────────────────────
    if engine is None:
        try:
            print("[init] Initializing database connection...")
            engine = init_engine()

            print("[init] Ensuring schema...")
            init_schema(engine)

            print("[init] ✓ API server ready")
        except Exception as e:
            print(f"[FATAL] Failed to initialize: {e}", file=sys.stderr)
            traceback.print_exc()
            sys.exit(1)

    app.config["ENGINE"] = engine

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, engine)

    return app


def main():
    """Run the development server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("=" * 60)
    print("caregate – Authorization API Server")
    print("=" * 60)

    app = create_app()

    host = API_HOST
    port = API_PORT
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Starting Flask API on {host}:{port}")
    print(f"[server] Debug mode: {debug}")
    print(f"[server] CORS enabled: True")
    print(f"[server] Session lifetime: {SESSION_TTL_DAYS} days")
    print("\nAPI Endpoints:")
    print(f"  - POST http://{host}:{port}/api/auth/login")
    print(f"  - POST http://{host}:{port}/api/auth/logout")
    print(f"  - GET  http://{host}:{port}/api/me")
    print(f"  - GET  http://{host}:{port}/api/prescriptions/<id>")
    print(f"  - POST http://{host}:{port}/api/prescriptions/<id>/status")
    print(f"  - GET  http://{host}:{port}/api/patients/<id>/prescriptions")
    print(f"  - GET  http://{host}:{port}/api/pharmacies/<id>/queue")
    print(f"  - PUT  http://{host}:{port}/api/members/<id>/role")
    print(f"  - PUT  http://{host}:{port}/api/members/<id>/capabilities")
    print(f"  - PUT  http://{host}:{port}/api/organizations/<id>/capabilities")
    print(f"  - GET  http://{host}:{port}/api/organizations/<id>/members")
    print(f"  - GET  http://{host}:{port}/api/security-events")
    print(f"  - GET  http://{host}:{port}/health")
    print("\n" + "=" * 60)

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
