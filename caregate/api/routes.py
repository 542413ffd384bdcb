"""
Flask route handlers for the REST API.

Handlers stay thin: they authenticate, parse the JSON body, and call the
guarded operation. Authorization lives in the operations themselves, so
every failure surfaces as an ``AuthzError`` mapped to a status code by the
error handlers registered at the bottom.
"""

import logging
from dataclasses import asdict

from flask import jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from caregate import members, organizations, platform_admin, prescriptions
from caregate.capabilities import CAP, CAPABILITY_SET_VERSION
from caregate.config import DEFAULT_EVENT_LIMIT
from caregate.database import get_session
from caregate.enforcement import effective_caps_for
from caregate.errors import AuthzError
from caregate.sessions import login_with_api_key, revoke_session
from caregate.api.auth import requires_cap, token_required

logger = logging.getLogger(__name__)


def _error(code: str, message: str, status: int):
    return jsonify({"error": {"code": code, "message": message}}), status


def _json_body():
    if not request.is_json:
        raise ValueError("Content-Type must be application/json")
    return request.get_json(silent=True) or {}


def member_to_dict(member):
    return {
        "id": member.id,
        "email": member.email,
        "name": member.name,
        "role": member.role,
        "org_id": member.org_id,
        "cap_allow": list(member.cap_allow),
        "cap_deny": list(member.cap_deny),
        "is_platform_owner": member.is_platform_owner,
        "status": member.status,
    }


def register_routes(app, engine):
    """Register all API routes on the Flask *app*."""

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": "caregate API",
            "version": "1.0.0",
            "status": "running",
            "capability_set_version": CAPABILITY_SET_VERSION,
            "endpoints": {
                "login": "/api/auth/login",
                "logout": "/api/auth/logout",
                "me": "/api/me",
                "prescriptions": "/api/prescriptions/<id>",
                "security_events": "/api/security-events",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {"database": False}
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            checks["database"] = True
        except SQLAlchemyError as e:
            logger.warning("Health check failed: %s", e)

        all_healthy = all(checks.values())
        return jsonify({
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }), 200 if all_healthy else 503

    # ── Auth ─────────────────────────────────────────────────────────

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        data = _json_body()
        member, token = login_with_api_key(
            engine,
            str(data.get("api_key", "")),
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        session = get_session(engine, token)
        return jsonify({
            "success": True,
            "token": token,
            "user": member_to_dict(member),
            "capabilities": sorted(effective_caps_for(engine, member)),
            "expires_at": session.expires_at,
        }), 200

    @app.route("/api/auth/logout", methods=["POST"])
    @token_required
    def logout():
        revoke_session(engine, request.token)
        return jsonify({"success": True, "message": "Logged out successfully"}), 200

    @app.route("/api/me", methods=["GET"])
    @token_required
    def me():
        member = request.member
        return jsonify({
            "success": True,
            "user": member_to_dict(member),
            "capabilities": sorted(effective_caps_for(engine, member)),
            "capability_set_version": CAPABILITY_SET_VERSION,
        }), 200

    # ── Prescriptions ────────────────────────────────────────────────

    @app.route("/api/prescriptions/<prescription_id>", methods=["GET"])
    @token_required
    def get_prescription(prescription_id):
        rx = prescriptions.get_prescription(engine, request.member, prescription_id)
        return jsonify({"success": True, "prescription": asdict(rx)}), 200

    @app.route("/api/prescriptions/<prescription_id>/status", methods=["POST"])
    @token_required
    def update_prescription_status(prescription_id):
        data = _json_body()
        status = data.get("status")
        if not isinstance(status, str) or not status:
            raise ValueError("status is required")
        rx = prescriptions.update_status(engine, request.member, prescription_id, status)
        return jsonify({"success": True, "prescription": asdict(rx)}), 200

    @app.route("/api/patients/<patient_id>/prescriptions", methods=["GET"])
    @token_required
    def patient_prescriptions(patient_id):
        items = prescriptions.list_for_patient(engine, request.member, patient_id)
        return jsonify({"success": True, "prescriptions": [asdict(rx) for rx in items]}), 200

    @app.route("/api/pharmacies/<pharmacy_id>/queue", methods=["GET"])
    @token_required
    def pharmacy_queue(pharmacy_id):
        items = prescriptions.list_for_pharmacy(
            engine, request.member, pharmacy_id, status=request.args.get("status") or None,
        )
        return jsonify({"success": True, "prescriptions": [asdict(rx) for rx in items]}), 200

    # ── Members / organizations ──────────────────────────────────────

    @app.route("/api/members/<member_id>/role", methods=["PUT"])
    @token_required
    def update_member_role(member_id):
        data = _json_body()
        member = members.update_role(engine, request.member, member_id, str(data.get("role", "")))
        return jsonify({"success": True, "member": member_to_dict(member)}), 200

    @app.route("/api/members/<member_id>/capabilities", methods=["PUT"])
    @token_required
    def update_member_capabilities(member_id):
        data = _json_body()
        member = members.update_cap_overrides(
            engine, request.member, member_id,
            cap_allow=data.get("cap_allow"), cap_deny=data.get("cap_deny"),
        )
        return jsonify({"success": True, "member": member_to_dict(member)}), 200

    @app.route("/api/organizations/<org_id>/capabilities", methods=["PUT"])
    @token_required
    def update_org_capabilities(org_id):
        data = _json_body()
        org = organizations.update_cap_overrides(
            engine, request.member, org_id,
            cap_allow=data.get("cap_allow"), cap_deny=data.get("cap_deny"),
        )
        return jsonify({"success": True, "organization": asdict(org)}), 200

    @app.route("/api/organizations/<org_id>/members", methods=["GET"])
    @requires_cap(CAP.USER_VIEW)
    def org_members(org_id):
        items = organizations.list_members(engine, request.member, org_id)
        return jsonify({"success": True, "members": [member_to_dict(m) for m in items]}), 200

    # ── Security events ──────────────────────────────────────────────

    @app.route("/api/security-events", methods=["GET"])
    @token_required
    def security_events():
        try:
            limit = int(request.args.get("limit", DEFAULT_EVENT_LIMIT))
        except ValueError:
            raise ValueError("limit must be an integer")
        events = platform_admin.list_security_events(
            engine, request.member, limit=limit, action=request.args.get("action") or None,
        )
        return jsonify({"success": True, "events": [asdict(e) for e in events]}), 200

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(AuthzError)
    def authz_error(e):
        return jsonify({"error": e.to_dict()}), e.status

    @app.errorhandler(ValueError)
    def bad_request(e):
        return _error("BAD_REQUEST", str(e), 400)

    @app.errorhandler(404)
    def not_found(e):
        return _error("NOT_FOUND", "Endpoint not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error("METHOD_NOT_ALLOWED", "Method not allowed", 405)

    @app.errorhandler(Exception)
    def internal_error(e):
        if isinstance(e, HTTPException):
            return _error(e.name.upper().replace(" ", "_"), e.description or e.name, e.code)
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return _error("INTERNAL", "Internal server error", 500)
