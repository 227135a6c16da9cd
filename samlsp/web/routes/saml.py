"""SAML Service Provider endpoints.

All endpoints answer with JSON. Failed validations return 400 with a
generic message; internal failure detail only goes to the protocol log.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from flask import Blueprint, current_app, jsonify, make_response, request

from samlsp.core.saml.codec import Binding
from samlsp.core.saml.errors import EncodingFailure, SessionExpired, SessionNotFound

if TYPE_CHECKING:
    from flask import Response

    from samlsp.core.saml.sp import ServiceProvider

logger = logging.getLogger(__name__)

saml_bp = Blueprint("saml", __name__, url_prefix="/saml")

SESSION_COOKIE = "samlsp_session"


def _sp() -> ServiceProvider:
    return current_app.extensions["samlsp"]


def _binding() -> Binding:
    """Inbound messages arrive deflated on GET (Redirect) and plain on POST."""
    return Binding.REDIRECT if request.method == "GET" else Binding.POST


def _param(name: str) -> str | None:
    source = request.args if request.method == "GET" else request.form
    value = source.get(name)
    return value or None


def _error(message: str, status: int = 400, **extra: Any) -> tuple[Response, int]:
    return jsonify({"success": False, "message": message, **extra}), status


def _set_session_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        max_age=int(_sp().sessions.ttl.total_seconds()),
        httponly=True,
        secure=request.is_secure,
        samesite="Lax",
    )


@saml_bp.route("/login")
def login() -> Response | tuple[Response, int]:
    """Start SP-initiated SSO and return the IdP redirect URL."""
    relay_state = request.args.get("relayState") or request.args.get("RelayState")
    try:
        redirect_url = _sp().build_login_redirect_url(relay_state)
    except EncodingFailure as e:
        logger.error("Failed to build AuthnRequest: %s", e)
        return _error("Error initiating SAML authentication.", 500)

    return jsonify({
        "success": True,
        "redirectUrl": redirect_url,
        "message": "SAML authentication initiated",
    })


@saml_bp.route("/acs", methods=["GET", "POST"])
def acs() -> Response | tuple[Response, int]:
    """Assertion Consumer Service: validate the IdP's Response."""
    saml_response = _param("SAMLResponse")
    relay_state = _param("RelayState")
    if not saml_response:
        return _error("Missing SAMLResponse parameter.", relayState=relay_state)

    result = _sp().process_response(saml_response, _binding())
    if not result.success:
        return _error(
            result.outcome.message,
            userName=None,
            relayState=relay_state,
            attributes={},
        )

    response = make_response(jsonify({
        "success": True,
        "message": result.outcome.message,
        "userName": result.user_name,
        "relayState": relay_state,
        "attributes": result.attributes,
    }))
    if result.session_id:
        _set_session_cookie(response, result.session_id)
    return response


@saml_bp.route("/logout")
def logout() -> Response | tuple[Response, int]:
    """Start SP-initiated SLO.

    The principal comes from ``nameId`` or, failing that, the caller's
    session. The caller's local session is terminated either way.
    """
    sp = _sp()
    name_id = request.args.get("nameId")
    session_index = request.args.get("sessionIndex")
    relay_state = request.args.get("relayState") or request.args.get("RelayState")

    session_id = request.cookies.get(SESSION_COOKIE)
    session = sp.sessions.get(session_id) if session_id else None
    if session is not None:
        name_id = name_id or session.name_id
        session_index = session_index or session.session_index

    if not name_id:
        return _error("Missing nameId parameter.")

    try:
        redirect_url = sp.build_logout_redirect_url(name_id, session_index, relay_state)
    except EncodingFailure as e:
        logger.error("Failed to build LogoutRequest: %s", e)
        return _error("Error initiating SAML logout.", 500)

    if session_id:
        sp.sessions.invalidate(session_id)

    response = make_response(jsonify({
        "success": True,
        "redirectUrl": redirect_url,
        "message": "SAML logout initiated",
    }))
    response.delete_cookie(SESSION_COOKIE)
    return response


@saml_bp.route("/slo", methods=["GET", "POST"])
def slo() -> Response | tuple[Response, int]:
    """Single Logout endpoint for IdP-initiated LogoutRequests."""
    saml_request = _param("SAMLRequest")
    relay_state = _param("RelayState")
    if not saml_request:
        return _error("Missing SAMLRequest parameter.", relayState=relay_state)

    result = _sp().process_logout_request(saml_request, _binding(), relay_state)
    body = {
        "success": result.outcome.success,
        "message": result.outcome.message,
        "relayState": relay_state,
        "redirectUrl": result.redirect_url,
    }
    if not result.outcome.success:
        return jsonify(body), 400
    return jsonify(body)


@saml_bp.route("/slo-response", methods=["GET", "POST"])
def slo_response() -> Response | tuple[Response, int]:
    """Receive the IdP's LogoutResponse to an SP-initiated logout."""
    saml_response = _param("SAMLResponse")
    relay_state = _param("RelayState")
    if not saml_response:
        return _error("Missing SAMLResponse parameter.", relayState=relay_state)

    outcome = _sp().process_logout_response(saml_response, _binding())
    body = {
        "success": outcome.success,
        "message": outcome.message,
        "relayState": relay_state,
    }
    if not outcome.success:
        return jsonify(body), 400
    return jsonify(body)


@saml_bp.route("/metadata")
def metadata() -> Response:
    """Describe this SP's endpoints as JSON."""
    return jsonify(_sp().metadata())


@saml_bp.route("/session")
def session_info() -> Response:
    """Report whether the caller holds a live session."""
    try:
        session = _sp().require_session(request.cookies.get(SESSION_COOKIE))
    except (SessionNotFound, SessionExpired) as e:
        logger.debug("No live session: %s", type(e).__name__)
        return jsonify({"authenticated": False, "userName": None, "attributes": {}})

    return jsonify({
        "authenticated": True,
        "userName": session.name_id,
        "attributes": dict(session.attributes),
    })
