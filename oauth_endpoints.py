"""
AT Protocol OAuth Endpoints

Route handlers for the Backend-for-Frontend OAuth flow:
- GET login: Start authorization for a handle (or authorization server URL)
- GET callback: Complete authorization, persist the session, set the cookie
- POST logout: Remove the stored session and clear the cookie
- Session lookup: Resolve a request's cookie into a live OAuth session

Login intent travels inside the OAuth `state` parameter (see
oauth_flow_state), so no pending-login state is kept on the server.
"""

import logging
import time
import urllib.parse
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response

from audit_logger import AuditLogger, AuthEvent, get_audit_logger
from oauth_flow_state import (
    MAX_STATE_LENGTH,
    FlowMode,
    InvalidFlowStateError,
    OAuthFlowState,
    is_authorization_server_url,
    is_safe_redirect_path,
    is_valid_handle,
    resolve_flow_mode,
)
from oauth_sessions import OAuthSessions
from oauth_types import (
    DEFAULT_LOGGER_NAME,
    CookieSessionManagerInterface,
    OAuthClientErrorKind,
    OAuthClientInterface,
    SessionData,
    SessionError,
    SessionErrorType,
    SessionInterface,
    SessionLookupResult,
    classify_oauth_error,
)


LOGIN_PATH = "/login"
PWA_TEMPLATE = "pwa_callback.html"

_TRUE_VALUES = ("true", "1", "yes")


def _flag(value: Optional[str]) -> bool:
    return bool(value) and value.lower() in _TRUE_VALUES


def _with_cookie(response: Response, set_cookie_header: Optional[str]) -> Response:
    if set_cookie_header:
        response.headers["set-cookie"] = set_cookie_header
    return response


class OAuthEndpoints:
    """
    OAuth flow handlers for a Backend-for-Frontend.

    Delivers a completed login in one of three modes, chosen from the flow
    state: web redirect, native app redirect (mobile) or a popup page (PWA).
    """

    def __init__(
        self,
        oauth_client: OAuthClientInterface,
        cookie_manager: CookieSessionManagerInterface,
        sessions: OAuthSessions,
        scope: Optional[str] = None,
        mobile_scheme: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        """
        Initialize OAuth endpoints.

        Args:
            oauth_client: OAuth protocol client
            cookie_manager: Sealed-cookie session manager
            sessions: OAuth session store
            scope: Scope requested at authorization
            mobile_scheme: App callback URL for the mobile flow (None disables it)
            logger: Logger for diagnostics
            audit_logger: Audit trail (default: global audit logger)
        """
        self.oauth_client = oauth_client
        self.cookie_manager = cookie_manager
        self.sessions = sessions
        self.scope = scope
        self.mobile_scheme = mobile_scheme
        self.logger = logger or logging.getLogger(f"{DEFAULT_LOGGER_NAME}.endpoints")
        self.audit = audit_logger or get_audit_logger()

        # Set up Jinja2 template environment for HTML pages
        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )

    @staticmethod
    def _client_info(request: Request) -> Dict[str, Any]:
        return {
            "source_ip": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
        }

    # ===== Login =====

    async def handle_login(self, request: Request) -> Response:
        """
        GET login: redirect to the authorization server.

        Query parameters:
            handle: Identity handle or https:// authorization server URL (required)
            redirect: Same-origin path to land on after login
            mobile, pwa: Flow mode flags
            prompt: Forwarded to the authorization request (e.g. "create")

        Returns:
            302 to the authorization URL, or 400 on invalid input or client failure
        """
        params = request.query_params
        handle = params.get("handle")

        if not handle:
            self.audit.log_event(AuthEvent.LOGIN_REJECTED, "failure", status_code=400,
                                 error_message="Missing handle", **self._client_info(request))
            return PlainTextResponse("Invalid handle", status_code=400)

        if not is_authorization_server_url(handle) and not is_valid_handle(handle):
            self.audit.log_event(AuthEvent.LOGIN_REJECTED, "failure", handle=handle[:253], status_code=400,
                                 error_message="Invalid handle format", **self._client_info(request))
            return PlainTextResponse("Invalid handle format", status_code=400)

        redirect_path = params.get("redirect")
        if redirect_path and not is_safe_redirect_path(redirect_path):
            self.logger.warning(f"Invalid redirect path ignored: {redirect_path[:200]!r}")
            redirect_path = None

        flow_state = OAuthFlowState.create(
            handle=handle,
            redirect_path=redirect_path or None,
            mobile=_flag(params.get("mobile")),
            pwa=_flag(params.get("pwa"))
        )

        # The callback rejects states over MAX_STATE_LENGTH
        state = flow_state.serialize()
        if len(state) > MAX_STATE_LENGTH and flow_state.redirect_path:
            self.logger.warning(f"Over-long redirect path ignored: {flow_state.redirect_path[:200]!r}")
            flow_state.redirect_path = None
            state = flow_state.serialize()
        if len(state) > MAX_STATE_LENGTH:
            self.audit.log_event(AuthEvent.LOGIN_REJECTED, "failure", handle=handle[:253], status_code=400,
                                 error_message="Login state too long", **self._client_info(request))
            return PlainTextResponse("Invalid handle format", status_code=400)

        try:
            auth_url = await self.oauth_client.authorize(
                handle,
                state=state,
                scope=self.scope,
                prompt=params.get("prompt") or None
            )
        except Exception as e:
            self.logger.error(f"OAuth authorize failed for {handle}: {type(e).__name__}: {e}")
            self.audit.log_event(AuthEvent.LOGIN_REJECTED, "failure", handle=handle, status_code=400,
                                 error_message=str(e), **self._client_info(request))
            return PlainTextResponse(str(e) or "Couldn't initiate login", status_code=400)

        self.logger.info(f"Starting OAuth login for {handle}")
        self.audit.log_event(AuthEvent.LOGIN_STARTED, "success", handle=handle, status_code=302,
                             **self._client_info(request))
        return RedirectResponse(url=str(auth_url), status_code=302)

    # ===== Callback =====

    async def handle_callback(self, request: Request) -> Response:
        """
        GET callback: exchange the code and deliver the session.

        Returns:
            302 (web, mobile, or re-login on issuer mismatch), 200 HTML (PWA),
            or 400 on invalid parameters or exchange failure
        """
        params = dict(request.query_params)
        code = params.get("code")
        raw_state = params.get("state")

        if not code or not raw_state:
            return PlainTextResponse("Missing code or state parameters", status_code=400)

        try:
            flow_state = OAuthFlowState.parse(raw_state)
        except InvalidFlowStateError as e:
            self.logger.warning(f"Rejected OAuth callback state: {e}")
            self.audit.log_event(AuthEvent.CALLBACK_FAILED, "failure", status_code=400,
                                 error_message="Invalid state parameter", **self._client_info(request))
            return PlainTextResponse("Invalid state parameter", status_code=400)

        try:
            result = await self.oauth_client.callback(params)
            session = result.session
            await self.sessions.save(session)

            now = int(time.time() * 1000)
            set_cookie_header = await self.cookie_manager.create_session(
                SessionData(did=session.did, created_at=now, last_accessed=now)
            )

            mode = resolve_flow_mode(flow_state, self.mobile_scheme)
            if mode is FlowMode.MOBILE:
                response = await self._mobile_response(session, flow_state)
            elif mode is FlowMode.PWA:
                response = self._pwa_response(session, flow_state)
            else:
                response = RedirectResponse(url=flow_state.redirect_path or "/", status_code=302)
        except Exception as e:
            return self._callback_failure(request, flow_state, e)

        self.logger.info(f"OAuth callback completed for DID {session.did} ({mode.value} flow)")
        self.audit.log_event(AuthEvent.CALLBACK_COMPLETED, "success", did=session.did,
                             handle=session.handle or flow_state.handle, flow_mode=mode.value,
                             status_code=response.status_code, **self._client_info(request))
        return _with_cookie(response, set_cookie_header)

    async def _mobile_response(self, session: SessionInterface, flow_state: OAuthFlowState) -> Response:
        # Short-lived sealed token for the app; the scheme is never client-supplied
        session_token = await self.cookie_manager.seal_token({"did": session.did})
        query = urllib.parse.urlencode({
            "session_token": session_token,
            "did": session.did,
            "handle": session.handle or flow_state.handle,
        })
        separator = "&" if "?" in self.mobile_scheme else "?"
        return RedirectResponse(url=f"{self.mobile_scheme}{separator}{query}", status_code=302)

    def _pwa_response(self, session: SessionInterface, flow_state: OAuthFlowState) -> Response:
        # No tokens in the page: the cookie carries the session
        result = {
            "success": True,
            "did": session.did,
            "handle": session.handle or flow_state.handle,
            "timestamp": int(time.time() * 1000),
        }
        template = self.jinja_env.get_template(PWA_TEMPLATE)
        return HTMLResponse(template.render(result=result), status_code=200)

    def _callback_failure(self, request: Request, flow_state: OAuthFlowState, error: Exception) -> Response:
        kind = classify_oauth_error(error)
        recovered_handle = getattr(error, "handle", None)

        if kind is OAuthClientErrorKind.ISSUER_MISMATCH and recovered_handle:
            self.logger.info(
                f"Issuer mismatch for {flow_state.handle}, restarting login as {recovered_handle}"
            )
            self.audit.log_event(AuthEvent.ISSUER_MISMATCH_REDIRECT, "success", handle=recovered_handle,
                                 status_code=302, **self._client_info(request))
            return RedirectResponse(url=self._relogin_url(recovered_handle, flow_state), status_code=302)

        message = str(error) or type(error).__name__
        self.logger.error(f"OAuth callback failed ({kind.value}): {type(error).__name__}: {message}")
        self.audit.log_event(AuthEvent.CALLBACK_FAILED, "failure", handle=flow_state.handle, status_code=400,
                             error_message=message, **self._client_info(request))
        return PlainTextResponse(f"OAuth callback failed: {message}", status_code=400)

    @staticmethod
    def _relogin_url(handle: str, flow_state: OAuthFlowState) -> str:
        query = {"handle": handle}
        if flow_state.redirect_path:
            query["redirect"] = flow_state.redirect_path
        if flow_state.mobile:
            query["mobile"] = "true"
        if flow_state.pwa:
            query["pwa"] = "true"
        return f"{LOGIN_PATH}?{urllib.parse.urlencode(query)}"

    # ===== Logout =====

    async def handle_logout(self, request: Request) -> Response:
        """
        POST logout: delete the stored OAuth session and clear the cookie.

        Returns:
            200 {"success": true} or 500 {"success": false, "error": ...};
            both attempt to clear the session cookie
        """
        try:
            cookie_result = await self.cookie_manager.get_session_from_request(request)
            did = cookie_result.data.did if cookie_result.data else None

            if did:
                try:
                    await self.sessions.delete(did)
                except Exception as e:
                    # Clearing the cookie is what logs the user out
                    self.logger.warning(f"Failed to delete OAuth session for DID {did} on logout: {e}")

            response = JSONResponse({"success": True}, status_code=200)
            response.headers["set-cookie"] = self.cookie_manager.get_clear_cookie_header()
        except Exception as e:
            self.logger.error(f"Logout failed: {type(e).__name__}: {e}")
            self.audit.log_event(AuthEvent.LOGOUT_FAILED, "failure", status_code=500,
                                 error_message=str(e), **self._client_info(request))
            response = JSONResponse({"success": False, "error": "Logout failed"}, status_code=500)
            try:
                response.headers["set-cookie"] = self.cookie_manager.get_clear_cookie_header()
            except Exception as clear_error:
                self.logger.error(f"Failed to build clear-cookie header: {clear_error}")
            return response

        self.logger.info(f"Logged out DID {did}" if did else "Logout without active session")
        self.audit.log_event(AuthEvent.LOGOUT, "success", did=did, status_code=200,
                             **self._client_info(request))
        return response

    # ===== Session Lookup =====

    async def get_session_from_request(self, request: Request) -> SessionLookupResult:
        """
        Resolve the request's session cookie into a live OAuth session.

        Never raises: every failure is reported through the result's error.

        Args:
            request: Incoming request

        Returns:
            SessionLookupResult with the session and a refreshed Set-Cookie
            header, or session None and a typed error
        """
        try:
            cookie_result = await self.cookie_manager.get_session_from_request(request)
        except Exception as e:
            self.logger.error(f"Session cookie lookup failed: {type(e).__name__}: {e}")
            return SessionLookupResult(
                session=None,
                error=SessionError(SessionErrorType.UNKNOWN, "Failed to read session", details=str(e))
            )

        if cookie_result.error or not cookie_result.data:
            error = cookie_result.error or SessionError(SessionErrorType.NO_COOKIE, "No session found")
            return SessionLookupResult(session=None, error=error)

        did = cookie_result.data.did
        try:
            session = await self.sessions.restore(did)
        except Exception as e:
            kind = classify_oauth_error(e)
            self.logger.error(f"OAuth session restore failed for DID {did} ({kind.value}): {e}")
            # Keep the sliding cookie alive through transient failures
            return SessionLookupResult(
                session=None,
                set_cookie_header=cookie_result.set_cookie_header,
                error=SessionError(
                    SessionErrorType.OAUTH_ERROR,
                    str(e) or "Failed to restore OAuth session",
                    details={"kind": kind.value, "error": type(e).__name__}
                )
            )

        if session is None:
            self.audit.log_event(AuthEvent.SESSION_RESTORE_FAILED, "failure", did=did,
                                 error_message="OAuth session expired or unavailable",
                                 **self._client_info(request))
            return SessionLookupResult(
                session=None,
                set_cookie_header=cookie_result.set_cookie_header,
                error=SessionError(SessionErrorType.SESSION_EXPIRED, "OAuth session expired")
            )

        return SessionLookupResult(session=session, set_cookie_header=cookie_result.set_cookie_header)
