"""
AT Protocol OAuth BFF Server

Starlette application exposing the OAuth Backend-for-Frontend routes:

    GET  /                              Health check
    GET  /login                         Start login (?handle=&redirect=&mobile=&pwa=&prompt=)
    GET  /oauth/callback                OAuth redirect target
    GET  /oauth-client-metadata.json    OAuth client metadata document
    POST /api/auth/logout               Log out and clear the session cookie
    GET  /api/auth/session              Current session status

CONFIGURATION
=============
    ATPROTO_BASE_URL        Public base URL (required)
    ATPROTO_APP_NAME        Client display name (required)
    COOKIE_SECRET           Cookie sealing secret, at least 32 characters (required)
    OAUTH_CLIENT_FACTORY    Import path of the OAuth client factory, "module:callable" (required)
    REDIS_URL               Session storage (default: redis://localhost:6379)
    SESSION_TTL, OAUTH_SCOPE, MOBILE_SCHEME, LOGO_URI, POLICY_URI (optional)
    HOST, PORT              Listen address (default: 0.0.0.0:8000)

Run with:
    python server.py
"""

import contextlib
import importlib
import logging
import os
import sys
from typing import Callable

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from atproto_oauth import ATProtoOAuth, ConfigurationError, OAuthConfig, create_atproto_oauth
from oauth_metadata import CALLBACK_PATH, METADATA_PATH
from oauth_storage import RedisStorage
from oauth_types import SessionErrorType


# Lookup failures that are not the caller's fault
_ERROR_STATUS = {
    SessionErrorType.OAUTH_ERROR: 503,
    SessionErrorType.UNKNOWN: 500,
}


def create_app(oauth: ATProtoOAuth) -> Starlette:
    """
    Build the Starlette application around a configured ATProtoOAuth.

    Args:
        oauth: Composition root

    Returns:
        Starlette app
    """

    async def root(request: Request):
        return JSONResponse({"status": "ok", "type": "atproto-oauth-bff"})

    async def handle_session_endpoint(request: Request):
        """GET /api/auth/session - status of the caller's session"""
        result = await oauth.get_session_from_request(request)

        if result.session is None:
            error = result.error
            status_code = _ERROR_STATUS.get(error.type, 401) if error else 401
            body = {"authenticated": False}
            if error:
                body["error"] = error.type.value
                body["message"] = error.message
            response = JSONResponse(body, status_code=status_code)
        else:
            session = result.session
            response = JSONResponse({
                "authenticated": True,
                "did": session.did,
                "handle": session.handle,
                "pds_url": session.pds_url,
            })

        if result.set_cookie_header:
            response.headers["set-cookie"] = result.set_cookie_header
        return response

    @contextlib.asynccontextmanager
    async def lifespan(app):
        yield
        close = getattr(oauth.storage, "close", None)
        if close is not None:
            await close()

    routes = [
        Route("/", root, methods=["GET"]),
        Route("/login", oauth.handle_login, methods=["GET"]),
        Route(CALLBACK_PATH, oauth.handle_callback, methods=["GET"]),
        Route(METADATA_PATH, oauth.handle_client_metadata, methods=["GET"]),
        Route("/api/auth/logout", oauth.handle_logout, methods=["POST"]),
        Route("/api/auth/session", handle_session_endpoint, methods=["GET"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)


def load_client_factory(path: str) -> Callable:
    """
    Resolve a "module:callable" import path.

    Raises:
        ConfigurationError: If the path is malformed or cannot be imported
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"OAUTH_CLIENT_FACTORY must look like 'module:callable', got '{path}'")

    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load OAuth client factory '{path}': {e}")


def create_app_from_env() -> Starlette:
    """Build the app from environment variables (see module docstring)."""
    factory_path = os.getenv("OAUTH_CLIENT_FACTORY", "")
    if not factory_path:
        raise ConfigurationError("OAUTH_CLIENT_FACTORY is required")

    config = OAuthConfig.from_env(
        storage=RedisStorage(),
        oauth_client_factory=load_client_factory(factory_path)
    )
    return create_app(create_atproto_oauth(config))


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )

    try:
        app = create_app_from_env()
    except ConfigurationError as e:
        logging.error(f"Invalid configuration: {e}")
        sys.exit(1)

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logging.info(f"Starting AT Protocol OAuth BFF on {host}:{port}")
    uvicorn.run(app, host=host, port=port)
