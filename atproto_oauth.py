"""
AT Protocol OAuth for Backend-for-Frontend apps

Composition root: validates configuration, builds the OAuth client, cookie
session manager, session store and endpoints, and exposes the handler set.

Auth audit events are written to stdout as `AUDIT: {json}` lines unless
AUDIT_LOG_ENABLED=false is set or an audit_logger is passed in (see
audit_logger). Application logs go through the `atproto_oauth` logger, which
prints nothing until the host configures logging.

Usage:
    oauth = create_atproto_oauth(OAuthConfig(
        base_url="https://app.example.com",
        app_name="Example",
        cookie_secret=os.environ["COOKIE_SECRET"],
        storage=RedisStorage(),
        oauth_client_factory=build_client,
    ))
"""

import copy
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from audit_logger import AuditLogger
from oauth_endpoints import OAuthEndpoints
from oauth_metadata import DEFAULT_SCOPE, generate_client_metadata, normalize_base_url, validate_client_metadata
from oauth_sessions import OAuthSessions
from oauth_types import DEFAULT_LOGGER_NAME, OAuthClientInterface, OAuthStorage, SessionLookupResult
from session_cookies import SessionManager


DEFAULT_SESSION_TTL = 60 * 60 * 24 * 7  # 7 days
MAX_PUBLIC_CLIENT_SESSION_TTL = 60 * 60 * 24 * 14  # 14 days, advised ceiling for public clients
DEFAULT_MOBILE_SCHEME = "app://auth-callback"
MIN_COOKIE_SECRET_LENGTH = 32


class ConfigurationError(ValueError):
    """Invalid OAuth configuration."""
    pass


@dataclass
class OAuthConfig:
    """Configuration for ATProtoOAuth."""
    base_url: str
    app_name: str
    cookie_secret: str
    storage: Optional[OAuthStorage]
    oauth_client_factory: Optional[Callable[..., OAuthClientInterface]]
    session_ttl: int = DEFAULT_SESSION_TTL
    scope: str = DEFAULT_SCOPE
    mobile_scheme: Optional[str] = DEFAULT_MOBILE_SCHEME
    logo_uri: Optional[str] = None
    policy_uri: Optional[str] = None
    logger: Optional[logging.Logger] = None
    cookie_name: str = "sid"
    mobile_token_ttl: int = 300

    @classmethod
    def from_env(
        cls,
        storage: OAuthStorage,
        oauth_client_factory: Callable[..., OAuthClientInterface],
        **overrides: Any
    ) -> "OAuthConfig":
        """
        Build configuration from environment variables.

        Reads ATPROTO_BASE_URL, ATPROTO_APP_NAME, COOKIE_SECRET, SESSION_TTL,
        OAUTH_SCOPE, MOBILE_SCHEME, LOGO_URI and POLICY_URI. Keyword
        overrides win over the environment.

        Raises:
            ConfigurationError: If SESSION_TTL is not an integer
        """
        ttl_str = os.getenv("SESSION_TTL")
        try:
            session_ttl = int(ttl_str) if ttl_str else DEFAULT_SESSION_TTL
        except ValueError:
            raise ConfigurationError(f"SESSION_TTL must be an integer, got '{ttl_str}'")

        values: Dict[str, Any] = {
            "base_url": os.getenv("ATPROTO_BASE_URL", ""),
            "app_name": os.getenv("ATPROTO_APP_NAME", ""),
            "cookie_secret": os.getenv("COOKIE_SECRET", ""),
            "storage": storage,
            "oauth_client_factory": oauth_client_factory,
            "session_ttl": session_ttl,
            "scope": os.getenv("OAUTH_SCOPE") or DEFAULT_SCOPE,
            "mobile_scheme": os.getenv("MOBILE_SCHEME") or DEFAULT_MOBILE_SCHEME,
            "logo_uri": os.getenv("LOGO_URI") or None,
            "policy_uri": os.getenv("POLICY_URI") or None,
        }
        values.update(overrides)
        return cls(**values)


def validate_config(config: OAuthConfig) -> None:
    """
    Fail fast on unusable configuration.

    Raises:
        ConfigurationError: Naming the first invalid setting
    """
    if not config.base_url:
        raise ConfigurationError("base_url is required")
    if not config.app_name:
        raise ConfigurationError("app_name is required")
    if not config.cookie_secret:
        raise ConfigurationError("cookie_secret is required")
    if len(config.cookie_secret) < MIN_COOKIE_SECRET_LENGTH:
        raise ConfigurationError(
            f"cookie_secret must be at least {MIN_COOKIE_SECRET_LENGTH} characters for secure encryption"
        )
    if config.storage is None:
        raise ConfigurationError("storage is required")
    if config.oauth_client_factory is None:
        raise ConfigurationError("oauth_client_factory is required")


class ATProtoOAuth:
    """
    AT Protocol OAuth integration for a web backend.

    Exposes:
    - handle_login / handle_callback / handle_logout / handle_client_metadata
    - get_session_from_request for protected routes
    - sessions, the OAuth session store, for managing sessions outside HTTP
    """

    def __init__(self, config: OAuthConfig, audit_logger: Optional[AuditLogger] = None):
        """
        Initialize and wire all components.

        Args:
            config: OAuth configuration
            audit_logger: Audit trail (default: global audit logger)

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        validate_config(config)

        self.logger = config.logger or logging.getLogger(DEFAULT_LOGGER_NAME)
        self.base_url = normalize_base_url(config.base_url)

        self.session_ttl = config.session_ttl or DEFAULT_SESSION_TTL
        if self.session_ttl > MAX_PUBLIC_CLIENT_SESSION_TTL:
            self.logger.warning(
                f"session_ttl {self.session_ttl}s exceeds the {MAX_PUBLIC_CLIENT_SESSION_TTL}s "
                f"ceiling advised for public OAuth clients"
            )

        self.scope = config.scope or DEFAULT_SCOPE
        self.mobile_scheme = config.mobile_scheme or DEFAULT_MOBILE_SCHEME

        self.client_metadata = generate_client_metadata(
            self.base_url,
            config.app_name,
            scope=self.scope,
            logo_uri=config.logo_uri,
            policy_uri=config.policy_uri
        )
        validation = validate_client_metadata(self.client_metadata)
        for error in validation["errors"]:
            self.logger.error(f"Client metadata: {error}")
        for warning in validation["warnings"]:
            self.logger.warning(f"Client metadata: {warning}")

        self.storage = config.storage
        self.oauth_client = config.oauth_client_factory(
            client_id=self.client_metadata["client_id"],
            redirect_uri=self.client_metadata["redirect_uris"][0],
            storage=self.storage,
            logger=self.logger
        )

        self.session_manager = SessionManager(
            config.cookie_secret,
            cookie_name=config.cookie_name,
            session_ttl=self.session_ttl,
            secure=not self.base_url.startswith("http://"),
            token_ttl=config.mobile_token_ttl,
            logger=self.logger
        )
        self.sessions = OAuthSessions(self.oauth_client, self.storage, self.session_ttl, logger=self.logger)
        self.endpoints = OAuthEndpoints(
            self.oauth_client,
            self.session_manager,
            self.sessions,
            scope=self.scope,
            mobile_scheme=self.mobile_scheme,
            logger=self.logger,
            audit_logger=audit_logger
        )

        self.logger.info(f"AT Protocol OAuth initialized for {self.base_url} (client_id={self.client_metadata['client_id']})")

    async def handle_login(self, request: Request) -> Response:
        return await self.endpoints.handle_login(request)

    async def handle_callback(self, request: Request) -> Response:
        return await self.endpoints.handle_callback(request)

    async def handle_logout(self, request: Request) -> Response:
        return await self.endpoints.handle_logout(request)

    async def handle_client_metadata(self, request: Optional[Request] = None) -> Response:
        """GET /oauth-client-metadata.json"""
        return JSONResponse(self.client_metadata, status_code=200)

    async def get_session_from_request(self, request: Request) -> SessionLookupResult:
        return await self.endpoints.get_session_from_request(request)

    def get_client_metadata(self) -> Dict[str, Any]:
        """Precomputed client metadata document (a copy)."""
        return copy.deepcopy(self.client_metadata)

    def get_clear_cookie_header(self) -> str:
        return self.session_manager.get_clear_cookie_header()


def create_atproto_oauth(config: OAuthConfig, audit_logger: Optional[AuditLogger] = None) -> ATProtoOAuth:
    """
    Create the AT Protocol OAuth integration.

    Args:
        config: OAuth configuration
        audit_logger: Audit trail (default: global audit logger)

    Returns:
        Configured ATProtoOAuth instance

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    return ATProtoOAuth(config, audit_logger=audit_logger)
