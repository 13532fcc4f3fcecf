import asyncio
import logging
from typing import List, Optional

from asyncua import Client, ua

from uapoller._UAConfig_ import ReadClientConfig
from uapoller._UAErrors_ import (
    AuthenticationError,
    CommunicationError,
    SecurityNegotiationError,
    SessionTimeoutError,
)
from uapoller._UASecurity_ import (
    APPLICATION_URI,
    POLICY_BY_URI,
    POLICY_NONE_URI,
    generate_client_certificate,
    load_certificate,
    load_private_key,
    security_disabled,
    select_endpoint,
)

# status code value -> name
STATUS_CODE_NAMES = {getattr(ua.StatusCodes, attr): attr for attr in dir(ua.StatusCodes) if not attr.startswith('__')}

_AUTH_STATUS_NAMES = [
    "BadIdentityTokenInvalid",
    "BadIdentityTokenRejected",
    "BadUserAccessDenied",
    "BadUserSignatureInvalid",
]
_SECURITY_STATUS_NAMES = [
    "BadSecurityPolicyRejected",
    "BadSecurityModeRejected",
    "BadSecurityChecksFailed",
    "BadCertificateInvalid",
    "BadCertificateUntrusted",
    "BadCertificateRevoked",
    "BadCertificateTimeInvalid",
    "BadCertificateUriInvalid",
    "BadCertificateHostNameInvalid",
    "BadCertificateUseNotAllowed",
    "BadNoValidCertificates",
]
AUTH_STATUS_CODES = {getattr(ua.StatusCodes, n) for n in _AUTH_STATUS_NAMES if hasattr(ua.StatusCodes, n)}
SECURITY_STATUS_CODES = {getattr(ua.StatusCodes, n) for n in _SECURITY_STATUS_NAMES if hasattr(ua.StatusCodes, n)}


def status_name(code: int) -> str:
    return STATUS_CODE_NAMES.get(code, "UnknownStatusCode")


class _OPCUASession_:
    """One authenticated connection; replaced as a whole on reconnect."""

    def __init__(self, config: ReadClientConfig, client: Client, policy_uri: str = POLICY_NONE_URI,
                 security_mode=ua.MessageSecurityMode.None_):
        self.config = config
        self.client = client
        self.policy_uri = policy_uri
        self.security_mode = security_mode
        self.registered_nodes: Optional[List] = None
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def close(self):
        if not self._open:
            return
        self._open = False
        self.registered_nodes = None
        try:
            await asyncio.wait_for(self.client.disconnect(), timeout=self.config.request_timeout)
            logging.debug(f"_OPCUASession_.close: Disconnected from {self.config.endpoint}")
        except Exception as e:
            logging.warning(f"_OPCUASession_.close: Error while disconnecting from {self.config.endpoint}: {str(e)}")

    def __repr__(self):
        state = "open" if self._open else "closed"
        return f"_OPCUASession_({self.config.endpoint!r}, {self.policy_uri.rsplit('#', 1)[-1]}, {state})"


def check_credentials(config: ReadClientConfig):
    """Validate the credentials of the selected auth method without touching the network."""
    if config.auth_method == "UserName":
        if not config.username:
            raise AuthenticationError("auth method 'UserName' requires a non-empty username")
    elif config.auth_method == "Certificate":
        if not config.certificate or not config.private_key:
            raise AuthenticationError("auth method 'Certificate' requires both certificate and private_key")
        load_certificate(config.certificate)
        load_private_key(config.private_key)
    elif config.username or config.password:
        logging.warning(f"check_credentials: username/password are ignored with auth method {config.auth_method!r}")


async def _apply_security(client: Client, config: ReadClientConfig):
    if security_disabled(config.security_policy, config.security_mode):
        logging.debug("_apply_security: Connecting with no security policy (SecurityPolicy#None)")
        return POLICY_NONE_URI, ua.MessageSecurityMode.None_

    endpoints = await asyncio.wait_for(client.connect_and_get_server_endpoints(), timeout=config.connect_timeout)
    endpoint = select_endpoint(endpoints, config.security_policy, config.security_mode)
    if endpoint.SecurityPolicyUri == POLICY_NONE_URI:
        return POLICY_NONE_URI, ua.MessageSecurityMode.None_

    if config.certificate or config.private_key:
        cert_path, key_path = config.certificate, config.private_key
        load_certificate(cert_path)
        load_private_key(key_path)
    else:
        logging.info("_apply_security: No client certificate configured, using a self-signed one")
        cert_path, key_path = generate_client_certificate()

    policy = POLICY_BY_URI[endpoint.SecurityPolicyUri]
    await client.set_security(
        policy,
        cert_path,
        key_path,
        server_certificate=endpoint.ServerCertificate or None,
        mode=endpoint.SecurityMode,
    )
    logging.debug(f"_apply_security: Security set: policy={policy.URI}, mode={endpoint.SecurityMode}")
    return endpoint.SecurityPolicyUri, endpoint.SecurityMode


async def _apply_identity(client: Client, config: ReadClientConfig):
    if config.auth_method == "UserName":
        client.set_user(config.username)
        client.set_password(config.password)
    elif config.auth_method == "Certificate":
        await client.load_client_certificate(config.certificate)
        await client.load_private_key(config.private_key)


async def _abort(client: Client, timeout: float):
    try:
        await asyncio.wait_for(client.disconnect(), timeout=timeout)
    except Exception as e:
        logging.debug(f"_abort: Ignoring disconnect error after failed connect: {str(e)}")


def classify_status_error(e: ua.UaStatusCodeError, endpoint: str) -> CommunicationError:
    name = status_name(e.code)
    message = f"connecting to {endpoint} failed: {name} ({hex(e.code)})"
    if e.code in AUTH_STATUS_CODES:
        return AuthenticationError(message)
    if e.code in SECURITY_STATUS_CODES:
        return SecurityNegotiationError(message)
    return CommunicationError(message)


async def connect(config: ReadClientConfig, client_factory=Client) -> _OPCUASession_:
    """
    Open a new session: negotiate security, authenticate, connect.

    Each call builds a fresh transport client and performs the full handshake.
    On failure the transport is disconnected and a CommunicationError subclass
    is raised.
    """
    check_credentials(config)
    client = client_factory(config.endpoint, timeout=config.request_timeout)
    client.application_uri = APPLICATION_URI
    try:
        policy_uri, mode = await _apply_security(client, config)
        await _apply_identity(client, config)
        logging.debug(f"connect: Attempting to connect to {config.endpoint} as {config.auth_method}...")
        await asyncio.wait_for(client.connect(), timeout=config.connect_timeout)
    except asyncio.CancelledError:
        await _abort(client, config.request_timeout)
        raise
    except CommunicationError:
        await _abort(client, config.request_timeout)
        raise
    except asyncio.TimeoutError as e:
        await _abort(client, config.request_timeout)
        raise SessionTimeoutError(f"connecting to {config.endpoint} timed out after {config.connect_timeout}s") from e
    except ua.UaStatusCodeError as e:
        await _abort(client, config.request_timeout)
        raise classify_status_error(e, config.endpoint) from e
    except Exception as e:
        await _abort(client, config.request_timeout)
        raise CommunicationError(f"connecting to {config.endpoint} failed: {str(e)}") from e

    logging.info(f"connect: Connected to {config.endpoint} (policy={policy_uri.rsplit('#', 1)[-1]}, auth={config.auth_method})")
    return _OPCUASession_(config, client, policy_uri, mode)
