"""
protocol.py
------------
Implements the sign-in flow on the server side:
- Request issuance (authorization request bound to a session)
- Callback handling (consume the session, verify the proof token)

Cryptographic checks are delegated to verifier.Verifier.
"""

import logging
import uuid
from dataclasses import dataclass

from zkid_server import storage
from zkid_server.config import CIRCUIT_ID, ServerConfig
from zkid_server.messages import (
    AuthorizationRequest,
    AuthorizationResponse,
    ProofRequirement,
    create_authorization_request,
)
from zkid_server.verifier import VerificationError

logger = logging.getLogger(__name__)

SIGN_IN_REASON = "test flow"
SIGN_IN_MESSAGE = "message to sign"


@dataclass(frozen=True)
class IssuedRequest:
    session_id: str
    request: AuthorizationRequest


# ===========================================================
# Request issuance
# ===========================================================
def country_code_requirement(config: ServerConfig) -> ProofRequirement:
    # CountryCode must equal the configured value (84 by default)
    return ProofRequirement(
        id=1,
        circuit_id=CIRCUIT_ID,
        query={
            "allowedIssuers": ["*"],
            "schema": {
                "type": config.schema_type,
                "url": config.schema_url,
            },
            "req": {
                "CountryCode": {
                    "$eq": config.country_code,
                },
            },
        },
    )


def build_sign_in_request(config: ServerConfig, session_id: str) -> AuthorizationRequest:
    """
    Builds the authorization request for one session: fixed reason and
    message, the configured audience, a callback URI carrying the session id
    and a single country-code proof requirement.
    """
    uri = f"{config.callback_url}?sessionId={session_id}"
    request = create_authorization_request(
        SIGN_IN_REASON,
        SIGN_IN_MESSAGE,
        config.audience,
        uri,
    )
    request.add_requirement(country_code_requirement(config))
    return request


def issue_request(config: ServerConfig, store: storage.SessionStore) -> IssuedRequest:
    """
    Creates a request and stores it under the session id.
    A fixed session id means each call replaces the previous request.
    Expired sessions are dropped first so the store stays bounded.
    """
    purged = store.purge_expired()
    if purged:
        logger.info("Purged %d expired sessions", purged)

    session_id = config.session_id or uuid.uuid4().hex
    request = build_sign_in_request(config, session_id)
    store.put(session_id, request.to_dict())
    logger.info("Issued authorization request %s for session %s", request.thid, session_id)
    return IssuedRequest(session_id, request)


# ===========================================================
# Callback
# ===========================================================
def handle_callback(store: storage.SessionStore, verifier, session_id: str,
                    token: str) -> AuthorizationResponse:
    """
    Consumes the session and verifies `token` against its stored request.
    Raises storage.SessionError for unknown, expired or reused sessions and
    VerificationError when the proof does not hold. Either way the session
    can no longer be used once consumed.
    """
    session = store.consume(session_id)
    request = AuthorizationRequest.from_dict(session.request)

    try:
        if not token:
            raise VerificationError("Empty proof token")
        response = verifier.full_verify(token, request)
    except Exception:
        store.set_state(session_id, storage.FAILED, request.id)
        raise

    store.set_state(session_id, storage.VERIFIED, request.id)
    logger.info("Session %s verified for %s", session_id, response.from_)
    return response
