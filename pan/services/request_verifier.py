"""
Request Verifier - the server-side gate for protected requests

Every protected request walks the same chain of stages. The first failing
stage ends the request with ``VerificationRejected``; the stage and reason
are logged here and never shown to the client. The specific error
(``SignatureInvalid``, ``NonceInvalidOrReused``, ...) is chained as its cause.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from pan.core.errors import (
    MalformedEnvelope, NonceInvalidOrReused, PanError, ProofRejected,
    SessionInvalidOrExpired, SignatureInvalid, VerificationRejected,
)
from pan.models.models import Action, InteractionProof, Session
from pan.services.nonce_service import NonceAuthority
from pan.services.proof_validator import ProofValidator, humanness_score
from pan.services.session_service import SessionService
from pan.services.signature_verifier import SignatureVerifier
from pan.utils.helpers import short_id

log = logging.getLogger(__name__)

VerificationStage = Enum("VerificationStage", [
    "REQUEST_RECEIVED",
    "HEADERS_EXTRACTED",
    "SESSION_RESOLVED",
    "PROOF_PARSED",
    "NONCE_CONSUMED",
    "ACTION_RECONSTRUCTED",
    "PROOF_VALIDATED",
    "SIGNATURE_VERIFIED",
    "AUTHORIZED",
])

SESSION_HEADER = "X-Session-Id"
SIGNATURE_HEADER = "X-Signature"
PROOF_HEADER = "X-Interaction-Proof"
PROTECTED_HEADERS = (SESSION_HEADER, SIGNATURE_HEADER, PROOF_HEADER)

ACTION_KIND = "api_call"


@dataclass(frozen=True)
class VerifiedRequest:
    session: Session
    action: Action
    proof: InteractionProof
    humanness: int


class RequestVerifier:
    def __init__(
        self,
        sessions: SessionService,
        nonces: NonceAuthority,
        validator: ProofValidator,
        signatures: Optional[SignatureVerifier] = None,
    ):
        self.sessions = sessions
        self.nonces = nonces
        self.validator = validator
        self.signatures = signatures or SignatureVerifier()

    async def verify(
        self,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
        display_name: Optional[str] = None,
    ) -> VerifiedRequest:
        """
        Run the full chain for one request.

        ``display_name`` pins the label the route expects; without it the
        label claimed by the proof is used.
        """
        stage = VerificationStage.REQUEST_RECEIVED

        def reject(reason: str, signal: Optional[PanError] = None):
            log.warning("Protected request rejected - path: %s, stage: %s, reason: %s", path, stage.name, reason)
            raise VerificationRejected(stage.name, reason) from signal

        # Headers
        stage = VerificationStage.HEADERS_EXTRACTED
        values = {}
        for name in PROTECTED_HEADERS:
            value = headers.get(name)
            if not value:
                reject(f"missing {name} header", MalformedEnvelope())
            values[name] = value
        session_id, signature, proof_json = (values[name] for name in PROTECTED_HEADERS)

        # Session; the public key is read fresh from the store every time
        stage = VerificationStage.SESSION_RESOLVED
        try:
            session = await self.sessions.resolve(session_id)
        except SessionInvalidOrExpired as e:
            reject(f"unknown or expired session {short_id(session_id)}", e)

        stage = VerificationStage.PROOF_PARSED
        try:
            proof = InteractionProof.model_validate_json(proof_json)
        except ValidationError as e:
            reject(f"invalid interaction proof format ({e.error_count()} error(s))", MalformedEnvelope())

        # Consumed before anything else can fail so a rejected request still burns it
        stage = VerificationStage.NONCE_CONSUMED
        if not await self.nonces.consume(proof.nonce):
            reject("invalid or reused nonce", NonceInvalidOrReused())

        stage = VerificationStage.ACTION_RECONSTRUCTED
        try:
            payload: Any = json.loads(body) if body else None
        except (ValueError, RecursionError):
            reject("request body is not JSON", MalformedEnvelope())
        action = Action(
            kind=ACTION_KIND,
            context=path,
            display_name=display_name or proof.action_context,
            payload=payload,
        )

        stage = VerificationStage.PROOF_VALIDATED
        result = self.validator.validate(proof, action)
        if not result.ok:
            reject(f"{result.reason.name}: {result.detail}", ProofRejected(result.reason.name, result.detail))

        stage = VerificationStage.SIGNATURE_VERIFIED
        if not self.signatures.verify(session.public_key, signature, action, proof, proof.nonce):
            reject("signature verification failed", SignatureInvalid())

        stage = VerificationStage.AUTHORIZED
        await self.sessions.touch(session.session_id)
        score = humanness_score(proof.trajectory)
        log.info(
            "Protected request authorized - user: %s, action: %r, humanness: %d",
            session.user_id, action.display_name, score,
        )
        return VerifiedRequest(session=session, action=action, proof=proof, humanness=score)
