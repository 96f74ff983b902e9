"""
API Client - makes authenticated requests with PAN signatures

``perform_secure_action`` is the entry point for anything sensitive: it
fetches a nonce, claims the user's matching gesture from the recorder, has the
signing context sign the action and sends the three PAN headers along.
The endpoint path doubles as the action context, so ``http`` must be rooted
at the server (no path prefix in its base URL).
"""
import json
import logging
from typing import Any, Dict, Optional

import httpx

from pan.client.recorder import InteractionRecorder
from pan.client.signing_client import SigningClient
from pan.core.errors import (
    PanError, ProofRejected, CredentialsRejected, MalformedEnvelope, NonceInvalidOrReused,
    OriginRejected, SessionInvalidOrExpired, VerificationRejected,
)
from pan.models.models import Action, LoginRequest
from pan.services.request_verifier import ACTION_KIND, PROOF_HEADER, SESSION_HEADER, SIGNATURE_HEADER

log = logging.getLogger(__name__)

_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (SessionInvalidOrExpired, CredentialsRejected, MalformedEnvelope, NonceInvalidOrReused, OriginRejected)
}

NO_INTERACTION = "No valid user interaction for this action. Please try clicking the button again."


class PanClient:
    def __init__(self, http: httpx.AsyncClient, signer: SigningClient, recorder: InteractionRecorder):
        self.http = http
        self.signer = signer
        self.recorder = recorder
        self.session_id: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None

    @property
    def is_authenticated(self) -> bool:
        return self.session_id is not None

    def _session_headers(self) -> Dict[str, str]:
        return {SESSION_HEADER: self.session_id} if self.session_id else {}

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.is_success:
            return data
        code = data.get("code")
        message = data.get("message") or f"Request failed with status {resp.status_code}"
        if code == VerificationRejected.code:
            raise VerificationRejected("REMOTE", message)
        raise _ERRORS_BY_CODE.get(code, PanError)(message)

    # ---------------- Session ----------------

    async def login(self, username: str, password: str, mfa_code: Optional[str] = None) -> Dict[str, Any]:
        public_key = await self.signer.initialize()
        body = LoginRequest(username=username, password=password, mfa_code=mfa_code, public_key=public_key)
        data = self._json(await self.http.post("/api/auth/login", json=body.to_wire()))
        self.session_id = data["sessionId"]
        self.user = data.get("user")
        log.info("Logged in as %s", username)
        return data

    async def logout(self):
        try:
            if self.session_id:
                self._json(await self.http.post("/api/auth/logout", headers=self._session_headers()))
        finally:
            self.session_id = None
            self.user = None
            self.recorder.reset()
            await self.signer.destroy()

    async def fetch_nonce(self) -> str:
        data = self._json(await self.http.get("/api/nonce", headers=self._session_headers()))
        return data["nonce"]

    async def session_info(self) -> Dict[str, Any]:
        return self._json(await self.http.get("/api/session/info", headers=self._session_headers()))

    # ---------------- Signed requests ----------------

    async def perform_secure_action(self, endpoint: str, display_name: str, payload: Any = None) -> Dict[str, Any]:
        action = Action(kind=ACTION_KIND, context=endpoint, display_name=display_name, payload=payload)
        nonce = await self.fetch_nonce()

        proof = self.recorder.build_proof(action, nonce)
        if proof is None:
            raise ProofRejected("NO_MATCHING_INTERACTION", NO_INTERACTION)

        signature = await self.signer.sign(action, proof, nonce)
        headers = {
            "Content-Type": "application/json",
            **self._session_headers(),
            SIGNATURE_HEADER: signature,
            PROOF_HEADER: json.dumps(proof.to_wire(), separators=(",", ":")),
        }
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        return self._json(await self.http.post(endpoint, content=body, headers=headers))
