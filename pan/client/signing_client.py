"""
Signing Client - the caller's side of the signing channel.

Requests are matched to responses by correlation id, never by arrival order.
A request that times out is forgotten; if its response turns up later it is
dropped rather than handed to some other waiter.
"""
import asyncio
import logging
import secrets
from typing import Any, Dict, Optional

from pydantic import ValidationError

from pan.core.errors import ERRORS_BY_CODE, ProofRejected, SignerError, SignerTimeout
from pan.models.models import Action, InteractionProof, SigningRequest, SigningResponse
from pan.signer.context import SignerPort
from pan.utils.helpers import now_ms

log = logging.getLogger(__name__)

SIGNER_TIMEOUT_MS = 10000


class SigningClient:
    def __init__(self, port: SignerPort, timeout_ms: int = SIGNER_TIMEOUT_MS):
        self.port = port
        self.timeout = timeout_ms / 1000
        self._pending: Dict[str, asyncio.Future] = {}
        self._ready = asyncio.Event()
        self._reader: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "SigningClient":
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self):
        if self._reader is None:
            self._reader = asyncio.create_task(self._read(), name="signing-client-reader")

    async def close(self):
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(SignerError("Signing channel closed"))
        self._pending.clear()

    async def _read(self):
        while True:
            message = await self.port.receive()
            if not isinstance(message, dict):
                continue
            if message.get("kind") == "READY":
                log.info("Signing context is ready")
                self._ready.set()
                continue
            fut = self._pending.pop(message.get("correlationId"), None)
            if fut is None or fut.done():
                log.debug("Discarding late or unknown response %s", message.get("correlationId"))
                continue
            fut.set_result(message)

    async def wait_ready(self):
        try:
            await asyncio.wait_for(self._ready.wait(), self.timeout)
        except asyncio.TimeoutError:
            raise SignerTimeout("Signing context failed to load")

    @staticmethod
    def _new_correlation_id() -> str:
        return f"{now_ms()}-{secrets.token_hex(6)}"

    async def _request(self, kind: str, **fields: Any) -> SigningResponse:
        await self.start()
        if not self._ready.is_set():
            await self.wait_ready()

        correlation_id = self._new_correlation_id()
        request = SigningRequest(kind=kind, correlation_id=correlation_id, **fields)
        fut = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = fut
        try:
            await self.port.post(request.to_wire())
            raw = await asyncio.wait_for(fut, self.timeout)
        except asyncio.TimeoutError:
            log.warning("Signing request %s (%s) timed out", correlation_id, kind)
            raise SignerTimeout()
        finally:
            self._pending.pop(correlation_id, None)

        try:
            response = SigningResponse.model_validate(raw)
        except ValidationError:
            raise SignerError("Malformed response from signing context")
        if not response.ok:
            raise self._error(response)
        return response

    @staticmethod
    def _error(response: SigningResponse) -> Exception:
        if response.code == ProofRejected.code:
            return ProofRejected(response.reason or "PROOF_REJECTED", response.error)
        cls = ERRORS_BY_CODE.get(response.code, SignerError)
        return cls(response.error)

    # ---------------- Operations ----------------

    async def initialize(self) -> Dict[str, Any]:
        """New signing identity; returns its public JWK for server registration."""
        response = await self._request("INIT")
        if not response.public_key:
            raise SignerError("No public key returned from signing context")
        log.info("Signing identity initialized")
        return response.public_key

    async def get_public_key(self) -> Dict[str, Any]:
        response = await self._request("GET_PUBLIC_KEY")
        if not response.public_key:
            raise SignerError("No public key returned from signing context")
        return response.public_key

    async def sign(self, action: Action, proof: InteractionProof, nonce: str) -> str:
        log.info("Requesting signature for %r", action.display_name)
        response = await self._request("SIGN", action=action, proof=proof, nonce=nonce)
        if not response.signature:
            raise SignerError("No signature returned")
        return response.signature

    async def destroy(self) -> None:
        await self._request("DESTROY")
