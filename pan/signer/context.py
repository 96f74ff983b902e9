"""
Signing context - the isolated signer and its message channel.

``SigningContext`` is the state machine: it answers one envelope at a time
and never lets an exception cross the channel. ``SigningHost`` is the actor
around it: callers ``connect()`` with their origin and get a ``SignerPort``;
everything they post lands in one inbox drained by a single task, and each
response goes back only to the port the request came from.
"""
import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError

from pan.core.errors import PanError, MalformedEnvelope, NotInitialized, ProofRejected, SignerError
from pan.models.models import SigningRequest, SigningResponse
from pan.services.proof_validator import ProofValidator
from pan.signer.key_vault import KeyVault
from pan.utils.canonical import build_signing_message
from pan.utils.helpers import b64

log = logging.getLogger(__name__)

SignerState = Enum("SignerState", ["UNINITIALIZED", "READY"])
SigningOp = Enum("SigningOp", ["INIT", "GET_PUBLIC_KEY", "SIGN", "DESTROY"])

READY_MESSAGE = {"kind": "READY"}


class SigningContext:
    def __init__(self, vault: KeyVault, allowed_origins: Iterable[str], validator: ProofValidator):
        self.vault = vault
        self.allowed_origins = frozenset(allowed_origins)
        self.validator = validator
        self.state = SignerState.UNINITIALIZED

    def accepts(self, origin: str) -> bool:
        return origin in self.allowed_origins

    async def _require_ready(self):
        if self.state is SignerState.READY:
            return
        # An identity persisted earlier for this origin is picked up as-is.
        if not await self.vault.has_identity():
            raise NotInitialized()
        log.info("Resumed persisted signing identity for %s", self.vault.origin)
        self.state = SignerState.READY

    async def handle(self, origin: str, message: Any) -> Optional[Dict[str, Any]]:
        """Process one envelope. Returns the response, or None when the message is dropped."""
        if not self.accepts(origin):
            # Dropped without a reply so callers cannot probe the allow-list.
            log.warning("Dropped message from unauthorized origin: %s", origin)
            return None

        correlation_id = message.get("correlationId") if isinstance(message, dict) else None
        if not isinstance(correlation_id, str) or not correlation_id:
            log.warning("Dropped envelope without correlation id from %s", origin)
            return None

        try:
            request = SigningRequest.model_validate(message)
            op = SigningOp.__members__.get(request.kind)
            if op is None:
                raise MalformedEnvelope(f"Unknown request type: {request.kind}")
            log.debug("Handling %s (%s) from %s", op.name, correlation_id, origin)

            if op is SigningOp.INIT:
                response = await self._init(request)
            elif op is SigningOp.GET_PUBLIC_KEY:
                response = await self._get_public_key(request)
            elif op is SigningOp.SIGN:
                response = await self._sign(request)
            else:
                response = await self._destroy(request)
        except ValidationError as e:
            log.warning("Malformed envelope %s: %d error(s)", correlation_id, e.error_count())
            response = self._failure(correlation_id, MalformedEnvelope())
        except PanError as e:
            response = self._failure(correlation_id, e)
        except Exception:
            # Crypto or storage faults still owe the caller a reply.
            log.exception("Signing context failure for %s", correlation_id)
            response = self._failure(correlation_id, SignerError())
        return response.to_wire()

    @staticmethod
    def _failure(correlation_id: str, error: PanError) -> SigningResponse:
        return SigningResponse(
            correlation_id=correlation_id,
            ok=False,
            error=error.message,
            code=error.code,
            reason=getattr(error, "reason", None),
        )

    # ---------------- Operations ----------------

    async def _init(self, request: SigningRequest) -> SigningResponse:
        public_key = await self.vault.initialize()
        self.state = SignerState.READY
        return SigningResponse(correlation_id=request.correlation_id, ok=True, public_key=public_key)

    async def _get_public_key(self, request: SigningRequest) -> SigningResponse:
        await self._require_ready()
        public_key = await self.vault.current_public_key()
        return SigningResponse(correlation_id=request.correlation_id, ok=True, public_key=public_key)

    async def _sign(self, request: SigningRequest) -> SigningResponse:
        await self._require_ready()
        action, proof, nonce = request.action, request.proof, request.nonce
        if action is None or proof is None or not nonce:
            raise MalformedEnvelope("SIGN requires action, proof and nonce")
        if proof.nonce != nonce:
            raise ProofRejected("INVALID_NONCE", "Proof nonce does not match request nonce")

        self.validator.ensure_valid(proof, action)

        message = build_signing_message(action, proof, nonce)
        signature = await self.vault.sign(message.encode("utf-8"))
        log.info("Signed action %r", action.display_name)
        return SigningResponse(correlation_id=request.correlation_id, ok=True, signature=b64(signature))

    async def _destroy(self, request: SigningRequest) -> SigningResponse:
        await self.vault.destroy()
        self.state = SignerState.UNINITIALIZED
        return SigningResponse(correlation_id=request.correlation_id, ok=True)


class SignerPort:
    """One caller's end of the channel, pinned to the origin it connected with."""

    def __init__(self, host: "SigningHost", origin: str):
        self.origin = origin
        self._host = host
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def post(self, message: Any):
        await self._host.submit(self, message)

    async def receive(self) -> Dict[str, Any]:
        return await self._inbox.get()

    def _deliver(self, message: Dict[str, Any]):
        self._inbox.put_nowait(message)


class SigningHost:
    def __init__(self, context: SigningContext):
        self.context = context
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "SigningHost":
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()

    async def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="signing-host")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def connect(self, origin: str) -> SignerPort:
        port = SignerPort(self, origin)
        if self.context.accepts(origin):
            port._deliver(dict(READY_MESSAGE))
        else:
            log.warning("Connection from unauthorized origin: %s", origin)
        return port

    async def submit(self, port: SignerPort, message: Any):
        # Messages are copied on entry; the caller keeps no reference into the signer.
        try:
            copied = json.loads(json.dumps(message))
        except (TypeError, ValueError):
            log.warning("Dropped non-serializable message from %s", port.origin)
            return
        await self._inbox.put((port, copied))

    async def drain(self):
        """Wait until every submitted message has been handled."""
        await self._inbox.join()

    async def _run(self):
        while True:
            port, message = await self._inbox.get()
            try:
                response = await self.context.handle(port.origin, message)
                if response is not None:
                    port._deliver(response)
            finally:
                self._inbox.task_done()
