# pan/core/app.py
import base64, logging, secrets
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware

from pan import __version__
from pan.core.config import Settings, load_settings
from pan.core.errors import PanError, CredentialsRejected, MalformedEnvelope, OriginRejected
from pan.db.store import PanStore
from pan.models.models import LoginRequest, NonceResponse
from pan.services.nonce_service import NonceAuthority
from pan.services.proof_validator import ProofValidator
from pan.services.request_verifier import RequestVerifier, VerifiedRequest, PROTECTED_HEADERS, SESSION_HEADER
from pan.services.session_service import SessionService, CredentialVerifier, DemoCredentialVerifier
from pan.signer.context import SigningContext, SigningHost
from pan.signer.key_vault import KeyStorage, KeyVault
from pan.signer.provider import SoftwareKeyProvider
from pan.client.recorder import InteractionRecorder
from pan.client.signing_client import SigningClient
from pan.utils.helpers import now_ms

log = logging.getLogger(__name__)


# ---------------- Security / request-id middleware ----------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    CSP_DEFAULT = (
        "default-src 'none'; "
        "frame-ancestors 'none'; "
        "base-uri 'none'; "
        "form-action 'self'"
    )

    async def dispatch(self, request: Request, call_next):
        resp = await call_next(request)
        resp.headers.setdefault("Content-Security-Policy", self.CSP_DEFAULT)
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload")
        return resp

class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or base64.urlsafe_b64encode(secrets.token_bytes(9)).rstrip(b"=").decode()
        request.state.request_id = rid
        resp = await call_next(request)
        resp.headers["X-Request-ID"] = rid
        return resp

class CORSMiddleware(BaseHTTPMiddleware):
    ALLOW_METHODS = "GET, POST, OPTIONS"
    ALLOW_HEADERS = ", ".join(("Content-Type",) + PROTECTED_HEADERS)

    def __init__(self, app, allowed_origins):
        super().__init__(app)
        self.allowed_origins = frozenset(allowed_origins)

    def _cors_headers(self, origin: str) -> dict:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Methods": self.ALLOW_METHODS,
            "Access-Control-Allow-Headers": self.ALLOW_HEADERS,
            "Access-Control-Allow-Credentials": "true",
            "Vary": "Origin",
        }

    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get("Origin", "")
        allowed = origin in self.allowed_origins

        # Preflight
        if request.method == "OPTIONS" and request.headers.get("Access-Control-Request-Method"):
            if not allowed:
                log.warning("CORS: preflight from unlisted origin %s", origin)
                return _error_response(OriginRejected())
            headers = self._cors_headers(origin)
            headers["Access-Control-Max-Age"] = "86400"
            return Response(status_code=204, headers=headers)

        response = await call_next(request)
        if allowed:
            response.headers.update(self._cors_headers(origin))
        return response


def _error_response(e: PanError) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": e.public_message, "code": e.code, "message": e.public_message},
        status_code=e.status_code,
    )


# ---------------- Dependencies ----------------
def _session_id(request: Request) -> Optional[str]:
    settings: Settings = request.app.state.settings
    return request.headers.get(SESSION_HEADER) or request.cookies.get(settings.session_cookie_name)

def require_signed(display_name: Optional[str] = None):
    """
    Dependency for protected routes.

    Runs the full verification chain against the request and yields the
    verified session, action and proof. Pass ``display_name`` to pin the
    label the user must have clicked; otherwise the proof's own label is used.
    """
    async def _verified(request: Request) -> VerifiedRequest:
        verifier: RequestVerifier = request.app.state.verifier
        body = await request.body()
        return await verifier.verify(request.url.path, request.headers, body, display_name)
    return _verified


router = APIRouter()

# ---------------- Basic routes ----------------
@router.get("/health",
            tags=["demo"],
            summary="Health Check",
            description="Liveness probe")
async def health():
    return {"status": "ok", "timestamp": now_ms()}


# ---------------- Auth ----------------
@router.post("/api/auth/login",
             tags=["session"],
             summary="Login",
             description="Verify credentials, register the signing public key and open a session")
async def login(body: LoginRequest, request: Request, response: Response):
    state = request.app.state
    user_id = await state.credentials.verify(body.username, body.password, body.mfa_code)
    if not user_id:
        raise CredentialsRejected()

    session = await state.sessions.create(
        user_id,
        body.public_key,
        client_meta={
            "ipAddress": request.headers.get("X-Forwarded-For") or (request.client.host if request.client else "unknown"),
            "userAgent": request.headers.get("User-Agent") or "unknown",
        },
    )
    settings: Settings = state.settings
    response.set_cookie(
        settings.session_cookie_name,
        session.session_id,
        max_age=settings.session_ttl,
        path="/",
        httponly=True,
        samesite="strict",
        secure=settings.https_only,
    )
    return {
        "success": True,
        "sessionId": session.session_id,
        "user": {"id": user_id, "email": body.username, "name": body.username.split("@")[0]},
        "expiresAt": session.expires_at,
    }

@router.post("/api/auth/logout",
             tags=["session"],
             summary="Logout",
             description="Delete the session and clear the session cookie")
async def logout(request: Request, response: Response):
    await request.app.state.sessions.logout(_session_id(request))
    response.delete_cookie(request.app.state.settings.session_cookie_name, path="/")
    return {"success": True}


# ---------------- Session / nonce ----------------
@router.get("/api/nonce",
            tags=["session"],
            summary="Issue Nonce",
            description="Single-use nonce for the next signed request; requires a valid session")
async def issue_nonce(request: Request):
    state = request.app.state
    await state.sessions.resolve(_session_id(request))
    nonce, expires_at = await state.nonces.issue()
    return NonceResponse(nonce=nonce, expires_at=expires_at).to_wire()

@router.get("/api/session/info",
            tags=["session"],
            summary="Session Info",
            description="Public fields of the current session")
async def session_info(request: Request):
    session = await request.app.state.sessions.resolve(_session_id(request))
    return {
        "sessionId": session.session_id,
        "userId": session.user_id,
        "createdAt": session.created_at,
        "lastAccessAt": session.last_access_at,
        "expiresAt": session.expires_at,
    }


# ---------------- Protected ----------------
@router.post("/api/protected/{name:path}",
             tags=["api"],
             summary="Protected Action",
             description="Requires X-Session-Id, X-Signature and X-Interaction-Proof")
async def protected_action(name: str, verified: VerifiedRequest = Depends(require_signed())):
    log.info("Protected action %s executed for user %s", name, verified.session.user_id)
    return {
        "success": True,
        "message": f'Action "{verified.action.display_name}" executed successfully',
        "timestamp": now_ms(),
        "userId": verified.session.user_id,
    }


# ---------------- FastAPI app ----------------
def create_app(
    settings: Optional[Settings] = None,
    store: Optional[PanStore] = None,
    credential_verifier: Optional[CredentialVerifier] = None,
    clock=now_ms,
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s [%(name)s.%(funcName)s] %(message)s")
    log.info("Loaded config from: %s", settings.cfg_file_used or "<defaults>")
    log.info("Allowed origins: %s", settings.allowed_origins)

    app = FastAPI(
        title="PAN API",
        description="""Interaction-proof-gated signing API""",
        version=__version__,
        middleware=[
            Middleware(RequestIDMiddleware),
            Middleware(SecurityHeadersMiddleware),
            Middleware(CORSMiddleware, allowed_origins=settings.allowed_origins),
        ],
    )

    store = store or PanStore(settings.db_path)
    sessions = SessionService(store, ttl=settings.session_ttl, clock=clock)
    nonces = NonceAuthority(store, ttl=settings.nonce_ttl, nbytes=settings.nonce_bytes, clock=clock)
    validator = ProofValidator(settings.proof_policy(), clock=clock)

    app.state.settings = settings
    app.state.store = store
    app.state.sessions = sessions
    app.state.nonces = nonces
    app.state.credentials = credential_verifier or DemoCredentialVerifier()
    app.state.verifier = RequestVerifier(sessions, nonces, validator)

    @app.exception_handler(PanError)
    async def _pan_error(request: Request, e: PanError):
        return _error_response(e)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, e: RequestValidationError):
        log.warning("Invalid request body for %s: %d error(s)", request.url.path, len(e.errors()))
        return _error_response(MalformedEnvelope("Missing required fields"))

    # ---- DB startup ----
    @app.on_event("startup")
    async def _init_db():
        await store.init()
        await store.purge_expired(clock())
        log.info("DB initialized at %s", store.path)

    @app.on_event("shutdown")
    async def _close_db():
        await store.close()

    app.include_router(router)
    return app


# ---------------- Signer and caller side ----------------
def create_signer(
    settings: Optional[Settings] = None,
    storage: Optional[KeyStorage] = None,
    provider: Optional[SoftwareKeyProvider] = None,
    clock=now_ms,
) -> SigningHost:
    """Signing context for ``settings.signer_origin``, enforcing the same proof policy as the API."""
    settings = settings or load_settings()
    vault = KeyVault(provider or SoftwareKeyProvider(), storage or KeyStorage(), settings.signer_origin)
    validator = ProofValidator(settings.proof_policy(), clock=clock)
    log.info("Signer allowed origins: %s", settings.signer_allowed_origins)
    return SigningHost(SigningContext(vault, settings.signer_allowed_origins, validator))

def create_signing_client(host: SigningHost, origin: str, settings: Optional[Settings] = None) -> SigningClient:
    settings = settings or load_settings()
    return SigningClient(host.connect(origin), timeout_ms=settings.signer_timeout_ms)

def create_recorder(settings: Optional[Settings] = None, clock=now_ms) -> InteractionRecorder:
    settings = settings or load_settings()
    return InteractionRecorder(
        settings.proof_policy(),
        max_trajectory_points=settings.max_trajectory_points,
        max_interactions=settings.max_interactions,
        clock=clock,
    )
