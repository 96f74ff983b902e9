"""
Error taxonomy.

Client-state errors (NotInitialized, a missing proof match) are recoverable by
re-initializing or re-triggering the gesture. Validation rejections are
terminal for the request they belong to. Protocol errors are opaque to
external callers. Cryptographic errors are always fatal to the operation.
"""
from typing import Optional


class PanError(Exception):
    code = "PAN_ERROR"
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)

    @property
    def public_message(self) -> str:
        """What an HTTP client is told."""
        return self.message


class NotInitialized(PanError):
    """No signing identity. Initialize first."""
    code = "NOT_INITIALIZED"
    status_code = 409


class KeyGenerationError(PanError):
    """Key generation failed"""
    code = "KEY_GENERATION_FAILED"
    status_code = 500


class KeyExportError(PanError):
    """Key is not exportable"""
    code = "KEY_NOT_EXPORTABLE"
    status_code = 500


class ProofRejected(PanError):
    """Interaction proof rejected"""
    code = "PROOF_REJECTED"
    status_code = 401

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(detail or reason)


class SignatureInvalid(PanError):
    """Signature verification failed"""
    code = "SIGNATURE_INVALID"
    status_code = 401


class NonceInvalidOrReused(PanError):
    """Invalid or reused nonce"""
    code = "NONCE_INVALID"
    status_code = 401


class SessionInvalidOrExpired(PanError):
    """Invalid or expired session"""
    code = "SESSION_INVALID"
    status_code = 401


class OriginRejected(PanError):
    """Origin not allowed"""
    code = "ORIGIN_REJECTED"
    status_code = 403


class MalformedEnvelope(PanError):
    """Malformed request"""
    code = "MALFORMED_REQUEST"
    status_code = 400


class SignerError(PanError):
    """Signing context failure"""
    code = "SIGNER_ERROR"
    status_code = 500


class SignerTimeout(SignerError):
    """Signing request timed out"""
    code = "SIGNER_TIMEOUT"
    status_code = 504


class CredentialsRejected(PanError):
    """Invalid credentials"""
    code = "CREDENTIALS_REJECTED"
    status_code = 401


class VerificationRejected(PanError):
    """Please retry the action."""
    code = "VERIFICATION_FAILED"
    status_code = 401

    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"{stage}: {reason}")

    @property
    def public_message(self) -> str:
        # Same text for every stage; the reason stays in the server log.
        return self.__class__.__doc__

    @property
    def signal(self) -> Optional[PanError]:
        """The specific error behind the rejection, if the stage produced one."""
        return self.__cause__ if isinstance(self.__cause__, PanError) else None


# Codes carried in signing responses, mapped back to exception types by the caller.
ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (NotInitialized, KeyGenerationError, KeyExportError, MalformedEnvelope, SignerError)
}
