"""
KeyVault and key provider tests
"""
import pytest
from jose import jwk as jose_jwk

from conftest import APP_ORIGIN, SIGNER_ORIGIN
from pan.core.errors import KeyExportError, KeyGenerationError, NotInitialized
from pan.signer.key_vault import KeyStorage, KeyVault, RECORD_ID
from pan.signer.provider import SoftwareKeyProvider


@pytest.fixture
def provider():
    return SoftwareKeyProvider()


@pytest.fixture
def vault(provider):
    return KeyVault(provider, KeyStorage(), SIGNER_ORIGIN)


class TestProvider:
    """The platform refuses to hand out private material"""

    def test_private_handle_cannot_be_exported(self, provider):
        private, public = provider.generate_key_pair(extractable=False)
        assert private.extractable is False
        with pytest.raises(KeyExportError):
            provider.export_jwk(private)
        jwk = provider.export_jwk(public)
        assert "d" not in jwk

    def test_discarded_key_cannot_sign(self, provider):
        private, _ = provider.generate_key_pair()
        provider.discard(private)
        assert not provider.holds(private)
        with pytest.raises(KeyError):
            provider.sign(private, b"data")

    def test_public_handle_cannot_sign(self, provider):
        _, public = provider.generate_key_pair()
        with pytest.raises(KeyExportError):
            provider.sign(public, b"data")


class TestKeyVault:
    """KeyVault lifecycle"""

    @pytest.mark.asyncio
    async def test_initialize_returns_public_jwk(self, vault):
        jwk = await vault.initialize()
        assert jwk["kty"] == "EC"
        assert jwk["crv"] == "P-256"
        assert jwk["ext"] is True
        assert jwk["key_ops"] == ["verify"]
        assert "d" not in jwk
        assert await vault.has_identity()
        assert await vault.current_public_key() == jwk

    @pytest.mark.asyncio
    async def test_not_initialized(self, vault):
        with pytest.raises(NotInitialized):
            await vault.current_public_key()
        with pytest.raises(NotInitialized):
            await vault.sign(b"data")

    @pytest.mark.asyncio
    async def test_reinitialize_replaces_identity(self, vault, provider):
        first = await vault.initialize()
        old = await vault.storage.get(SIGNER_ORIGIN, RECORD_ID)
        second = await vault.initialize()
        assert first != second
        assert not provider.holds(old.private_key)

    @pytest.mark.asyncio
    async def test_destroy_is_idempotent(self, vault, provider):
        await vault.initialize()
        identity = await vault.storage.get(SIGNER_ORIGIN, RECORD_ID)
        await vault.destroy()
        await vault.destroy()
        assert not await vault.has_identity()
        assert not provider.holds(identity.private_key)
        with pytest.raises(NotInitialized):
            await vault.sign(b"data")

    @pytest.mark.asyncio
    async def test_signature_verifies(self, vault):
        jwk = await vault.initialize()
        signature = await vault.sign(b"hello")
        assert len(signature) == 64
        assert jose_jwk.construct(jwk, "ES256").verify(b"hello", signature)
        assert not jose_jwk.construct(jwk, "ES256").verify(b"hello!", signature)

    @pytest.mark.asyncio
    async def test_storage_is_origin_scoped(self, provider):
        storage = KeyStorage()
        signer = KeyVault(provider, storage, SIGNER_ORIGIN)
        other = KeyVault(provider, storage, APP_ORIGIN)
        await signer.initialize()
        assert not await other.has_identity()
        with pytest.raises(NotInitialized):
            await other.sign(b"data")

    @pytest.mark.asyncio
    async def test_platform_without_non_extractable_keys(self):
        vault = KeyVault(SoftwareKeyProvider(supports_non_extractable=False), KeyStorage(), SIGNER_ORIGIN)
        with pytest.raises(KeyGenerationError):
            await vault.initialize()
        assert not await vault.has_identity()
