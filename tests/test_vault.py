"""Tests for the token vaults."""

import base64
from unittest.mock import patch

import boto3
import pytest
from botocore.exceptions import EndpointConnectionError, NoCredentialsError
from moto import mock_aws

from bridgeport_connector.exceptions import TokenError
from bridgeport_connector.vault import (
    DynamoTokenVault,
    KeyKind,
    LocalTokenVault,
    ScopedTokenVault,
    vault_key,
)


def test_vault_key_convention():
    """Test the key id suffixes."""
    assert vault_key("user-1") == "user-1"
    assert vault_key("user-1", KeyKind.REFRESH) == "user-1_refresh"
    assert vault_key("user-1", KeyKind.SECRET) == "user-1_secret"
    assert vault_key("user-1", KeyKind.PASSWORD) == "user-1_password"

    with pytest.raises(TokenError):
        vault_key("")


class TestLocalTokenVault:
    """Tests for LocalTokenVault class."""

    @pytest.mark.asyncio
    async def test_round_trip(self, vault):
        """Test a stored secret decrypts back to the plaintext."""
        await vault.encrypt_token("pat-na1-secret", "hubspot:user-1")

        assert await vault.decrypt_token("hubspot:user-1") == "pat-na1-secret"

    @pytest.mark.asyncio
    async def test_ciphertext_does_not_contain_plaintext(self, vault):
        """Test that secrets are not stored in the clear."""
        await vault.encrypt_token("pat-na1-secret", "hubspot:user-1")
        await vault.encrypt_token("pat-na1-secret", "hubspot:user-2")

        first = vault._ciphertexts["hubspot:user-1"]
        second = vault._ciphertexts["hubspot:user-2"]
        assert b"pat-na1-secret" not in base64.b64decode(first)
        assert first != second  # fresh nonce per secret

    @pytest.mark.asyncio
    async def test_missing_key_raises(self, vault):
        """Test decrypting an unknown key id."""
        with pytest.raises(TokenError, match="No token stored"):
            await vault.decrypt_token("hubspot:nobody")

    @pytest.mark.asyncio
    async def test_tampered_ciphertext_raises(self, vault):
        """Test GCM authentication rejects modified ciphertext."""
        await vault.encrypt_token("pat-na1-secret", "hubspot:user-1")
        raw = bytearray(base64.b64decode(vault._ciphertexts["hubspot:user-1"]))
        raw[-1] ^= 0x01
        vault._ciphertexts["hubspot:user-1"] = base64.b64encode(bytes(raw))

        with pytest.raises(TokenError, match="tag mismatch"):
            await vault.decrypt_token("hubspot:user-1")

    @pytest.mark.asyncio
    async def test_wrong_key_cannot_decrypt(self, vault):
        """Test a vault with another key can't read the ciphertext."""
        await vault.encrypt_token("pat-na1-secret", "hubspot:user-1")
        other = LocalTokenVault(encryption_key="another-key")
        other._ciphertexts = dict(vault._ciphertexts)

        with pytest.raises(TokenError):
            await other.decrypt_token("hubspot:user-1")

    @pytest.mark.asyncio
    async def test_empty_secret_rejected(self, vault):
        """Test empty secrets are refused."""
        with pytest.raises(TokenError):
            await vault.encrypt_token("", "hubspot:user-1")

    @pytest.mark.asyncio
    async def test_delete(self, vault):
        """Test deleting a secret, twice."""
        await vault.encrypt_token("pat-na1-secret", "hubspot:user-1")

        await vault.delete_token("hubspot:user-1")
        await vault.delete_token("hubspot:user-1")

        assert len(vault) == 0

    def test_requires_encryption_key(self):
        """Test construction without a key fails."""
        with pytest.raises(TokenError):
            LocalTokenVault(encryption_key="")


class TestScopedTokenVault:
    """Tests for ScopedTokenVault class."""

    @pytest.mark.asyncio
    async def test_keys_are_namespaced_by_provider(self, vault):
        """Test two providers never see each other's secrets."""
        hubspot = vault.scoped("hubspot")
        mixpanel = ScopedTokenVault(vault, "mixpanel")

        await hubspot.encrypt_token("hubspot-token", "user-1")
        await mixpanel.encrypt_token("mixpanel-token", "user-1")

        assert await hubspot.decrypt_token("user-1") == "hubspot-token"
        assert await mixpanel.decrypt_token("user-1") == "mixpanel-token"
        assert sorted(vault._ciphertexts) == ["hubspot:user-1", "mixpanel:user-1"]

    @pytest.mark.asyncio
    async def test_has_token(self, vault):
        """Test presence check."""
        scoped = vault.scoped("hubspot")
        await scoped.encrypt_token("token", "user-1")

        assert await scoped.has_token("user-1") is True
        assert await scoped.has_token("user-2") is False


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def dynamo_table(aws_credentials):
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        dynamodb.create_table(
            TableName="bridgeport_tokens",
            KeySchema=[{"AttributeName": "token_key", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "token_key", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )
        yield dynamodb.Table("bridgeport_tokens")


class TestDynamoTokenVault:
    """Tests for DynamoTokenVault class."""

    @pytest.mark.asyncio
    async def test_round_trip_without_kms(self, dynamo_table):
        """Test storage with base64 encoding only."""
        vault = DynamoTokenVault("bridgeport_tokens")

        await vault.encrypt_token("pat-na1-secret", "hubspot:user-1")

        assert await vault.decrypt_token("hubspot:user-1") == "pat-na1-secret"
        item = dynamo_table.get_item(Key={"token_key": "hubspot:user-1"})["Item"]
        assert item["encrypted_with"] == "none"
        assert item["created_at"] == item["updated_at"]

    @pytest.mark.asyncio
    async def test_round_trip_with_kms(self, dynamo_table):
        """Test storage encrypted with a KMS key."""
        key_id = boto3.client("kms", region_name="us-east-1").create_key()["KeyMetadata"]["KeyId"]
        vault = DynamoTokenVault("bridgeport_tokens", kms_key_id=key_id)

        await vault.encrypt_token("pat-na1-secret", "hubspot:user-1")

        assert await vault.decrypt_token("hubspot:user-1") == "pat-na1-secret"
        item = dynamo_table.get_item(Key={"token_key": "hubspot:user-1"})["Item"]
        assert item["encrypted_with"] == "kms"

    @pytest.mark.asyncio
    async def test_missing_and_delete(self, dynamo_table):
        """Test missing keys raise and deletes remove items."""
        vault = DynamoTokenVault("bridgeport_tokens")

        with pytest.raises(TokenError):
            await vault.decrypt_token("hubspot:user-1")

        await vault.encrypt_token("pat-na1-secret", "hubspot:user-1")
        await vault.delete_token("hubspot:user-1")

        with pytest.raises(TokenError):
            await vault.decrypt_token("hubspot:user-1")

    @pytest.mark.asyncio
    async def test_connection_errors_become_token_errors(self, dynamo_table):
        """Test botocore transport failures surface as TokenError."""
        vault = DynamoTokenVault("bridgeport_tokens")
        outage = EndpointConnectionError(endpoint_url="https://dynamodb.us-east-1.amazonaws.com")

        with patch.object(vault.table, "delete_item", side_effect=outage):
            with pytest.raises(TokenError, match="Failed to delete token"):
                await vault.delete_token("hubspot:user-1")

        with patch.object(vault.table, "get_item", side_effect=NoCredentialsError()):
            with pytest.raises(TokenError, match="Failed to get token"):
                await vault.decrypt_token("hubspot:user-1")
