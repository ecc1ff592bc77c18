"""Unit tests for password and token hashing helpers."""

from authgate.services.secret_service import (
    generate_code,
    hash_pbkdf2_sha256,
    hash_token,
    normalize_email,
    tokens_match,
    verify_pbkdf2_sha256,
)


class TestPasswordHashing:
    """PBKDF2 round trip and format."""

    def test_verify(self) -> None:
        encoded = hash_pbkdf2_sha256("hunter22", iterations=1000)
        assert encoded.startswith("pbkdf2_sha256$1000$")
        assert verify_pbkdf2_sha256("hunter22", encoded)
        assert not verify_pbkdf2_sha256("hunter23", encoded)

    def test_salted(self) -> None:
        assert hash_pbkdf2_sha256("same", iterations=1000) != hash_pbkdf2_sha256(
            "same", iterations=1000
        )

    def test_malformed_hash_never_verifies(self) -> None:
        assert not verify_pbkdf2_sha256("x", "not-a-hash")
        assert not verify_pbkdf2_sha256("x", "bcrypt$10$abc$def")


class TestTokenHashing:
    """Keyed HMAC hashing for tokens, secrets and codes."""

    def test_purpose_separates_hashes(self) -> None:
        assert hash_token("access", "abc") != hash_token("refresh", "abc")

    def test_tokens_match(self) -> None:
        stored = hash_token("client-secret", "s3cret")
        assert tokens_match(stored, "client-secret", "s3cret")
        assert not tokens_match(stored, "client-secret", "s3cret!")

    def test_codes_are_six_digits(self) -> None:
        codes = {generate_code() for _ in range(20)}
        assert all(len(c) == 6 and c.isdigit() for c in codes)
        assert len(codes) > 1

    def test_normalize_email(self) -> None:
        assert normalize_email("  A@X.Com ") == "a@x.com"
