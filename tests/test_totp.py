"""Unit tests for TOTP codes and backup code hashing."""

import base64

import pytest

from lockbox.service import totp
from lockbox.storage.errors import SecretDecryptionError

# RFC 6238 appendix B seed for HMAC-SHA1
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()

# Middle of a 30 second step so +/- offsets land on exact neighbours
MID_STEP = 30 * 40_000_000 + 15


class TestGenerateCode:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [
            (59, "94287082"),
            (1111111109, "07081804"),
            (1234567890, "89005924"),
            (2000000000, "69279037"),
        ],
    )
    def test_rfc_vectors_eight_digits(self, timestamp, expected):
        assert totp.generate_code(RFC_SECRET, timestamp, digits=8) == expected

    def test_six_digit_code_is_truncation_of_rfc_value(self):
        assert totp.generate_code(RFC_SECRET, 59) == "287082"

    def test_same_step_yields_same_code(self):
        secret = totp.generate_secret()
        assert totp.generate_code(secret, MID_STEP - 10) == totp.generate_code(secret, MID_STEP + 10)

    def test_undecodable_secret_raises(self):
        with pytest.raises(SecretDecryptionError):
            totp.generate_code("not*base32!", 59)


class TestGenerateSecret:
    def test_secret_is_unpadded_base32_of_160_bits(self):
        secret = totp.generate_secret()
        assert "=" not in secret
        assert len(secret) == 32
        assert len(base64.b32decode(secret)) == 20

    def test_secrets_are_unique(self):
        assert len({totp.generate_secret() for _ in range(20)}) == 20


class TestVerifyCode:
    def test_accepts_current_step(self):
        secret = totp.generate_secret()
        code = totp.generate_code(secret, MID_STEP)
        assert totp.verify_code(secret, code, MID_STEP)

    @pytest.mark.parametrize("offset", [-60, -30, 30, 60])
    def test_accepts_two_steps_of_drift(self, offset):
        secret = totp.generate_secret()
        code = totp.generate_code(secret, MID_STEP)
        assert totp.verify_code(secret, code, MID_STEP + offset)

    @pytest.mark.parametrize("offset", [-90, 90])
    def test_rejects_three_steps_of_drift(self, offset):
        code = totp.generate_code(RFC_SECRET, MID_STEP)
        assert not totp.verify_code(RFC_SECRET, code, MID_STEP + offset)

    def test_zero_drift_only_accepts_exact_step(self):
        code = totp.generate_code(RFC_SECRET, MID_STEP)
        assert totp.verify_code(RFC_SECRET, code, MID_STEP, drift_steps=0)
        assert not totp.verify_code(RFC_SECRET, code, MID_STEP + 30, drift_steps=0)

    @pytest.mark.parametrize("bad", ["", "12345", "1234567", "12a456", None])
    def test_rejects_malformed_codes(self, bad):
        assert not totp.verify_code(RFC_SECRET, bad, MID_STEP)

    def test_tolerates_spaces_inside_code(self):
        code = totp.generate_code(RFC_SECRET, MID_STEP)
        assert totp.verify_code(RFC_SECRET, f"{code[:3]} {code[3:]}", MID_STEP)


class TestProvisioningUri:
    def test_uri_carries_issuer_account_and_secret(self):
        uri = totp.provisioning_uri("ABCDEF", "alice@example.com", "Lockbox")
        assert uri.startswith("otpauth://totp/Lockbox:alice@example.com?")
        assert "secret=ABCDEF" in uri
        assert uri.endswith("issuer=Lockbox")

    def test_issuer_is_url_encoded(self):
        uri = totp.provisioning_uri("ABCDEF", "bob@example.com", "Acme Corp")
        assert "issuer=Acme%20Corp" in uri
        assert "Acme%20Corp:bob@example.com" in uri


class TestBackupCodes:
    @pytest.fixture
    def hasher(self):
        return totp.BackupCodeHasher(time_cost=1, memory_cost=1024)

    def test_generated_codes_have_grouped_hex_format(self, hasher):
        codes = hasher.generate(10)
        assert len(codes) == 10
        assert len(set(codes)) == 10
        for code in codes:
            head, _, tail = code.partition("-")
            assert len(head) == 4 and len(tail) == 4
            int(head + tail, 16)

    def test_hashes_do_not_contain_plaintext(self, hasher):
        code = hasher.generate(1)[0]
        stored = hasher.hash(code)
        assert stored.startswith("$argon2id$")
        assert code.replace("-", "") not in stored

    def test_find_returns_matching_index(self, hasher):
        codes = hasher.generate(3)
        hashes = hasher.hash_all(codes)
        assert hasher.find(hashes, codes[1]) == 1

    def test_find_is_lenient_about_case_and_separator(self, hasher):
        codes = hasher.generate(2)
        hashes = hasher.hash_all(codes)
        assert hasher.find(hashes, codes[0].lower().replace("-", "")) == 0

    def test_find_misses_unknown_code(self, hasher):
        hashes = hasher.hash_all(hasher.generate(2))
        assert hasher.find(hashes, "0000-0000") is None
        assert hasher.find(hashes, "") is None

    def test_find_skips_corrupt_hashes(self, hasher):
        code = hasher.generate(1)[0]
        hashes = ["not-a-hash", hasher.hash(code)]
        assert hasher.find(hashes, code) == 1
