"""
test_envelope.py - Unit Tests for the Cryptographic Envelope

Tests compression, AES session encryption, RSA key wrapping, order
signatures, public key digests and the XML authentication signature.
"""

import base64
import hashlib
import os
import re
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from lxml import etree

from test_utils import MockBank, get_private_keys
from ebics_types import CryptoErrorCode
from envelope import (
    authenticate_document, canonicalize_document, compress_data, decompress_data,
    decrypt_aes, decrypt_order_data, decrypt_rsa, encrypt_aes, encrypt_rsa,
    generate_nonce, generate_transaction_key, public_key_digest, sign_data,
    utc_timestamp, verify_data, verify_document,
)


class TestCompression(unittest.TestCase):

    def test_round_trip(self):
        data = b"<Document>" + b"statement line\n" * 200 + b"</Document>"
        err, compressed = compress_data(data)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertLess(len(compressed), len(data))

        err, plain = decompress_data(compressed)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(plain, data)

    def test_round_trip_empty(self):
        err, compressed = compress_data(b"")
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        err, plain = decompress_data(compressed)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(plain, b"")

    def test_decompress_garbage_fails(self):
        err, plain = decompress_data(b"definitely not zlib")
        self.assertEqual(err, CryptoErrorCode.ERR_DECOMPRESSION_FAILED)
        self.assertIsNone(plain)


class TestAes(unittest.TestCase):

    def test_round_trip(self):
        key = generate_transaction_key()
        for message in (b"", b"x", b"0123456789abcdef", os.urandom(1000)):
            err, encrypted = encrypt_aes(message, key)
            self.assertEqual(err, CryptoErrorCode.SUCCESS)
            err, plain = decrypt_aes(encrypted, key)
            self.assertEqual(err, CryptoErrorCode.SUCCESS)
            self.assertEqual(plain, message)

    def test_x923_padding_always_adds_a_block_byte(self):
        key = generate_transaction_key()
        _, encrypted = encrypt_aes(b"A" * 16, key)
        self.assertEqual(len(encrypted), 32)
        _, encrypted = encrypt_aes(b"A" * 15, key)
        self.assertEqual(len(encrypted), 16)

    def test_deterministic_for_same_key(self):
        key = generate_transaction_key()
        _, first = encrypt_aes(b"same plaintext", key)
        _, second = encrypt_aes(b"same plaintext", key)
        self.assertEqual(first, second)

    def test_fresh_keys_give_different_ciphertexts(self):
        message = b"payment order data"
        _, first = encrypt_aes(message, generate_transaction_key())
        _, second = encrypt_aes(message, generate_transaction_key())
        self.assertNotEqual(first, second)

    def test_invalid_key_length(self):
        err, encrypted = encrypt_aes(b"data", b"short")
        self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)
        self.assertIsNone(encrypted)
        err, _ = decrypt_aes(bytes(16), b"short")
        self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)

    def test_wrong_key_fails_padding_check_or_changes_output(self):
        _, encrypted = encrypt_aes(b"secret order", generate_transaction_key())
        err, plain = decrypt_aes(encrypted, generate_transaction_key())
        if err == CryptoErrorCode.SUCCESS:
            self.assertNotEqual(plain, b"secret order")
        else:
            self.assertEqual(err, CryptoErrorCode.ERR_DECRYPTION_FAILED)

    def test_swapped_pipeline_order_fails_loudly(self):
        key = generate_transaction_key()
        _, compressed = compress_data(b"<Document>order</Document>" * 5)
        _, encrypted = encrypt_aes(compressed, key)

        # decompress before decrypt
        err, _ = decompress_data(encrypted)
        self.assertEqual(err, CryptoErrorCode.ERR_DECOMPRESSION_FAILED)

        # decrypt data that was never encrypted
        unaligned = compressed if len(compressed) % 16 else compressed + b"\x00"
        err, _ = decrypt_aes(unaligned, key)
        self.assertEqual(err, CryptoErrorCode.ERR_DECRYPTION_FAILED)


class TestRsa(unittest.TestCase):

    def setUp(self):
        self.keys = get_private_keys()

    def test_wrap_and_unwrap_transaction_key(self):
        session_key = generate_transaction_key()
        err, wrapped = encrypt_rsa(session_key, self.keys["bank_encryption"].publickey())
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(len(wrapped), 128)

        err, unwrapped = decrypt_rsa(wrapped, self.keys["bank_encryption"])
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(unwrapped, session_key)

    def test_wrap_without_bank_key(self):
        err, wrapped = encrypt_rsa(generate_transaction_key(), None)
        self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)
        self.assertIsNone(wrapped)

    def test_unwrap_with_public_key_only(self):
        err, _ = decrypt_rsa(b"\x00" * 128, self.keys["bank_encryption"].publickey())
        self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)

    def test_sign_and_verify_both_versions(self):
        data = canonicalize_document("<Document>\n\t<A>1</A>\r\n</Document>").encode('utf-8')
        key = self.keys["user_signature"]
        for version in ("A005", "A006"):
            err, signature = sign_data(data, key, version)
            self.assertEqual(err, CryptoErrorCode.SUCCESS)
            self.assertEqual(len(base64.b64decode(signature)), 128)
            self.assertEqual(verify_data(data, signature, key.publickey(), version), CryptoErrorCode.SUCCESS)
            self.assertEqual(verify_data(data + b"x", signature, key.publickey(), version),
                             CryptoErrorCode.ERR_VERIFICATION_FAILED)

    def test_sign_rejects_unknown_version_and_missing_key(self):
        err, _ = sign_data(b"data", self.keys["user_signature"], "A004")
        self.assertEqual(err, CryptoErrorCode.ERR_SIGNATURE_FAILED)
        err, _ = sign_data(b"data", None)
        self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)
        err, _ = sign_data(b"data", self.keys["user_signature"].publickey())
        self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)

    def test_public_key_digest(self):
        key = self.keys["bank_authentication"].publickey()
        err, digest = public_key_digest(key)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        expected = hashlib.sha256(f"{key.e:x} {key.n:x}".encode('ascii')).digest()
        self.assertEqual(digest, expected)
        self.assertEqual(public_key_digest(None), (CryptoErrorCode.ERR_INVALID_KEY, None))


class TestHelpers(unittest.TestCase):

    def test_canonicalize_strips_layout_characters(self):
        text = canonicalize_document("<a>\n\t<b>x y</b>\r\n</a>")
        self.assertEqual(text, "<a><b>x y</b></a>")

    def test_nonce_format(self):
        nonce = generate_nonce()
        self.assertRegex(nonce, r"^[0-9A-F]{32}$")
        self.assertNotEqual(nonce, generate_nonce())

    def test_timestamp_format(self):
        self.assertTrue(re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$", utc_timestamp()))

    def test_transaction_key_length(self):
        self.assertEqual(len(generate_transaction_key()), 16)


class TestXmlSignature(unittest.TestCase):

    def setUp(self):
        self.keys = get_private_keys()
        self.bank = MockBank()

    def test_signed_response_verifies_after_parsing(self):
        raw = self.bank.response("Initialisation", "TX1", num_segments=1, segment_number=1,
                                 last_segment=True, order_data=b"data", include_key=True)
        root = etree.fromstring(raw)
        err = verify_document(root, self.keys["bank_authentication"].publickey())
        self.assertEqual(err, CryptoErrorCode.SUCCESS)

    def test_tampered_response_is_rejected(self):
        raw = self.bank.response("Initialisation", "TX1", num_segments=1, segment_number=1,
                                 last_segment=True, order_data=b"data", include_key=True)
        root = etree.fromstring(raw.replace(b"TX1", b"TX2"))
        err = verify_document(root, self.keys["bank_authentication"].publickey())
        self.assertEqual(err, CryptoErrorCode.ERR_VERIFICATION_FAILED)

    def test_wrong_bank_key_is_rejected(self):
        root = etree.fromstring(self.bank.response("Receipt", "TX1"))
        err = verify_document(root, self.keys["bank_encryption"].publickey())
        self.assertEqual(err, CryptoErrorCode.ERR_VERIFICATION_FAILED)

    def test_unsigned_document_is_rejected(self):
        root = etree.fromstring(self.bank.response("Receipt", "TX1", sign=False))
        err = verify_document(root, self.keys["bank_authentication"].publickey())
        self.assertEqual(err, CryptoErrorCode.ERR_VERIFICATION_FAILED)

    def test_authenticate_requires_auth_signature_element(self):
        root = etree.fromstring(b"<ebicsRequest><header authenticate='true'/></ebicsRequest>")
        err = authenticate_document(root, self.keys["user_authentication"])
        self.assertEqual(err, CryptoErrorCode.ERR_SIGNATURE_FAILED)


class TestDecryptOrderData(unittest.TestCase):

    def setUp(self):
        self.keys = get_private_keys()
        self.bank = MockBank()

    def test_initialisation_response_uses_wrapped_key(self):
        raw = self.bank.response("Initialisation", "TX1", num_segments=1, segment_number=1,
                                 last_segment=True, order_data=b"statement", include_key=True)
        err, value = decrypt_order_data(etree.fromstring(raw), self.keys["user_encryption"])
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        compressed, key = value
        self.assertEqual(key, self.bank.transaction_key)
        self.assertEqual(decompress_data(compressed), (CryptoErrorCode.SUCCESS, b"statement"))

    def test_transfer_response_needs_known_key(self):
        raw = self.bank.response("Transfer", "TX1", segment_number=2, last_segment=True,
                                 order_data=b"second")
        err, _ = decrypt_order_data(etree.fromstring(raw), self.keys["user_encryption"])
        self.assertEqual(err, CryptoErrorCode.ERR_INVALID_KEY)

        err, value = decrypt_order_data(etree.fromstring(raw), self.keys["user_encryption"],
                                        self.bank.transaction_key)
        self.assertEqual(err, CryptoErrorCode.SUCCESS)
        self.assertEqual(decompress_data(value[0])[1], b"second")

    def test_missing_order_data(self):
        raw = self.bank.response("Receipt", "TX1")
        err, value = decrypt_order_data(etree.fromstring(raw), self.keys["user_encryption"])
        self.assertEqual(err, CryptoErrorCode.ERR_DECRYPTION_FAILED)
        self.assertIsNone(value)


if __name__ == "__main__":
    unittest.main()
