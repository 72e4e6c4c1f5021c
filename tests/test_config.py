"""
test_config.py - Unit Tests for Configuration and Key Loading
"""

import os
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from test_utils import create_test_config, get_private_keys, write_test_keys
from config import (
    create_default_config_file, get_config_value, load_config, load_keys, save_config,
    set_config_value, validate_config,
)
from ebics_types import EbicsConfig, ErrorCode, KeyRing


class TempDirTestCase(unittest.TestCase):

    def setUp(self):
        self.temp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp, ignore_errors=True)

    def path(self, *parts):
        return os.path.join(self.temp, *parts)


class TestLoadSave(TempDirTestCase):

    def test_round_trip(self):
        config = create_test_config(segment_size=4096, version="H005")
        config.network.timeout_sec = 15
        path = self.path("nested", "ebics.toml")
        self.assertTrue(save_config(config, path))

        loaded = load_config(path)
        self.assertIsNotNone(loaded)
        self.assertEqual(loaded, config)
        self.assertEqual(loaded.client.version, "H005")
        self.assertEqual(loaded.client.segment_size, 4096)
        self.assertIsNone(loaded.user.key_passphrase)

        print("test_round_trip: PASSED")

    def test_missing_file(self):
        self.assertIsNone(load_config(self.path("absent.toml")))

    def test_invalid_toml(self):
        path = self.path("broken.toml")
        with open(path, "w") as f:
            f.write("[client\nurl = ")
        self.assertIsNone(load_config(path))

    def test_partial_file_uses_defaults(self):
        path = self.path("ebics.toml")
        with open(path, "w") as f:
            f.write('[user]\nhost_id = "BANKHOST"\nunknown_key = 1\n')
        config = load_config(path)
        self.assertEqual(config.user.host_id, "BANKHOST")
        self.assertEqual(config.client.version, "H004")
        self.assertEqual(config.user.signature_version, "A006")
        self.assertEqual(config.logging.level, "info")

    def test_default_file_not_overwritten(self):
        path = self.path("config", "ebics.toml")
        self.assertTrue(create_default_config_file(path))
        self.assertEqual(load_config(path), EbicsConfig())
        self.assertFalse(create_default_config_file(path))


class TestGetSet(unittest.TestCase):

    def test_dot_notation(self):
        config = create_test_config()
        self.assertEqual(get_config_value(config, "user.host_id"), "TESTHOST")
        self.assertIsNone(get_config_value(config, "user.missing"))
        self.assertIsNone(get_config_value(config, "nowhere.host_id"))

        set_config_value(config, "client.segment_size", 2048)
        self.assertEqual(config.client.segment_size, 2048)
        set_config_value(config, "client.unknown", 1)
        self.assertFalse(hasattr(config.client, "unknown"))


class TestValidate(unittest.TestCase):

    def test_test_config_is_valid(self):
        result = validate_config(create_test_config())
        self.assertTrue(result.is_valid, result.errors)
        self.assertEqual(result.warnings, [])

    def test_default_config_reports_missing_fields(self):
        result = validate_config(EbicsConfig())
        self.assertFalse(result.is_valid)
        self.assertIn("client.url is required", result.errors)
        self.assertIn("user.host_id is required", result.errors)
        self.assertIn("user.signature_key_path is required", result.errors)
        self.assertTrue(any(w.startswith("bank.authentication_key_path") for w in result.warnings))

    def test_invalid_values(self):
        config = create_test_config()
        config.client.version = "H003"
        config.client.segment_size = 0
        config.user.signature_version = "A004"
        config.network.timeout_sec = 0
        config.logging.level = "verbose"
        result = validate_config(config)
        self.assertFalse(result.is_valid)
        self.assertEqual(len(result.errors), 5)

    def test_warnings_do_not_invalidate(self):
        config = create_test_config(segment_size=2 * 1024 * 1024, verify_bank_signature=False)
        config.client.url = "http://ebics.bank.test/ebicsweb"
        result = validate_config(config)
        self.assertTrue(result.is_valid)
        self.assertEqual(len(result.warnings), 3)


class TestLoadKeys(TempDirTestCase):

    def _config(self, paths):
        config = create_test_config()
        config.user.authentication_key_path = paths["user_authentication"]
        config.user.signature_key_path = paths["user_signature"]
        config.user.encryption_key_path = paths["user_encryption"]
        config.bank.authentication_key_path = paths["bank_authentication"]
        config.bank.encryption_key_path = paths["bank_encryption"]
        return config

    def test_load_all_keys(self):
        config = self._config(write_test_keys(self.temp))
        err, keys = load_keys(config)
        self.assertEqual(err, ErrorCode.SUCCESS)
        self.assertIsInstance(keys, KeyRing)
        expected = get_private_keys()
        self.assertTrue(keys.user_signature.has_private())
        self.assertEqual(keys.user_signature.n, expected["user_signature"].n)
        self.assertFalse(keys.bank_encryption.has_private())
        self.assertEqual(keys.bank_encryption.n, expected["bank_encryption"].n)

    def test_bank_keys_optional(self):
        config = self._config(write_test_keys(self.temp))
        config.bank.authentication_key_path = ""
        config.bank.encryption_key_path = ""
        err, keys = load_keys(config)
        self.assertEqual(err, ErrorCode.SUCCESS)
        self.assertIsNone(keys.bank_authentication)
        self.assertIsNotNone(keys.user_authentication)

    def test_missing_key_file(self):
        paths = write_test_keys(self.temp)
        paths["user_encryption"] = self.path("absent.pem")
        self.assertEqual(load_keys(self._config(paths)), (ErrorCode.ERR_NOT_FOUND, None))

    def test_invalid_key_file(self):
        paths = write_test_keys(self.temp)
        with open(paths["bank_authentication"], "w") as f:
            f.write("not a key")
        self.assertEqual(load_keys(self._config(paths)), (ErrorCode.ERR_INVALID_PARAM, None))


if __name__ == "__main__":
    unittest.main()
