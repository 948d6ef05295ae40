"""Unit tests for keypair persistence, canonical messages and signing."""

from __future__ import annotations

import base64
import json
import os
import stat
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch


ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from computeshare.identity import (
    CorruptKeyMaterial,
    FileKeyStore,
    IdentityManager,
    Keypair,
    MemoryKeyStore,
    canonical_result_message,
    format_number,
    verify_signature,
)

SEED = bytes(range(32))


class CanonicalMessageTests(unittest.TestCase):
    def test_integral_output_has_no_fraction(self) -> None:
        self.assertEqual(canonical_result_message("t1", "w1", 4.0), b'{"id":"t1","worker":"w1","output":4}')

    def test_lone_surrogate_becomes_replacement_character(self) -> None:
        message = canonical_result_message(json.loads('"t\\ud800x"'), "w1", 1)
        self.assertEqual(message, '{"id":"t\ufffdx","worker":"w1","output":1}'.encode("utf-8"))

    def test_number_formatting(self) -> None:
        cases = [
            (0.0, "0"),
            (-0.0, "-0"),
            (1.5, "1.5"),
            (-2.25, "-2.25"),
            (0.1 + 0.2, "0.30000000000000004"),
            (120.0, "120"),
            (1e21, "1e+21"),
            (1e20, "100000000000000000000"),
            (1.5e-7, "1.5e-7"),
            (0.000001, "0.000001"),
            (2432902008176640000.0, "2432902008176640000"),
        ]
        for value, expected in cases:
            with self.subTest(value=value):
                self.assertEqual(format_number(value), expected)

    def test_non_finite_numbers_are_refused(self) -> None:
        with self.assertRaises(ValueError):
            format_number(float("inf"))

    def test_strings_use_html_safe_escapes(self) -> None:
        message = canonical_result_message("a<b>&c", "wörker", 1)
        self.assertEqual(message.decode("utf-8"), '{"id":"a\\u003cb\\u003e\\u0026c","worker":"wörker","output":1}')
        self.assertEqual(json.loads(message)["id"], "a<b>&c")


class KeypairTests(unittest.TestCase):
    def test_signature_verifies_and_detects_tampering(self) -> None:
        keypair = Keypair.from_seed(SEED)
        message = canonical_result_message("t1", "w1", 4)
        signature = keypair.sign(message)
        self.assertTrue(verify_signature(keypair.public_key, message, signature))
        for tampered in (
            canonical_result_message("t2", "w1", 4),
            canonical_result_message("t1", "w2", 4),
            canonical_result_message("t1", "w1", 5),
        ):
            with self.subTest(tampered=tampered):
                self.assertFalse(verify_signature(keypair.public_key, tampered, signature))

    def test_signing_is_deterministic(self) -> None:
        keypair = Keypair.from_seed(SEED)
        self.assertEqual(keypair.sign(b"payload"), keypair.sign(b"payload"))

    def test_record_round_trip_uses_seed_and_public_key(self) -> None:
        keypair = Keypair.from_seed(SEED)
        record = json.loads(keypair.to_record())
        self.assertEqual(base64.b64decode(record["secretKey"]), SEED + keypair.public_key)
        self.assertEqual(base64.b64decode(record["publicKey"]), keypair.public_key)
        self.assertEqual(Keypair.from_record(keypair.to_record()).public_key, keypair.public_key)

    def test_mismatched_record_is_corrupt(self) -> None:
        other = Keypair.generate()
        record = json.loads(Keypair.from_seed(SEED).to_record())
        record["publicKey"] = other.public_key_b64
        with self.assertRaises(CorruptKeyMaterial):
            Keypair.from_record(json.dumps(record).encode("utf-8"))

    def test_wrong_length_public_key_does_not_verify(self) -> None:
        self.assertFalse(verify_signature(b"short", b"msg", b"sig"))


class IdentityManagerTests(unittest.TestCase):
    def test_identity_is_created_once_and_persisted(self) -> None:
        store = MemoryKeyStore()
        manager = IdentityManager(store, namespace="test_keys")
        first = manager.get_or_create_identity()
        self.assertIs(manager.get_or_create_identity(), first)
        self.assertIn("test_keys", store.records)

        reloaded = IdentityManager(store, namespace="test_keys").get_or_create_identity()
        self.assertEqual(reloaded.public_key, first.public_key)

    def test_corrupt_record_is_regenerated(self) -> None:
        store = MemoryKeyStore({"test_keys": b"{not json"})
        keypair = IdentityManager(store, namespace="test_keys").get_or_create_identity()
        self.assertEqual(Keypair.from_record(store.records["test_keys"]).public_key, keypair.public_key)

    def test_sign_result_verifies(self) -> None:
        manager = IdentityManager(MemoryKeyStore())
        block = manager.sign_result("t1", "w1", 4)
        self.assertEqual(block.public_key, manager.public_key_b64)
        self.assertTrue(
            verify_signature(
                base64.b64decode(block.public_key),
                b'{"id":"t1","worker":"w1","output":4}',
                base64.b64decode(block.signature),
            )
        )

    def test_file_store_writes_private_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = FileKeyStore(Path(tmp) / "keys")
            first = IdentityManager(store).get_or_create_identity()
            path = store.path_for("computeshare_ed25519")
            self.assertTrue(path.exists())
            if os.name == "posix":
                self.assertEqual(stat.S_IMODE(path.stat().st_mode), 0o600)
            second = IdentityManager(FileKeyStore(Path(tmp) / "keys")).get_or_create_identity()
            self.assertEqual(second.public_key, first.public_key)

    def test_file_store_replaces_existing_record_privately(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = FileKeyStore(tmp)
            path = store.path_for("keys")
            path.write_bytes(b"old")
            os.chmod(path, 0o644)
            store.save("keys", b"new")
            self.assertEqual(store.load("keys"), b"new")
            if os.name == "posix":
                self.assertEqual(stat.S_IMODE(path.stat().st_mode), 0o600)
            self.assertEqual(sorted(p.name for p in Path(tmp).iterdir()), ["keys.json"])

    def test_failed_write_keeps_previous_record(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = FileKeyStore(tmp)
            store.save("keys", b"first")
            with patch("computeshare.identity.os.replace", side_effect=OSError("disk full")):
                with self.assertRaises(OSError):
                    store.save("keys", b"second")
            self.assertEqual(store.load("keys"), b"first")
            self.assertEqual(sorted(p.name for p in Path(tmp).iterdir()), ["keys.json"])


if __name__ == "__main__":
    unittest.main()
