"""
ConsentRegistry tests against a throwaway SQLite file.
"""

import os
import shutil
import tempfile
import time
import unittest
from dataclasses import replace

from ca_service.db import TABLES, ConsentRegistry
from mydata_ca import Phase, RegistryUnavailable, SignedConsent, Verification

from factories import make_certificate

ORG = {
    "org_code": "ORG0000001",
    "name": "Test Bank",
    "org_type": "01",
    "industry": "bank",
    "serial_num": "0001",
    "auth_type": "01",
}


class RegistryTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.registry = ConsentRegistry(os.path.join(self.tmp, "data", "ca.db"))
        self.registry.open()

    def tearDown(self):
        self.registry.close()
        shutil.rmtree(self.tmp, ignore_errors=True)


class TestOrganizationsAndClients(RegistryTestCase):

    def test_organization_round_trip(self):
        self.registry.add_organization(ORG)
        org = self.registry.get_organization("ORG0000001")
        self.assertEqual(org["name"], "Test Bank")
        self.assertEqual(org["op_type"], "I")
        self.assertEqual([o["org_code"] for o in self.registry.list_organizations()], ["ORG0000001"])
        self.assertIsNone(self.registry.get_organization("ORG9999999"))

    def test_client_authentication(self):
        self.registry.add_organization(ORG)
        self.registry.add_client("client-1", "s3cret", "ORG0000001")
        self.assertEqual(self.registry.authenticate_client("client-1", "s3cret"), "ORG0000001")
        self.assertIsNone(self.registry.authenticate_client("client-1", "wrong"))
        self.assertIsNone(self.registry.authenticate_client("nobody", "s3cret"))

    def test_secret_not_stored_in_clear(self):
        self.registry.add_organization(ORG)
        self.registry.add_client("client-1", "s3cret", "ORG0000001")
        rows = self.registry._query("SELECT secret_hash FROM oauth_clients")
        self.assertNotEqual(rows[0]["secret_hash"], "s3cret")

    def test_client_needs_organization(self):
        with self.assertRaises(RegistryUnavailable):
            self.registry.add_client("client-1", "s3cret", "ORG0000404")


class TestCertificates(RegistryTestCase):

    def setUp(self):
        super().setUp()
        self.cert = make_certificate(n_items=3)
        self.registry.save_certificate(self.cert)

    def signed(self):
        return [
            SignedConsent(item.tx_id, "payload.sig." + str(i), 13, self.cert.cert_tx_id)
            for i, item in enumerate(self.cert.consent_items)
        ]

    def test_round_trip_keeps_item_order(self):
        loaded = self.registry.get_certificate(self.cert.cert_tx_id)
        self.assertEqual(loaded.tx_ids(), self.cert.tx_ids())
        self.assertEqual(loaded.sign_tx_id, self.cert.sign_tx_id)
        self.assertFalse(loaded.signed)
        self.assertIsNone(self.registry.get_certificate("missing"))

    def test_duplicate_certificate_rejected(self):
        with self.assertRaises(RegistryUnavailable):
            self.registry.save_certificate(self.cert)

    def test_tx_id_unique_across_certificates(self):
        other = make_certificate()
        other.consent_items[1] = replace(other.consent_items[1], tx_id=self.cert.consent_items[0].tx_id)
        self.assertFalse(self.registry.save_certificate(other))
        self.assertIsNone(self.registry.get_certificate(other.cert_tx_id))
        self.assertTrue(self.registry.save_certificate(make_certificate()))

    def test_signing_is_once_only(self):
        self.assertTrue(self.registry.save_signed_consents(self.cert.cert_tx_id, self.signed()))
        self.assertFalse(self.registry.save_signed_consents(self.cert.cert_tx_id, self.signed()))
        self.assertTrue(self.registry.get_certificate(self.cert.cert_tx_id).signed)
        self.assertEqual(self.registry.signed_tx_ids(self.cert.cert_tx_id), set(self.cert.tx_ids()))

    def test_get_signed_consent(self):
        self.registry.save_signed_consents(self.cert.cert_tx_id, self.signed())
        tx_id = self.cert.consent_items[1].tx_id
        signed = self.registry.get_signed_consent(self.cert.cert_tx_id, tx_id)
        self.assertEqual(signed.signed_consent, "payload.sig.1")
        self.assertIsNone(self.registry.get_signed_consent("other", tx_id))

    def test_latest_verification_wins(self):
        tx_id = self.cert.consent_items[0].tx_id
        self.registry.save_verification(Verification(tx_id, self.cert.cert_tx_id, False, 100))
        self.registry.save_verification(Verification(tx_id, self.cert.cert_tx_id, True, 200))
        verification = self.registry.get_verification(tx_id)
        self.assertTrue(verification.result)
        self.assertEqual(verification.verified_at, 200)


class TestPhasesAndRevocation(RegistryTestCase):

    def test_phases(self):
        self.assertFalse(self.registry.has_phase("ORG0000001", Phase.SUPPORT002))
        self.registry.record_phase("ORG0000001", Phase.SUPPORT002)
        self.registry.record_phase("ORG0000001", Phase.SUPPORT002)
        self.assertTrue(self.registry.has_phase("ORG0000001", Phase.SUPPORT002))

    def test_revocation(self):
        self.registry.revoke("jti-1", int(time.time()) + 3600)
        self.assertTrue(self.registry.is_revoked("jti-1"))
        self.assertFalse(self.registry.is_revoked("jti-2"))

    def test_expired_revocations_purged(self):
        self.registry.revoke("old", int(time.time()) - 10)
        self.registry.revoke("new", int(time.time()) + 3600)
        self.assertFalse(self.registry.is_revoked("old"))
        self.assertTrue(self.registry.is_revoked("new"))


class TestMaintenance(RegistryTestCase):

    def test_stats_and_reset(self):
        self.registry.add_organization(ORG)
        self.registry.save_certificate(make_certificate())
        stats = self.registry.stats()
        self.assertEqual(set(stats), {f"{t}_count" for t in TABLES})
        self.assertEqual(stats["organizations_count"], 1)
        self.assertEqual(stats["consents_count"], 2)

        self.registry.reset()
        self.assertTrue(all(v == 0 for v in self.registry.stats().values()))

    def test_open_is_idempotent(self):
        self.registry.open()
        self.assertEqual(self.registry.stats()["certificates_count"], 0)

    def test_unreachable_path(self):
        blocker = os.path.join(self.tmp, "file")
        with open(blocker, "w") as f:
            f.write("x")
        registry = ConsentRegistry(os.path.join(blocker, "ca.db"))
        with self.assertRaises(RegistryUnavailable):
            registry.open()


if __name__ == "__main__":
    unittest.main(verbosity=2)
