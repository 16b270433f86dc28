"""
Identifier generation tests.

Generated ids must always satisfy the formats the field validator enforces.
"""

import re
import unittest
from datetime import datetime, timezone

from mydata_ca import (
    check,
    new_api_tran_id,
    new_cert_tx_id,
    new_tx_id,
    parse_sign_tx_id,
)


class TestCertTxId(unittest.TestCase):

    def test_length_and_charset(self):
        for _ in range(200):
            value = new_cert_tx_id()
            self.assertEqual(len(value), 40)
            self.assertRegex(value, r'^[A-Za-z0-9]+$')

    def test_timestamp_prefix(self):
        now = datetime(2025, 2, 12, 7, 8, 57, tzinfo=timezone.utc)
        value = new_cert_tx_id(now)
        self.assertTrue(value.startswith("20250212070857"))

    def test_passes_field_rule(self):
        self.assertTrue(check("cert_tx_id", new_cert_tx_id()).passed())

    def test_values_differ(self):
        values = {new_cert_tx_id() for _ in range(100)}
        self.assertEqual(len(values), 100)


class TestTxId(unittest.TestCase):

    def test_length(self):
        for _ in range(200):
            self.assertEqual(len(new_tx_id()), 74)

    def test_hex_head(self):
        self.assertRegex(new_tx_id()[:32], r'^[0-9a-f]{32}$')

    def test_passes_field_rule(self):
        self.assertTrue(check("tx_id", new_tx_id()).passed())


class TestApiTranId(unittest.TestCase):

    def test_format(self):
        value = new_api_tran_id()
        self.assertEqual(len(value), 25)
        self.assertTrue(re.match(r'^[A-Z0-9]+$', value))


class TestSignTxId(unittest.TestCase):

    def test_parse_full(self):
        parts = parse_sign_tx_id("ORG0000001_CA00000001_20250212070857_SERIAL_01")
        self.assertEqual(parts.org_code, "ORG0000001")
        self.assertEqual(parts.ca_code, "CA00000001")
        self.assertEqual(parts.timestamp, "20250212070857")
        self.assertEqual(parts.serial, "SERIAL_01")

    def test_parse_partial(self):
        parts = parse_sign_tx_id("ORG0000001")
        self.assertEqual(parts.org_code, "ORG0000001")
        self.assertEqual(parts.ca_code, "")
        self.assertEqual(parts.serial, "")


if __name__ == "__main__":
    unittest.main(verbosity=2)
