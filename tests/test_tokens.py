"""
Token issuance and scope guard tests.
"""

import time
import unittest

from jose import jwt

from mydata_ca import (
    AuthError,
    InMemoryRevocationStore,
    RevocationStore,
    SCOPE_CA,
    SCOPE_MANAGE,
    TokenIssuer,
    TokenScopeGuard,
)

SECRET = "test-secret"
ISSUER = "mydata-ca"
AUDIENCE = "mydata-api"


class FailingRevocationStore(RevocationStore):

    def is_revoked(self, jti):
        raise ConnectionError("revocation backend down")

    def revoke(self, jti, expires_at):
        pass


class TestTokenIssuer(unittest.TestCase):

    def test_claims(self):
        token = TokenIssuer(SECRET, ISSUER, AUDIENCE).issue("client-1", SCOPE_MANAGE, org_code="ORG0000001")
        claims = jwt.decode(token.access_token, SECRET, algorithms=["HS256"], audience=AUDIENCE)
        self.assertEqual(claims["scope"], "manage")
        self.assertEqual(claims["client_id"], "client-1")
        self.assertEqual(claims["org_code"], "ORG0000001")
        self.assertEqual(claims["exp"] - claims["iat"], 3600)
        self.assertEqual(claims["jti"], token.jti)

    def test_response_shape(self):
        body = TokenIssuer(SECRET, ISSUER, AUDIENCE).issue("client-1", SCOPE_CA).to_dict()
        self.assertEqual(body["token_type"], "Bearer")
        self.assertEqual(body["expires_in"], 3600)
        self.assertEqual(body["scope"], "ca")

    def test_unique_jti(self):
        issuer = TokenIssuer(SECRET, ISSUER, AUDIENCE)
        self.assertNotEqual(issuer.issue("c", SCOPE_CA).jti, issuer.issue("c", SCOPE_CA).jti)


class TestTokenScopeGuard(unittest.TestCase):

    def setUp(self):
        self.issuer = TokenIssuer(SECRET, ISSUER, AUDIENCE)
        self.revocations = InMemoryRevocationStore()
        self.guard = TokenScopeGuard(SECRET, ISSUER, AUDIENCE, revocation_store=self.revocations)

    def bearer(self, scope, **kwargs):
        return "Bearer " + self.issuer.issue("client-1", scope, **kwargs).access_token

    def test_valid_token(self):
        result = self.guard.authenticate(self.bearer(SCOPE_CA), SCOPE_CA)
        self.assertTrue(result.passed())
        self.assertEqual(result.client_id, "client-1")

    def test_missing_header(self):
        self.assertEqual(self.guard.authenticate(None, SCOPE_CA).error, AuthError.UNAUTHORIZED)
        self.assertEqual(self.guard.authenticate("", SCOPE_CA).error, AuthError.UNAUTHORIZED)

    def test_malformed_header(self):
        token = self.issuer.issue("client-1", SCOPE_CA).access_token
        self.assertEqual(self.guard.authenticate(token, SCOPE_CA).error, AuthError.UNAUTHORIZED)
        self.assertEqual(self.guard.authenticate("Basic " + token, SCOPE_CA).error, AuthError.UNAUTHORIZED)

    def test_wrong_secret(self):
        other = TokenIssuer("other-secret", ISSUER, AUDIENCE).issue("client-1", SCOPE_CA)
        result = self.guard.authenticate("Bearer " + other.access_token, SCOPE_CA)
        self.assertEqual(result.error, AuthError.INVALID_TOKEN)

    def test_wrong_audience(self):
        other = TokenIssuer(SECRET, ISSUER, "someone-else").issue("client-1", SCOPE_CA)
        result = self.guard.authenticate("Bearer " + other.access_token, SCOPE_CA)
        self.assertEqual(result.error, AuthError.INVALID_TOKEN)

    def test_garbage_token(self):
        result = self.guard.authenticate("Bearer not.a.jwt", SCOPE_CA)
        self.assertEqual(result.error, AuthError.INVALID_TOKEN)

    def test_expired(self):
        header = self.bearer(SCOPE_CA, now=int(time.time()) - 7200)
        self.assertEqual(self.guard.authenticate(header, SCOPE_CA).error, AuthError.INVALID_TOKEN)

    def test_issued_in_future(self):
        header = self.bearer(SCOPE_CA, now=int(time.time()) + 600)
        result = self.guard.authenticate(header, SCOPE_CA)
        self.assertEqual(result.error, AuthError.INVALID_TOKEN)

    def test_small_future_skew_tolerated(self):
        header = self.bearer(SCOPE_CA, now=int(time.time()) + 20)
        self.assertTrue(self.guard.authenticate(header, SCOPE_CA).passed())

    def test_scope_separation(self):
        manage = self.bearer(SCOPE_MANAGE)
        ca = self.bearer(SCOPE_CA)
        self.assertEqual(self.guard.authenticate(manage, SCOPE_CA).error, AuthError.FORBIDDEN)
        self.assertEqual(self.guard.authenticate(ca, SCOPE_MANAGE).error, AuthError.FORBIDDEN)

    def test_any_scope(self):
        self.assertTrue(self.guard.authenticate(self.bearer(SCOPE_MANAGE), None).passed())

    def test_revoked(self):
        token = self.issuer.issue("client-1", SCOPE_CA)
        self.revocations.revoke(token.jti, token.expires_at)
        result = self.guard.authenticate("Bearer " + token.access_token, SCOPE_CA)
        self.assertEqual(result.error, AuthError.INVALID_TOKEN)

    def test_scope_checked_before_revocation(self):
        token = self.issuer.issue("client-1", SCOPE_MANAGE)
        self.revocations.revoke(token.jti, token.expires_at)
        result = self.guard.authenticate("Bearer " + token.access_token, SCOPE_CA)
        self.assertEqual(result.error, AuthError.FORBIDDEN)

    def test_revocation_lookup_fails_closed(self):
        guard = TokenScopeGuard(SECRET, ISSUER, AUDIENCE, revocation_store=FailingRevocationStore())
        with self.assertLogs("mydata_ca.tokens", level="ERROR"):
            result = guard.authenticate(self.bearer(SCOPE_CA), SCOPE_CA)
        self.assertEqual(result.error, AuthError.INVALID_TOKEN)

    def test_verify_token_ignores_scope(self):
        token = self.issuer.issue("client-1", SCOPE_MANAGE)
        self.assertTrue(self.guard.verify_token(token.access_token).passed())


class TestInMemoryRevocationStore(unittest.TestCase):

    def test_expired_entries_dropped(self):
        store = InMemoryRevocationStore()
        store.revoke("old", int(time.time()) - 10)
        store.revoke("live", int(time.time()) + 3600)
        self.assertFalse(store.is_revoked("old"))
        self.assertTrue(store.is_revoked("live"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
