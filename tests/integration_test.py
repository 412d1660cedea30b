#!/usr/bin/env python3
"""
Integration tests for the complete sign-in flow
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import requests
from nacl.signing import SigningKey
from werkzeug.serving import make_server

from zkid_server.server import create_app
from zkid_server.storage import SQLiteSessionStore
from zkid_server.verifier import ResolvedState, Verifier
from test_config import (
    SAMPLE_SCHEMA,
    TEST_DB_PATH,
    TEST_HOST,
    TEST_PORT,
    TEST_USER_DID,
    cleanup_test_db,
    make_config,
    make_token,
)


class TestSignInIntegration(unittest.TestCase):
    """Sign-in, wallet answer and callback over real HTTP"""

    def setUp(self):
        cleanup_test_db()
        key_loader = Mock()
        key_loader.load.return_value = {}
        schema_loader = Mock()
        schema_loader.load.return_value = SAMPLE_SCHEMA
        resolver = Mock()
        resolver.resolve.return_value = ResolvedState(0, latest=True)
        # pairing math is covered in test_server.TestGroth16
        self.proofs = Mock()
        self.proofs.verify.return_value = True

        verifier = Verifier(key_loader, schema_loader, resolver, self.proofs)
        store = SQLiteSessionStore(TEST_DB_PATH, 300)
        app = create_app(make_config(), store, verifier, SigningKey.generate())

        self.server = make_server(TEST_HOST, TEST_PORT, app, threaded=True)
        self.server_thread = threading.Thread(target=self.server.serve_forever)
        self.server_thread.daemon = True
        self.server_thread.start()
        self.base_url = f"http://{TEST_HOST}:{TEST_PORT}"

    def tearDown(self):
        """Stop server and clean up"""
        self.server.shutdown()
        self.server_thread.join(timeout=5)
        self.server.server_close()
        cleanup_test_db()

    def _sign_in(self):
        resp = requests.get(f"{self.base_url}/api/sign-in", timeout=5)
        self.assertEqual(resp.status_code, 200)
        return resp.json()

    def _callback(self, request, token):
        # wallets post to the callback URL taken from the request
        return requests.post(request["body"]["callbackUrl"], data=token, timeout=5)

    def test_complete_flow(self):
        request = self._sign_in()
        self.assertTrue(request["body"]["callbackUrl"].startswith(self.base_url))

        resp = self._callback(request, make_token(request))
        self.assertEqual(resp.status_code, 200)
        self.assertIn(TEST_USER_DID, resp.text)

        # single use
        resp = self._callback(request, make_token(request))
        self.assertEqual(resp.status_code, 409)

    def test_stale_request_rejected(self):
        """Only the latest request for the fixed session verifies"""
        stale = self._sign_in()
        self._sign_in()

        resp = self._callback(stale, make_token(stale))
        self.assertEqual(resp.status_code, 500)
        self.assertIn("thread", resp.text)

    def test_wrong_predicate(self):
        request = self._sign_in()
        resp = self._callback(request, make_token(request, country_code=90))
        self.assertEqual(resp.status_code, 500)

    def test_tampered_proof(self):
        request = self._sign_in()
        self.proofs.verify.return_value = False
        resp = self._callback(request, make_token(request))
        self.assertEqual(resp.status_code, 500)

    def test_unknown_session(self):
        resp = requests.post(f"{self.base_url}/api/callback?sessionId=404", data="tok", timeout=5)
        self.assertEqual(resp.status_code, 404)


if __name__ == '__main__':
    unittest.main()
