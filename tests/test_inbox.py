#!/usr/bin/env python3
"""
Tests for the inbox endpoints
"""
import json
import os
import sys
import unittest
from email.utils import formatdate
from unittest.mock import patch, MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from tests.test_config import TestConfigMixin
from key_store import generate_key_pair
from kv_store import MemoryKvStore, StorageError


def mock_json_response(data):
    response = MagicMock()
    response.json.return_value = data
    response.raise_for_status = MagicMock()
    return response


class TestInboxEndpoint(TestConfigMixin, unittest.TestCase):
    """Test POST /users/<handle>/inbox and POST /inbox"""

    @classmethod
    def setUpClass(cls):
        bob_keys = generate_key_pair("bob")
        cls.bob_private_key, cls.bob_public_pem = bob_keys.private_key, bob_keys.public_key_pem

    def setUp(self):
        self.setup_test_environment()
        self.kv = MemoryKvStore()
        self.create_app(kv=self.kv)
        self.federation = self.app.extensions['federation']

        self.bob = "https://remote.example/actors/bob"
        self.follow = {
            "@context": "https://www.w3.org/ns/activitystreams",
            "id": "https://remote.example/f1",
            "type": "Follow",
            "actor": self.bob,
            "object": self.local_actor_id
        }

        self.get_patcher = patch('actor_resolver.requests.get')
        self.mock_get = self.get_patcher.start()
        self.mock_get.return_value = mock_json_response(
            self.remote_actor_document(self.bob, self.bob_public_pem)
        )
        self.post_patcher = patch('activity_delivery.requests.post')
        self.mock_post = self.post_patcher.start()
        self.mock_post.return_value = MagicMock(status_code=202, ok=True)

    def tearDown(self):
        self.get_patcher.stop()
        self.post_patcher.stop()
        self.teardown_test_environment()

    def post_signed(self, path, activity, key_id=None, private_key=None, date=None):
        body = json.dumps(activity).encode('utf-8')
        headers = self.signed_headers(
            f"https://test.example.com{path}", body,
            private_key or self.bob_private_key,
            key_id or f"{self.bob}#main-key",
            date=date
        )
        return self.client.post(path, data=body, headers=headers, base_url='https://test.example.com')

    def test_signed_follow_to_personal_inbox(self):
        response = self.post_signed('/users/me/inbox', self.follow)

        self.assertEqual(response.status_code, 202)
        self.assertEqual(self.kv.get('followers/https://remote.example/f1'), self.bob)
        self.mock_post.assert_called_once()
        self.assertEqual(self.mock_post.call_args[0][0], f"{self.bob}/inbox")

    def test_signed_follow_to_shared_inbox(self):
        response = self.post_signed('/inbox', self.follow)

        self.assertEqual(response.status_code, 202)
        self.assertEqual(self.federation.followers.list_followers(), [self.bob])

    def test_unknown_handle_is_404(self):
        response = self.post_signed('/users/alice/inbox', self.follow)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.federation.followers.list_followers(), [])

    def test_unsigned_request_rejected(self):
        response = self.client.post('/users/me/inbox',
                                    data=json.dumps(self.follow),
                                    content_type='application/activity+json')

        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.federation.followers.list_followers(), [])

    def test_invalid_content_type(self):
        response = self.client.post('/users/me/inbox',
                                    data=json.dumps(self.follow),
                                    content_type='text/plain')
        self.assertEqual(response.status_code, 400)

    def test_tampered_body_rejected(self):
        body = json.dumps(self.follow).encode('utf-8')
        headers = self.signed_headers("https://test.example.com/users/me/inbox", body,
                                      self.bob_private_key, f"{self.bob}#main-key")
        tampered = body.replace(b'f1', b'f2')

        response = self.client.post('/users/me/inbox', data=tampered, headers=headers,
                                    base_url='https://test.example.com')

        self.assertEqual(response.status_code, 401)
        self.assertIn('digest', response.get_json()['reason'])
        self.mock_post.assert_not_called()

    def test_wrong_key_rejected(self):
        other_private_key, _ = self.generate_test_rsa_keys()

        response = self.post_signed('/users/me/inbox', self.follow, private_key=other_private_key)

        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.federation.followers.list_followers(), [])

    def test_stale_date_rejected(self):
        stale = formatdate(timeval=1_000_000_000, localtime=False, usegmt=True)

        response = self.post_signed('/users/me/inbox', self.follow, date=stale)

        self.assertEqual(response.status_code, 401)

    def test_signed_for_other_path_rejected(self):
        """A signature over the shared inbox is not valid for the personal inbox"""
        body = json.dumps(self.follow).encode('utf-8')
        headers = self.signed_headers("https://test.example.com/inbox", body,
                                      self.bob_private_key, f"{self.bob}#main-key")

        response = self.client.post('/users/me/inbox', data=body, headers=headers,
                                    base_url='https://test.example.com')

        self.assertEqual(response.status_code, 401)

    def test_signer_must_match_actor(self):
        follow = dict(self.follow, actor="https://remote.example/actors/carol")

        response = self.post_signed('/users/me/inbox', follow)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.federation.followers.list_followers(), [])

    def test_invalid_activity(self):
        response = self.post_signed('/users/me/inbox', {"actor": self.bob})
        self.assertEqual(response.status_code, 400)

    def test_unhandled_activity_accepted(self):
        like = {"type": "Like", "actor": self.bob, "object": "https://test.example.com/posts/1"}

        response = self.post_signed('/users/me/inbox', like)

        self.assertEqual(response.status_code, 202)
        self.mock_post.assert_not_called()

    def test_follow_for_other_target_accepted_but_ignored(self):
        follow = dict(self.follow, object="https://elsewhere.example/users/me")

        response = self.post_signed('/inbox', follow)

        self.assertEqual(response.status_code, 202)
        self.assertEqual(self.federation.followers.list_followers(), [])
        self.mock_post.assert_not_called()

    def test_storage_failure_is_500(self):
        with patch.object(self.kv, 'set', side_effect=StorageError("disk full")):
            response = self.post_signed('/users/me/inbox', self.follow)

        self.assertEqual(response.status_code, 500)
        self.mock_post.assert_not_called()

    def test_undo_signed_with_key_claiming_other_owner_rejected(self):
        """Another server's key that names bob as owner cannot undo bob's Follow"""
        self.post_signed('/users/me/inbox', self.follow)
        mallory = "https://evil.example/actors/mallory"
        mallory_keys = generate_key_pair("mallory")
        mallory_document = self.remote_actor_document(mallory, mallory_keys.public_key_pem)
        mallory_document['publicKey']['owner'] = self.bob
        self.mock_get.return_value = mock_json_response(mallory_document)
        undo = {
            "id": "https://evil.example/u1",
            "type": "Undo",
            "actor": self.bob,
            "object": self.follow
        }

        response = self.post_signed('/users/me/inbox', undo,
                                    key_id=f"{mallory}#main-key", private_key=mallory_keys.private_key)

        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.federation.followers.list_followers(), [self.bob])

    def test_undo_removes_follower(self):
        self.post_signed('/users/me/inbox', self.follow)
        undo = {
            "id": "https://remote.example/u1",
            "type": "Undo",
            "actor": self.bob,
            "object": self.follow
        }

        response = self.post_signed('/users/me/inbox', undo)

        self.assertEqual(response.status_code, 202)
        self.assertEqual(self.federation.followers.list_followers(), [])


class TestUnsignedInbox(TestConfigMixin, unittest.TestCase):
    """Inbox with signature verification switched off"""

    def setUp(self):
        self.setup_test_environment(security={"require_http_signatures": False})
        self.create_app(kv=MemoryKvStore())
        self.federation = self.app.extensions['federation']

    def tearDown(self):
        self.teardown_test_environment()

    def test_unsigned_activity_accepted(self):
        like = {"type": "Like", "actor": "https://remote.example/actors/bob",
                "object": "https://test.example.com/posts/1"}

        with self.assertLogs('app', level='WARNING'):
            response = self.client.post('/inbox', data=json.dumps(like),
                                        content_type='application/activity+json')

        self.assertEqual(response.status_code, 202)

    def test_unsigned_follow_accepted(self):
        bob = "https://remote.example/actors/bob"
        follow = {
            "id": "https://remote.example/f1",
            "type": "Follow",
            "actor": bob,
            "object": self.local_actor_id
        }

        with patch('actor_resolver.requests.get') as mock_get, \
             patch('activity_delivery.requests.post') as mock_post:
            mock_get.return_value = mock_json_response(self.remote_actor_document(bob, "PEM"))
            mock_post.return_value = MagicMock(status_code=202, ok=True)

            response = self.client.post('/inbox', data=json.dumps(follow),
                                        content_type='application/activity+json')

        self.assertEqual(response.status_code, 202)
        self.assertEqual(self.federation.followers.list_followers(), [bob])
        mock_post.assert_called_once()


if __name__ == '__main__':
    unittest.main()
