#!/usr/bin/env python3
"""
Wiring of the federation components around one storage backend
"""

from typing import Optional

from activity_delivery import DeliveryDispatcher
from activity_processor import InboxProcessor
from actor_resolver import ActorResolver
from followers import FollowerStore
from http_signatures import SignatureVerifier
from key_store import KeyStore
from kv_store import KvStore, create_store


class Federation:
    def __init__(self, config: dict, kv: Optional[KvStore] = None):
        self.config = config
        self.handle = config['activitypub']['username']
        self.kv = kv if kv is not None else create_store(config)

        self.key_store = KeyStore(self.kv)
        self.followers = FollowerStore(self.kv)
        self.resolver = ActorResolver(config, self.key_store)
        self.verifier = SignatureVerifier(
            self.resolver,
            max_age_seconds=config['security'].get('signature_max_age_seconds', 300)
        )
        self.dispatcher = DeliveryDispatcher(config)
        self.processor = InboxProcessor(config, self.key_store, self.resolver,
                                        self.followers, self.dispatcher)

    def close(self):
        self.dispatcher.shutdown(wait=True)
