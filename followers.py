#!/usr/bin/env python3
"""
Follower relationships

One record per accepted Follow: 'followers/{followActivityId}' -> follower actor URI.
Records are keyed by the Follow's id, so the same follower may appear under
several ids (e.g. after re-following); listings deduplicate.
"""

from typing import Iterator, List, Optional, Tuple

from kv_store import KvStore

FOLLOWERS_PREFIX = 'followers/'


class FollowerStore:
    def __init__(self, kv: KvStore):
        self.kv = kv

    def add(self, follow_id: str, actor_uri: str) -> None:
        """Record an accepted Follow. Replaying the same id overwrites in place."""
        self.kv.set(FOLLOWERS_PREFIX + follow_id, actor_uri)

    def get(self, follow_id: str) -> Optional[str]:
        return self.kv.get(FOLLOWERS_PREFIX + follow_id)

    def remove(self, follow_id: str) -> bool:
        return self.kv.delete(FOLLOWERS_PREFIX + follow_id)

    def records(self) -> Iterator[Tuple[str, str]]:
        """Yield (follow_id, actor_uri) pairs"""
        for key, actor_uri in self.kv.list(FOLLOWERS_PREFIX):
            yield key[len(FOLLOWERS_PREFIX):], actor_uri

    def list_followers(self) -> List[str]:
        """Follower actor URIs, deduplicated, in record order"""
        followers = []
        for _, actor_uri in self.records():
            if actor_uri not in followers:
                followers.append(actor_uri)
        return followers
