#!/usr/bin/env python3
"""
Actor resolution

- Local actor: derived from config on every call, public key from the Key Store
- Remote actors: fetched over HTTP and cached in memory with a TTL

References:
- https://www.w3.org/TR/activitypub/#actor-objects
- https://swicg.github.io/activitypub-http-signature/#how-to-obtain-a-signature-s-public-key
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

import requests

import config_utils
from key_store import KeyStore
from template_utils import templates

logger = logging.getLogger(__name__)


class RemoteFetchError(Exception):
    """Raised when a remote actor document cannot be fetched"""


class MalformedActorError(Exception):
    """Raised when a fetched document is not a usable actor"""


@dataclass(frozen=True)
class PublicKey:
    id: str
    owner: str
    pem: str


@dataclass(frozen=True)
class Actor:
    id: str
    inbox: str
    name: Optional[str] = None
    preferred_username: Optional[str] = None
    summary: Optional[str] = None
    url: Optional[str] = None
    shared_inbox: Optional[str] = None
    followers: Optional[str] = None
    public_keys: Tuple[PublicKey, ...] = ()
    document: dict = field(default_factory=dict, compare=False, repr=False)

    def find_key(self, key_id: str) -> Optional[PublicKey]:
        for key in self.public_keys:
            if key.id == key_id:
                return key
        return None


def _first_id(value) -> Optional[str]:
    """Accept either a bare URI or an embedded object with an id"""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get('id'), str):
        return value['id']
    return None


def parse_actor(document) -> Actor:
    """
    Build an Actor from an ActivityPub actor document

    Args:
        document: Parsed JSON of the actor

    Returns:
        Actor

    Raises:
        MalformedActorError: If the document lacks an id or inbox
    """
    if not isinstance(document, dict):
        raise MalformedActorError("Actor document is not a JSON object")

    actor_id = document.get('id')
    inbox = _first_id(document.get('inbox'))
    if not isinstance(actor_id, str) or not actor_id:
        raise MalformedActorError("Actor document has no id")
    if not inbox:
        raise MalformedActorError(f"Actor {actor_id} has no inbox")

    # publicKey can be a single object or an array
    public_key_data = document.get('publicKey') or []
    keys_to_check = public_key_data if isinstance(public_key_data, list) else [public_key_data]
    public_keys = []
    for key_obj in keys_to_check:
        if not isinstance(key_obj, dict):
            continue
        key_id = key_obj.get('id')
        pem = key_obj.get('publicKeyPem')
        if isinstance(key_id, str) and isinstance(pem, str):
            owner = key_obj.get('owner') if isinstance(key_obj.get('owner'), str) else actor_id
            public_keys.append(PublicKey(id=key_id, owner=owner, pem=pem))

    endpoints = document.get('endpoints')
    shared_inbox = None
    if isinstance(endpoints, dict):
        shared_inbox = _first_id(endpoints.get('sharedInbox'))

    return Actor(
        id=actor_id,
        inbox=inbox,
        name=document.get('name'),
        preferred_username=document.get('preferredUsername'),
        summary=document.get('summary'),
        url=_first_id(document.get('url')),
        shared_inbox=shared_inbox,
        followers=_first_id(document.get('followers')),
        public_keys=tuple(public_keys),
        document=document
    )


class ActorCache:
    """Thread-safe TTL cache of remote actors keyed by actor URI"""

    def __init__(self, ttl: float):
        self.ttl = ttl
        self._entries: Dict[str, Tuple[Actor, float]] = {}
        self._lock = threading.Lock()

    def get(self, uri: str) -> Optional[Actor]:
        with self._lock:
            entry = self._entries.get(uri)
            if entry is None:
                return None
            actor, expires_at = entry
            if time.monotonic() >= expires_at:
                del self._entries[uri]
                return None
            return actor

    def put(self, uri: str, actor: Actor) -> None:
        with self._lock:
            self._entries[uri] = (actor, time.monotonic() + self.ttl)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def strip_fragment(uri: str) -> str:
    parsed = urlparse(uri)
    return parsed._replace(fragment='').geturl()


def same_origin(a: str, b: str) -> bool:
    """True when both URIs share scheme and host (including port)"""
    first, second = urlparse(a), urlparse(b)
    return (first.scheme.lower(), first.netloc.lower()) == (second.scheme.lower(), second.netloc.lower())


class ActorResolver:
    def __init__(self, config: dict, key_store: KeyStore):
        self.config = config
        self.key_store = key_store
        self.handle = config['activitypub']['username']
        self.cache = ActorCache(config['security'].get('actor_cache_ttl', 3600))

    def is_local_handle(self, handle: str) -> bool:
        return handle == self.handle

    def parse_local_actor_uri(self, uri) -> Optional[str]:
        """Return the local handle if uri is the local actor's id, else None"""
        if not isinstance(uri, str):
            return None
        if strip_fragment(uri) == config_utils.actor_uri(self.config, self.handle):
            return self.handle
        return None

    def resolve_local_actor(self, handle: str) -> Optional[Actor]:
        """
        Build the local actor for handle

        Returns:
            Actor, or None for any handle other than the configured one
        """
        document = self.render_local_actor(handle)
        if document is None:
            return None
        return parse_actor(document)

    def render_local_actor(self, handle: str) -> Optional[dict]:
        """Actor document for handle as served over HTTP, or None if unknown"""
        if not self.is_local_handle(handle):
            return None
        key_pair = self.key_store.get_or_create_key_pair(handle)
        return templates.render_actor(self.config, handle, key_pair.public_key_pem)

    def resolve_remote_actor(self, uri: str, refresh: bool = False) -> Actor:
        """
        Fetch a remote actor document, using the TTL cache unless refresh is set

        Raises:
            RemoteFetchError: Network failure or non-2xx response
            MalformedActorError: Response is not a usable actor document
        """
        uri = strip_fragment(uri)
        if not refresh:
            cached = self.cache.get(uri)
            if cached is not None:
                return cached

        headers = {
            'Accept': f"{config_utils.CONTENT_TYPE_AP}, {config_utils.CONTENT_TYPE_LD}",
            'User-Agent': self.config['server'].get('user_agent', 'SoloFedi/1.0')
        }

        try:
            response = requests.get(uri, headers=headers, timeout=10)
            response.raise_for_status()
        except requests.RequestException as e:
            raise RemoteFetchError(f"Cannot fetch actor {uri}: {e}") from e

        try:
            document = response.json()
        except ValueError as e:
            raise MalformedActorError(f"Actor {uri} did not return JSON: {e}") from e

        actor = parse_actor(document)
        if not same_origin(actor.id, uri):
            raise MalformedActorError(f"Actor fetched from {uri} claims foreign id {actor.id}")
        self.cache.put(uri, actor)
        if actor.id != uri:
            self.cache.put(actor.id, actor)
        logger.debug("Resolved remote actor %s", actor.id)
        return actor

    def try_resolve_remote_actor(self, uri: str) -> Optional[Actor]:
        """Like resolve_remote_actor but degrades to None on failure"""
        try:
            return self.resolve_remote_actor(uri)
        except (RemoteFetchError, MalformedActorError) as e:
            logger.warning("Could not resolve actor %s: %s", uri, e)
            return None

    def resolve_public_key(self, key_id: str, refresh: bool = False) -> PublicKey:
        """
        Resolve an HTTP Signature keyId to its public key

        Per https://swicg.github.io/activitypub-http-signature/ the fragment
        is stripped before fetching, and the key whose id matches the full
        keyId is selected from the actor's publicKey entries. The key must be
        owned by the actor document it was found on.

        Raises:
            RemoteFetchError, MalformedActorError: Actor fetch failed or has no such key
        """
        actor = self.resolve_remote_actor(strip_fragment(key_id), refresh=refresh)
        key = actor.find_key(key_id)
        if key is None:
            raise MalformedActorError(f"No publicKey with id {key_id} on {actor.id}")
        if key.owner != actor.id:
            raise MalformedActorError(f"Key {key_id} claims owner {key.owner}, not {actor.id}")
        return key
