#!/usr/bin/env python3
"""
Inbox activity processing

Each inbound activity is classified into exactly one variant (Follow, Undo,
Accept, Reject or Unknown) and handled by the matching branch of
InboxProcessor.process. Only follower relationships are persisted; the
activities themselves are discarded after processing.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

import config_utils
from activity_delivery import DeliveryDispatcher
from actor_resolver import ActorResolver
from followers import FollowerStore
from key_store import KeyStore
from template_utils import templates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BaseActivity:
    id: Optional[str]
    actor: Optional[str]
    object: object
    raw: dict = field(compare=False, repr=False)

    @property
    def object_id(self) -> Optional[str]:
        if isinstance(self.object, str):
            return self.object
        if isinstance(self.object, dict) and isinstance(self.object.get('id'), str):
            return self.object['id']
        return None


class Follow(BaseActivity):
    pass


class Undo(BaseActivity):
    pass


class Accept(BaseActivity):
    pass


class Reject(BaseActivity):
    pass


@dataclass(frozen=True)
class Unknown(BaseActivity):
    type: Optional[str] = None


Activity = Union[Follow, Undo, Accept, Reject, Unknown]

ACTIVITY_TYPES = {
    'Follow': Follow,
    'Undo': Undo,
    'Accept': Accept,
    'Reject': Reject,
}


def _uri(value) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get('id'), str):
        return value['id']
    return None


def parse_activity(data: dict) -> Activity:
    """Classify a parsed JSON activity into its variant"""
    activity_type = data.get('type')
    kwargs = {
        'id': _uri(data.get('id')),
        'actor': _uri(data.get('actor')),
        'object': data.get('object'),
        'raw': data,
    }
    cls = ACTIVITY_TYPES.get(activity_type) if isinstance(activity_type, str) else None
    if cls is None:
        return Unknown(type=activity_type if isinstance(activity_type, str) else None, **kwargs)
    return cls(**kwargs)


class Outcome(Enum):
    FOLLOW_ACCEPTED = 'follow_accepted'
    FOLLOW_IGNORED = 'follow_ignored'
    UNDO_APPLIED = 'undo_applied'
    UNDO_IGNORED = 'undo_ignored'
    ACKNOWLEDGED = 'acknowledged'
    UNHANDLED = 'unhandled'


class InboxProcessor:
    def __init__(self, config: dict, key_store: KeyStore, resolver: ActorResolver,
                 followers: FollowerStore, dispatcher: DeliveryDispatcher):
        self.config = config
        self.key_store = key_store
        self.resolver = resolver
        self.followers = followers
        self.dispatcher = dispatcher

    def process(self, data: dict, verified_actor: Optional[str] = None) -> Outcome:
        """
        Handle one inbound activity

        Args:
            data: Parsed activity JSON
            verified_actor: Actor URI authenticated by the signature check,
                or None when unsigned requests are allowed

        Returns:
            Outcome: Which branch handled the activity

        Raises:
            StorageError, KeyFormatError: Persistence failed; the request should fail
        """
        activity = parse_activity(data)

        if isinstance(activity, Follow):
            return self._handle_follow(activity, verified_actor)
        elif isinstance(activity, Undo):
            return self._handle_undo(activity)
        elif isinstance(activity, (Accept, Reject)):
            logger.info("Received %s from %s for %s", type(activity).__name__,
                        activity.actor, activity.object_id)
            return Outcome.ACKNOWLEDGED
        else:
            logger.info("No handler for %s activity from %s - ignoring",
                        getattr(activity, 'type', None), activity.actor)
            return Outcome.UNHANDLED

    def _handle_follow(self, follow: Follow, verified_actor: Optional[str]) -> Outcome:
        if not follow.id or not follow.actor or not follow.object_id:
            logger.info("Follow missing id, actor or object - ignoring")
            return Outcome.FOLLOW_IGNORED

        handle = self.resolver.parse_local_actor_uri(follow.object_id)
        if handle is None:
            logger.info("Follow %s targets %s, not a local actor - ignoring", follow.id, follow.object_id)
            return Outcome.FOLLOW_IGNORED

        if verified_actor is not None and verified_actor != follow.actor:
            logger.warning("Follow %s claims actor %s but was signed by %s - ignoring",
                           follow.id, follow.actor, verified_actor)
            return Outcome.FOLLOW_IGNORED

        follower = self.resolver.try_resolve_remote_actor(follow.actor)
        if follower is None:
            logger.info("Cannot resolve follower %s - not accepting %s", follow.actor, follow.id)
            return Outcome.FOLLOW_IGNORED

        key_pair = self.key_store.get_or_create_key_pair(handle)

        # Persist before dispatching so an abandoned request never loses the record
        self.followers.add(follow.id, follow.actor)
        logger.info("Added %s to followers (%s)", follow.actor, follow.id)

        local_actor_id = config_utils.actor_uri(self.config, handle)
        accept = templates.render_accept_activity(local_actor_id, follow.raw)
        self.dispatcher.dispatch(accept, follower.inbox, key_pair, config_utils.key_id(self.config, handle))
        return Outcome.FOLLOW_ACCEPTED

    def _handle_undo(self, undo: Undo) -> Outcome:
        target_id = undo.object_id
        if target_id is None:
            logger.warning("Undo %s from %s has a malformed object - ignoring", undo.id, undo.actor)
            return Outcome.UNDO_IGNORED

        target_type = undo.object.get('type') if isinstance(undo.object, dict) else None
        if target_type not in (None, 'Follow'):
            logger.info("No handler for Undo.%s from %s - ignoring", target_type, undo.actor)
            return Outcome.UNDO_IGNORED

        recorded_actor = self.followers.get(target_id)
        if recorded_actor is None:
            logger.info("Undo of unknown Follow %s - nothing to do", target_id)
            return Outcome.UNDO_IGNORED

        if recorded_actor != undo.actor:
            logger.warning("Undo of %s sent by %s, but the Follow belongs to %s - ignoring",
                           target_id, undo.actor, recorded_actor)
            return Outcome.UNDO_IGNORED

        self.followers.remove(target_id)
        logger.info("Removed %s from followers (%s)", recorded_actor, target_id)
        return Outcome.UNDO_APPLIED
