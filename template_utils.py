#!/usr/bin/env python3
"""
Templating utilities for ActivityPub entities using Jinja2
"""
import json
import os
import uuid
from jinja2 import Environment, FileSystemLoader, select_autoescape

import config_utils


class ActivityPubTemplates:
    """Template manager for ActivityPub entities and the home page"""

    def __init__(self, template_dir='templates'):
        """Initialize template environment"""
        # Get absolute path to templates directory relative to this file
        current_dir = os.path.dirname(os.path.abspath(__file__))
        template_path = os.path.join(current_dir, template_dir)

        self.env = Environment(
            loader=FileSystemLoader(template_path),
            autoescape=select_autoescape(['html', 'html.j2']),
            trim_blocks=True,
            lstrip_blocks=True
        )

    def render_json_template(self, template_name, **context):
        """
        Render a JSON template with the given context

        Args:
            template_name: Template file path (e.g., 'objects/actor.json.j2')
            **context: Template variables

        Returns:
            dict: Parsed JSON object
        """
        template = self.env.get_template(template_name)
        json_str = template.render(**context)
        return json.loads(json_str)

    def render_actor(self, config, handle, public_key_pem=None):
        """
        Render the local actor document

        Args:
            config: Configuration dictionary
            handle: Local actor handle
            public_key_pem: Public key PEM string (omitted from the document when None)

        Returns:
            dict: Person JSON object
        """
        template_data = {
            'website_url': config_utils.generate_website_url(config),
            'actor_id': config_utils.actor_uri(config, handle),
            'username': handle,
            'actor_name': config['activitypub']['actor_name'],
            'actor_summary': config['activitypub']['actor_summary'],
            'inbox': config_utils.inbox_uri(config, handle),
            'shared_inbox': config_utils.shared_inbox_uri(config),
            'followers': config_utils.followers_uri(config, handle),
            'key_id': config_utils.key_id(config, handle),
            'public_key_pem': public_key_pem
        }

        return self.render_json_template('objects/actor.json.j2', **template_data)

    def render_webfinger(self, config, handle):
        """Render the WebFinger JRD for the local actor"""
        return self.render_json_template(
            'objects/webfinger.json.j2',
            subject=config_utils.account(config),
            actor_id=config_utils.actor_uri(config, handle),
            website_url=config_utils.generate_website_url(config)
        )

    def render_accept_activity(self, actor_id, follow_object, activity_id=None):
        """
        Render Accept activity template

        Args:
            actor_id: Local actor accepting the Follow
            follow_object: The original Follow activity (embedded as object)
            activity_id: Activity ID (default: fragment id under the actor)

        Returns:
            dict: Accept activity JSON object
        """
        if activity_id is None:
            activity_id = f"{actor_id}#accepts/{uuid.uuid4()}"

        return self.render_json_template(
            'activities/accept.json.j2',
            activity_id=activity_id,
            actor_id=actor_id,
            follow_object=follow_object
        )

    def render_followers_collection(self, followers_id, followers_list=None):
        """
        Render followers collection template

        Args:
            followers_id: Collection ID
            followers_list: Follower actor URLs

        Returns:
            dict: OrderedCollection JSON object
        """
        return self.render_json_template(
            'collections/followers.json.j2',
            followers_id=followers_id,
            followers_list=followers_list or []
        )

    def render_home_page(self, config, followers_list):
        """Render the HTML home page listing followers"""
        template = self.env.get_template('html/home.html.j2')
        return template.render(
            actor_name=config['activitypub']['actor_name'],
            account=config_utils.account(config),
            followers_list=followers_list
        )


# Global instance
templates = ActivityPubTemplates()
