#!/usr/bin/env python3
"""
Configuration loading and URL helpers
"""
import copy
import json
import logging
import sys

CONTENT_TYPE_AP = 'application/activity+json'
CONTENT_TYPE_LD = 'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'

DEFAULTS = {
    "server": {
        "protocol": "https",
        "host": "0.0.0.0",
        "port": 5000,
        "debug": False,
        "user_agent": "SoloFedi/1.0"
    },
    "activitypub": {
        "username": "me",
        "actor_name": "Me",
        "actor_summary": "This is me!"
    },
    "security": {
        "require_http_signatures": True,
        "signature_max_age_seconds": 300,
        "actor_cache_ttl": 3600
    },
    "delivery": {
        "max_attempts": 5,
        "backoff_seconds": 1.0,
        "timeout": 30,
        "workers": 4
    },
    "storage": {
        "backend": "file",
        "directory": "data"
    },
    "logging": {
        "level": "INFO"
    }
}


def apply_defaults(config):
    """
    Fill in missing optional settings

    Args:
        config: Configuration dictionary as loaded from disk

    Returns:
        dict: New dictionary with every section of DEFAULTS present
    """
    merged = copy.deepcopy(DEFAULTS)
    for section, values in config.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values

    if 'domain' not in merged['server']:
        raise ValueError("config.json is missing server.domain")
    return merged


def load_config(path='config.json'):
    """Load configuration from config.json"""
    try:
        with open(path, 'r') as f:
            return apply_defaults(json.load(f))
    except FileNotFoundError:
        print(f"❌ Error: {path} not found!")
        print("Please copy the example configuration file and customize it:")
        print("  cp config.json.example config.json")
        print("Then edit config.json with your domain and settings.")
        raise SystemExit(1)
    except json.JSONDecodeError as e:
        print(f"❌ Error: {path} is not valid JSON: {e}")
        print("Please check the file format and try again.")
        raise SystemExit(1)
    except ValueError as e:
        print(f"❌ Error: {e}")
        raise SystemExit(1)


def configure_logging(config):
    """Configure root logging from config['logging']['level']"""
    level_name = str(config.get('logging', {}).get('level', 'INFO')).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        stream=sys.stderr
    )


def generate_website_url(config):
    """
    Generate the site root URL from config

    Returns:
        str: URL like 'https://example.com'
    """
    protocol = config['server'].get('protocol', 'https')
    return f"{protocol}://{config['server']['domain']}"


def actor_uri(config, handle):
    """Actor id for a local handle, e.g. 'https://example.com/users/me'"""
    return f"{generate_website_url(config)}/users/{handle}"


def inbox_uri(config, handle):
    return f"{actor_uri(config, handle)}/inbox"


def followers_uri(config, handle):
    return f"{actor_uri(config, handle)}/followers"


def shared_inbox_uri(config):
    return f"{generate_website_url(config)}/inbox"


def key_id(config, handle):
    return f"{actor_uri(config, handle)}#main-key"


def account(config):
    """WebFinger account for the local actor, e.g. 'acct:me@example.com'"""
    return f"acct:{config['activitypub']['username']}@{config['server']['domain']}"
