#!/usr/bin/env python3
"""
CLI tool for inspecting and maintaining the local actor
"""
import argparse
import sys
import os

# Add parent directory to path to import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config_utils
from followers import FollowerStore
from key_store import KeyFormatError, KeyStore
from kv_store import StorageError, create_store


def main(argv=None):
    parser = argparse.ArgumentParser(description='Maintain the local ActivityPub actor')
    parser.add_argument('--config', default='config.json', help='Path to config file (default: config.json)')
    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('followers', help='List current followers')
    subparsers.add_parser('show-key', help='Print the public key, generating the key pair if needed')
    subparsers.add_parser('rotate-key', help='Replace the key pair with a new one')

    args = parser.parse_args(argv)
    config = config_utils.load_config(args.config)
    config_utils.configure_logging(config)
    handle = config['activitypub']['username']

    try:
        kv = create_store(config)
        if args.command == 'followers':
            followers = FollowerStore(kv).list_followers()
            for actor_url in followers:
                print(actor_url)
            print(f"{len(followers)} follower(s)", file=sys.stderr)
        elif args.command == 'show-key':
            key_pair = KeyStore(kv).get_or_create_key_pair(handle)
            print(f"Key ID: {config_utils.key_id(config, handle)}")
            print(key_pair.public_key_pem)
        elif args.command == 'rotate-key':
            key_pair = KeyStore(kv).rotate_key_pair(handle)
            print(f"✅ Rotated key pair for {handle}")
            print(key_pair.public_key_pem)
    except (StorageError, KeyFormatError) as e:
        print(f"❌ Error: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
