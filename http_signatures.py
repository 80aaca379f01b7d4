#!/usr/bin/env python3
"""
HTTP Signatures for ActivityPub

Implements draft-cavage-http-signatures-12 for ActivityPub:
- Verifying incoming ActivityPub requests
- Signing outgoing ActivityPub requests

References:
- https://swicg.github.io/activitypub-http-signature/
- https://datatracker.ietf.org/doc/html/draft-cavage-http-signatures-12
"""

import base64
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from actor_resolver import ActorResolver, MalformedActorError, RemoteFetchError

logger = logging.getLogger(__name__)

SIGNED_HEADERS = '(request-target) host date digest content-type'
SUPPORTED_ALGORITHMS = ('rsa-sha256', 'hs2019')


@dataclass(frozen=True)
class Verified:
    key_id: str
    actor_id: str


@dataclass(frozen=True)
class Rejected:
    reason: str


VerificationResult = Union[Verified, Rejected]


def lowercase_headers(headers) -> Dict[str, str]:
    """Copy headers into a dict keyed by lowercase header name"""
    return {name.lower(): value for name, value in headers.items()}


def parse_signature_header(signature_header: str) -> Dict[str, str]:
    """
    Parse HTTP Signature header into components

    Args:
        signature_header: Raw Signature header value
            Example: 'keyId="https://example.com/actor#main-key",headers="(request-target) host date",signature="..."'

    Returns:
        dict: Parsed signature components (keyId, headers, signature, algorithm)
    """
    components = {}

    # Parse header format: keyId="...",headers="...",signature="..."
    pattern = r'(\w+)="([^"]*)"'
    matches = re.findall(pattern, signature_header)

    for key, value in matches:
        components[key] = value

    return components


def extract_signature_header(headers: Dict[str, str]) -> Optional[str]:
    """Find the signature in either the Signature or Authorization header"""
    if headers.get('signature'):
        return headers['signature']
    authorization = headers.get('authorization', '')
    scheme, _, parameters = authorization.partition(' ')
    if scheme.lower() == 'signature' and parameters:
        return parameters
    return None


def build_signing_string(headers_to_sign: str, method: str, path: str, headers: Dict[str, str]) -> str:
    """
    Build the signing string from request components

    See https://swicg.github.io/activitypub-http-signature/#signing-string
    Format: "header-name: header-value\\nheader-name: header-value\\n..."

    Args:
        headers_to_sign: Space-separated list of headers (e.g., "(request-target) host date digest")
        method: HTTP method (e.g., "POST")
        path: Request path including any query string (e.g., "/users/me/inbox")
        headers: Dict of HTTP headers from the request

    Returns:
        str: Signing string ready for signing or verification
    """
    lowered = lowercase_headers(headers)
    signing_parts = []

    for header_name in headers_to_sign.split():
        header_name = header_name.lower()
        if header_name == '(request-target)':
            signing_parts.append(f"(request-target): {method.lower()} {path}")
        else:
            header_value = lowered.get(header_name)
            if header_value is None:
                # Header not found - signature will fail
                logger.debug("Header '%s' not found in request", header_name)
                header_value = ''
            signing_parts.append(f"{header_name}: {header_value.strip()}")

    return '\n'.join(signing_parts)


def compute_digest(body: bytes) -> str:
    """
    Compute SHA-256 digest of request body

    Digest header format is "SHA-256=base64(sha256(body))"

    Args:
        body: Request body as bytes

    Returns:
        str: Digest header value (e.g., "SHA-256=abc123...")
    """
    hash_obj = hashlib.sha256(body)
    digest_b64 = base64.b64encode(hash_obj.digest()).decode('utf-8')
    return f"SHA-256={digest_b64}"


def verify_digest(digest_header: str, body: bytes) -> bool:
    """
    Verify that Digest header matches the request body

    The header may list several digests ("SHA-256=...,SHA-512=..."); the
    SHA-256 one is checked and its algorithm name is matched case-insensitively.

    Returns:
        bool: True if digest matches, False otherwise
    """
    expected = compute_digest(body).split('=', 1)[1]
    for part in digest_header.split(','):
        algorithm, sep, value = part.strip().partition('=')
        if sep and algorithm.lower() == 'sha-256':
            if value == expected:
                return True
            logger.info("Digest mismatch: expected SHA-256=%s, got %s", expected, digest_header)
            return False

    logger.info("No SHA-256 digest in header: %s", digest_header)
    return False


def verify_date(date_header: str, max_age_seconds: int = 300) -> bool:
    """
    Verify that Date header is within acceptable time window

    Prevents replay attacks by rejecting old requests; clock skew is
    tolerated in both directions.

    Args:
        date_header: Value of Date header (RFC 7231 format)
        max_age_seconds: Maximum age in seconds (default 5 minutes)

    Returns:
        bool: True if date is valid, False otherwise
    """
    try:
        request_time = parsedate_to_datetime(date_header)
    except (TypeError, ValueError, IndexError) as e:
        logger.info("Error parsing date header %r: %s", date_header, e)
        return False

    if request_time.tzinfo is None:
        request_time = request_time.replace(tzinfo=timezone.utc)

    age = (datetime.now(timezone.utc) - request_time).total_seconds()
    if abs(age) <= max_age_seconds:
        return True

    logger.info("Date too old/new: %.0f seconds (max %s)", age, max_age_seconds)
    return False


def verify_with_public_key(public_key_pem: str, signature: bytes, signing_string: str) -> bool:
    """RSA-SHA256 (PKCS#1 v1.5) check of signature over signing_string"""
    try:
        public_key = serialization.load_pem_public_key(
            public_key_pem.encode('utf-8'),
            backend=default_backend()
        )
    except (ValueError, UnsupportedAlgorithm) as e:
        logger.info("Cannot load public key: %s", e)
        return False

    if not isinstance(public_key, rsa.RSAPublicKey):
        logger.info("Unsupported public key type %s", type(public_key).__name__)
        return False

    try:
        public_key.verify(
            signature,
            signing_string.encode('utf-8'),
            padding.PKCS1v15(),
            hashes.SHA256()
        )
        return True
    except InvalidSignature:
        return False


def sign_request(method: str, path: str, headers: Dict[str, str], body: bytes,
                 private_key: rsa.RSAPrivateKey, key_id: str) -> str:
    """
    Generate HTTP signature for outgoing request

    Adds a Digest header to headers as a side effect.

    Args:
        method: HTTP method (e.g., "POST")
        path: Request path (e.g., "/inbox")
        headers: Dict of headers to include in request (needs Host, Date, Content-Type)
        body: Request body as bytes
        private_key: Signing key
        key_id: Public key ID URL (e.g., "https://example.com/users/me#main-key")

    Returns:
        str: Signature header value to add to request
    """
    headers['Digest'] = compute_digest(body)

    signing_string = build_signing_string(SIGNED_HEADERS, method, path, headers)

    signature_bytes = private_key.sign(
        signing_string.encode('utf-8'),
        padding.PKCS1v15(),
        hashes.SHA256()
    )
    signature_b64 = base64.b64encode(signature_bytes).decode('utf-8')

    return f'keyId="{key_id}",algorithm="rsa-sha256",headers="{SIGNED_HEADERS}",signature="{signature_b64}"'


class SignatureVerifier:
    """
    Authenticates inbound requests

    verify() never raises for a bad request: every failure is returned as
    Rejected so callers branch on it.
    """

    def __init__(self, resolver: ActorResolver, max_age_seconds: int = 300):
        self.resolver = resolver
        self.max_age_seconds = max_age_seconds

    def verify(self, method: str, path: str, headers, body: bytes) -> VerificationResult:
        """
        Complete verification of an incoming ActivityPub request

        Performs:
        1. Signature header parsing and coverage check
        2. Digest verification (body matches Digest header)
        3. Date verification (request is recent)
        4. Key resolution and cryptographic validation

        Args:
            method: HTTP method (e.g., "POST")
            path: Request path including query string
            headers: Request headers (any mapping)
            body: Request body as bytes

        Returns:
            Verified with the key owner, or Rejected with a reason
        """
        headers = lowercase_headers(headers)

        signature_header = extract_signature_header(headers)
        if not signature_header:
            return self._reject("missing signature header")

        sig_components = parse_signature_header(signature_header)
        key_id = sig_components.get('keyId')
        signature_b64 = sig_components.get('signature')
        headers_to_sign = sig_components.get('headers', 'date').lower()
        algorithm = sig_components.get('algorithm', 'hs2019').lower()

        if not key_id or not signature_b64:
            return self._reject("missing keyId or signature in Signature header")
        if algorithm not in SUPPORTED_ALGORITHMS:
            return self._reject(f"unsupported algorithm {algorithm}")

        covered = headers_to_sign.split()
        required = ['(request-target)', 'host', 'date']
        if body:
            required.append('digest')
        missing = [name for name in required if name not in covered]
        if missing:
            return self._reject(f"signature does not cover {', '.join(missing)}")

        if body or 'digest' in headers:
            if not verify_digest(headers.get('digest', ''), body):
                return self._reject("digest does not match body")

        if not verify_date(headers.get('date', ''), self.max_age_seconds):
            return self._reject("date outside allowed window")

        try:
            signature = base64.b64decode(signature_b64, validate=True)
        except (binascii.Error, ValueError):
            return self._reject("signature is not valid base64")

        signing_string = build_signing_string(headers_to_sign, method, path, headers)

        try:
            public_key = self.resolver.resolve_public_key(key_id)
        except (RemoteFetchError, MalformedActorError) as e:
            return self._reject(f"cannot resolve key {key_id}: {e}")

        if not verify_with_public_key(public_key.pem, signature, signing_string):
            # The remote side may have rotated its key since we cached it
            try:
                refreshed = self.resolver.resolve_public_key(key_id, refresh=True)
            except (RemoteFetchError, MalformedActorError) as e:
                return self._reject(f"cannot refresh key {key_id}: {e}")
            if refreshed.pem == public_key.pem or not verify_with_public_key(refreshed.pem, signature, signing_string):
                return self._reject(f"signature mismatch for {key_id}")
            public_key = refreshed

        logger.info("✓ Signature verified for %s", key_id)
        return Verified(key_id=key_id, actor_id=public_key.owner)

    def _reject(self, reason: str) -> Rejected:
        logger.info("✗ Signature rejected: %s", reason)
        return Rejected(reason=reason)
