"""
Authentication header codecs for RTSP and ONVIF
Basic and Digest (RFC 2617) for RTSP, WS-Security UsernameToken for ONVIF SOAP
"""

import base64
import hashlib
import logging
import os
import secrets
from enum import Enum
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
from dataclasses import dataclass
from xml.sax.saxutils import escape

from .discovery.models import Credential

logger = logging.getLogger(__name__)

DEFAULT_BASIC_REALM = "Camera"
DIGEST_NONCE_COUNT = "00000001"

WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
WSU_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd"
WSSE_PASSWORD_DIGEST = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-username-token-profile-1.0#PasswordDigest"
)
WSSE_BASE64_BINARY = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-soap-message-security-1.0#Base64Binary"
)


class AuthScheme(Enum):
    BASIC = "Basic"
    DIGEST = "Digest"


@dataclass
class AuthChallenge:
    """Parsed WWW-Authenticate challenge"""
    scheme: AuthScheme
    realm: Optional[str] = None
    nonce: Optional[str] = None
    opaque: Optional[str] = None
    qop: Optional[str] = None
    algorithm: Optional[str] = None
    stale: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        if self.scheme == AuthScheme.BASIC:
            return True
        return bool(self.realm) and bool(self.nonce)

    @property
    def supports_qop_auth(self) -> bool:
        if not self.qop:
            return False
        return 'auth' in [q.strip().lower() for q in self.qop.split(',')]


def _split_params(text: str) -> List[str]:
    """Split 'a="x, y", b=z' on commas that are not inside quotes"""
    parts = []
    current = []
    in_quotes = False
    for ch in text:
        if ch == '"':
            in_quotes = not in_quotes
            current.append(ch)
        elif ch == ',' and not in_quotes:
            parts.append(''.join(current).strip())
            current = []
        else:
            current.append(ch)
    if current:
        parts.append(''.join(current).strip())
    return [p for p in parts if p]


def _parse_params(text: str) -> Dict[str, str]:
    params = {}
    for part in _split_params(text):
        if '=' not in part:
            continue
        key, value = part.split('=', 1)
        value = value.strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        params[key.strip().lower()] = value
    return params


def parse_auth_challenge(header: Optional[str]) -> Optional[AuthChallenge]:
    """Parse one WWW-Authenticate header value. Returns None for unknown schemes."""
    if not header:
        return None
    header = header.strip()
    scheme_name, _, rest = header.partition(' ')
    scheme_name = scheme_name.lower()

    if scheme_name == 'digest':
        params = _parse_params(rest)
        return AuthChallenge(
            scheme=AuthScheme.DIGEST,
            realm=params.get('realm'),
            nonce=params.get('nonce'),
            opaque=params.get('opaque'),
            qop=params.get('qop'),
            algorithm=params.get('algorithm'),
            stale=params.get('stale'),
        )
    if scheme_name == 'basic':
        params = _parse_params(rest)
        return AuthChallenge(scheme=AuthScheme.BASIC, realm=params.get('realm') or DEFAULT_BASIC_REALM)

    logger.debug(f"Unsupported auth scheme in challenge: {header}")
    return None


def select_challenge(headers: Iterable[str]) -> Optional[AuthChallenge]:
    """
    Pick the challenge to answer from all WWW-Authenticate values of a 401.
    Digest is preferred over Basic; incomplete Digest challenges are skipped.
    """
    challenges = [c for c in (parse_auth_challenge(h) for h in headers) if c]
    ordered = sorted(challenges, key=lambda c: 0 if c.scheme == AuthScheme.DIGEST else 1)
    for challenge in ordered:
        if challenge.is_valid:
            return challenge
        logger.debug(f"Skipping incomplete {challenge.scheme.value} challenge (realm={challenge.realm})")
    return None


def basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode('utf-8')).decode('ascii')
    return f"Basic {token}"


def _md5(text: str) -> str:
    return hashlib.md5(text.encode('utf-8')).hexdigest()


def digest_response(username: str, password: str, realm: str, nonce: str, uri: str,
                    method: str = "DESCRIBE", qop: Optional[str] = None,
                    nc: Optional[str] = None, cnonce: Optional[str] = None) -> str:
    """RFC 2617 digest response hash"""
    ha1 = _md5(f"{username}:{realm}:{password}")
    ha2 = _md5(f"{method}:{uri}")
    if qop:
        return _md5(f"{ha1}:{nonce}:{nc}:{cnonce}:{qop}:{ha2}")
    return _md5(f"{ha1}:{nonce}:{ha2}")


def generate_cnonce() -> str:
    return secrets.token_hex(8)


def digest_auth_header(username: str, password: str, challenge: AuthChallenge, uri: str,
                       method: str = "DESCRIBE", cnonce: Optional[str] = None) -> str:
    """Render the Authorization value answering a Digest challenge"""
    if challenge.supports_qop_auth:
        qop = "auth"
        nc = DIGEST_NONCE_COUNT
        cnonce = cnonce or generate_cnonce()
    else:
        qop = nc = cnonce = None

    response = digest_response(username, password, challenge.realm, challenge.nonce, uri,
                               method=method, qop=qop, nc=nc, cnonce=cnonce)

    parts = [
        f'username="{username}"',
        f'realm="{challenge.realm}"',
        f'nonce="{challenge.nonce}"',
        f'uri="{uri}"',
    ]
    if qop:
        parts.extend([f'qop={qop}', f'nc={nc}', f'cnonce="{cnonce}"'])
    parts.append(f'response="{response}"')
    if challenge.opaque:
        parts.append(f'opaque="{challenge.opaque}"')
    return "Digest " + ", ".join(parts)


class Authenticator:
    """Answers one challenge for one credential, for any method/URI on that stream"""

    def __init__(self, challenge: AuthChallenge, credential: Credential):
        self.challenge = challenge
        self.credential = credential

    def header(self, method: str, uri: str) -> str:
        if self.challenge.scheme == AuthScheme.DIGEST:
            return digest_auth_header(self.credential.username, self.credential.password,
                                      self.challenge, uri, method=method)
        return basic_auth_header(self.credential.username, self.credential.password)


def password_digest(nonce: bytes, created: str, password: str) -> str:
    """WS-Security PasswordDigest: Base64(SHA1(nonce + created + password))"""
    sha = hashlib.sha1(nonce + created.encode('utf-8') + password.encode('utf-8')).digest()
    return base64.b64encode(sha).decode('ascii')


def ws_security_header(username: str, password: str,
                       nonce: Optional[bytes] = None, created: Optional[str] = None) -> str:
    """One-shot WS-Security UsernameToken header block, fresh nonce per call"""
    nonce = nonce if nonce is not None else os.urandom(16)
    created = created or datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
    digest = password_digest(nonce, created, password)
    nonce_b64 = base64.b64encode(nonce).decode('ascii')

    return (
        f'<wsse:Security s:mustUnderstand="1" xmlns:wsse="{WSSE_NS}" xmlns:wsu="{WSU_NS}">'
        f'<wsse:UsernameToken>'
        f'<wsse:Username>{escape(username)}</wsse:Username>'
        f'<wsse:Password Type="{WSSE_PASSWORD_DIGEST}">{digest}</wsse:Password>'
        f'<wsse:Nonce EncodingType="{WSSE_BASE64_BINARY}">{nonce_b64}</wsse:Nonce>'
        f'<wsu:Created>{created}</wsu:Created>'
        f'</wsse:UsernameToken>'
        f'</wsse:Security>'
    )