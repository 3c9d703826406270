from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional

from bloggerhub.config import Settings, TokenAlgorithm
from bloggerhub.logging import get_logger
from bloggerhub.service.errors import InvalidToken

logger = get_logger(__name__)

_DIGESTS = {
    TokenAlgorithm.HS256: hashlib.sha256,
    TokenAlgorithm.HS384: hashlib.sha384,
    TokenAlgorithm.HS512: hashlib.sha512,
}

ACCESS = "access"
REFRESH = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class _Signer:
    """HMAC JWS signer/verifier bound to one secret and one algorithm."""

    def __init__(self, secret: str, algorithm: TokenAlgorithm) -> None:
        self.secret = secret.encode()
        self.algorithm = TokenAlgorithm(algorithm)
        self.digest = _DIGESTS[self.algorithm]

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self.secret, signing_input.encode(), self.digest).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm.value, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload when the signature checks out, else None."""
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Nothing attacker-controlled is parsed before the signature matches
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        try:
            signature_ok = hmac.compare_digest(expected_sig, sig_b64)
        except TypeError:
            # non-ASCII signature segment
            return None
        if not signature_ok:
            return None

        # Reject alg switching, including "none"
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != self.algorithm.value:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None


class TokenCodec:
    """Mints and verifies access and refresh tokens.

    Access tokens carry ``{iss, sub, iat, exp, jti}``; refresh tokens add
    ``tokenId`` linking them to a server-side refresh record. The two kinds
    are signed with separate secrets, so one can never pass as the other.

    The ``verify_*`` methods never raise. The claim accessors re-verify and
    raise :class:`InvalidToken` on any failure.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str = "blogger-hub",
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        access_algorithm: TokenAlgorithm = TokenAlgorithm.HS512,
        refresh_algorithm: TokenAlgorithm = TokenAlgorithm.HS512,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self.clock = clock
        self._signers = {
            ACCESS: _Signer(access_secret, access_algorithm),
            REFRESH: _Signer(refresh_secret, refresh_algorithm),
        }

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "TokenCodec":
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_days * 24 * 3600,
            access_algorithm=settings.access_token_algorithm,
            refresh_algorithm=settings.refresh_token_algorithm,
            leeway_seconds=settings.token_leeway_seconds,
            clock=clock,
        )

    def _mint(self, kind: str, ttl_seconds: int, claims: dict[str, Any]) -> str:
        now = int(self.clock())
        payload = {
            "iss": self.issuer,
            "iat": now,
            "exp": now + ttl_seconds,
            # Unique per mint so two tokens issued in the same second differ
            "jti": str(uuid.uuid4()),
            **claims,
        }
        return self._signers[kind].encode(payload)

    def mint_access_token(self, user_id: str) -> str:
        return self._mint(ACCESS, self.access_ttl_seconds, {"sub": str(user_id)})

    def mint_refresh_token(self, user_id: str, token_id: str) -> str:
        return self._mint(
            REFRESH,
            self.refresh_ttl_seconds,
            {"sub": str(user_id), "tokenId": str(token_id)},
        )

    def _verified_claims(self, kind: str, token: str) -> Optional[dict[str, Any]]:
        payload = self._signers[kind].decode(token)
        if payload is None:
            return None
        if payload.get("iss") != self.issuer:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self.clock() - self.leeway_seconds:
            return None
        if not payload.get("sub"):
            return None
        return payload

    def verify_access_token(self, token: str) -> bool:
        valid = self._verified_claims(ACCESS, token) is not None
        if not valid:
            logger.info("access_token_rejected")
        return valid

    def verify_refresh_token(self, token: str) -> bool:
        valid = self._verified_claims(REFRESH, token) is not None
        if not valid:
            logger.info("refresh_token_rejected")
        return valid

    def _require_claim(self, kind: str, token: str, claim: str) -> str:
        payload = self._verified_claims(kind, token)
        if payload is None or not payload.get(claim):
            raise InvalidToken()
        return str(payload[claim])

    def subject_of_access_token(self, token: str) -> str:
        return self._require_claim(ACCESS, token, "sub")

    def subject_of_refresh_token(self, token: str) -> str:
        return self._require_claim(REFRESH, token, "sub")

    def token_id_of_refresh_token(self, token: str) -> str:
        return self._require_claim(REFRESH, token, "tokenId")
