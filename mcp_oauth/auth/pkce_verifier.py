"""
PKCE (Proof Key for Code Exchange, RFC 7636)

Challenges are recorded at authorization time and checked at code exchange:
- S256: BASE64URL(SHA256(verifier)) without padding
- plain: the verifier itself
Comparison is constant-time.
"""

import base64
import hashlib
import secrets
import string
from dataclasses import dataclass
from typing import Union
import logging

from ..models import CodeChallengeMethod

logger = logging.getLogger(__name__)


@dataclass
class PKCEChallenge:
    """Verifier/challenge pair as a client would hold it"""
    code_verifier: str
    code_challenge: str
    code_challenge_method: CodeChallengeMethod


class PKCEError(Exception):
    """Malformed PKCE input (unknown method, bad verifier shape)"""
    pass


class PKCEVerifier:
    """
    RFC 7636 challenge computation and verification

    - code_verifier: 43-128 characters from A-Z, a-z, 0-9, "-", ".", "_", "~"
    - code_challenge_method: "S256" or "plain"
    """

    VALID_CHARS = string.ascii_letters + string.digits + "-._~"

    MIN_VERIFIER_LENGTH = 43
    MAX_VERIFIER_LENGTH = 128

    @classmethod
    def parse_method(cls, method: Union[str, CodeChallengeMethod, None]) -> CodeChallengeMethod:
        """Normalize a method name; missing means S256"""
        if method is None or method == "":
            return CodeChallengeMethod.S256
        try:
            return CodeChallengeMethod(method)
        except ValueError:
            raise PKCEError(f"Unsupported code challenge method: {method}") from None

    @classmethod
    def generate_code_verifier(cls, length: int = 64) -> str:
        if not (cls.MIN_VERIFIER_LENGTH <= length <= cls.MAX_VERIFIER_LENGTH):
            raise PKCEError(
                f"Code verifier length must be between {cls.MIN_VERIFIER_LENGTH} "
                f"and {cls.MAX_VERIFIER_LENGTH} characters"
            )
        return ''.join(secrets.choice(cls.VALID_CHARS) for _ in range(length))

    @classmethod
    def generate_code_challenge(cls,
                                code_verifier: str,
                                method: Union[str, CodeChallengeMethod] = CodeChallengeMethod.S256) -> str:
        """
        Compute the challenge for a verifier

        Raises:
            PKCEError: If the verifier is malformed or the method unsupported
        """
        cls._validate_code_verifier(code_verifier)
        method = cls.parse_method(method)

        if method == CodeChallengeMethod.S256:
            digest = hashlib.sha256(code_verifier.encode('ascii')).digest()
            return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')

        return code_verifier

    @classmethod
    def create_pkce_challenge(cls,
                              verifier_length: int = 64,
                              method: Union[str, CodeChallengeMethod] = CodeChallengeMethod.S256) -> PKCEChallenge:
        method = cls.parse_method(method)
        code_verifier = cls.generate_code_verifier(verifier_length)
        return PKCEChallenge(
            code_verifier=code_verifier,
            code_challenge=cls.generate_code_challenge(code_verifier, method),
            code_challenge_method=method
        )

    @classmethod
    def verify_code_challenge(cls,
                              code_verifier: str,
                              code_challenge: str,
                              method: Union[str, CodeChallengeMethod]) -> bool:
        """
        Check a presented verifier against the stored challenge

        Returns False for any mismatch, including a malformed verifier.
        """
        if not code_challenge:
            logger.warning("Empty code challenge provided")
            return False

        try:
            expected_challenge = cls.generate_code_challenge(code_verifier, method)
        except PKCEError as e:
            logger.warning(f"PKCE verification failed: {e}")
            return False

        is_valid = secrets.compare_digest(expected_challenge, code_challenge)
        if not is_valid:
            logger.warning("PKCE verification failed - challenge mismatch")
        return is_valid

    @classmethod
    def _validate_code_verifier(cls, code_verifier: str) -> None:
        if not code_verifier:
            raise PKCEError("Code verifier cannot be empty")

        if not (cls.MIN_VERIFIER_LENGTH <= len(code_verifier) <= cls.MAX_VERIFIER_LENGTH):
            raise PKCEError(
                f"Code verifier length must be between {cls.MIN_VERIFIER_LENGTH} "
                f"and {cls.MAX_VERIFIER_LENGTH} characters, got {len(code_verifier)}"
            )

        invalid_chars = set(code_verifier) - set(cls.VALID_CHARS)
        if invalid_chars:
            raise PKCEError(
                f"Code verifier contains invalid characters: {sorted(invalid_chars)}"
            )


def create_pkce_pair(method: str = "S256") -> PKCEChallenge:
    """Create a verifier/challenge pair with secure defaults"""
    return PKCEVerifier.create_pkce_challenge(method=method)


def verify_pkce(code_verifier: str, code_challenge: str, method: str = "S256") -> bool:
    return PKCEVerifier.verify_code_challenge(code_verifier, code_challenge, method)
