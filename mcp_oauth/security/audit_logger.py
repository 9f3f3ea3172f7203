"""
Security Audit Logging for the OAuth authorization core

Every state-changing step of the authorization flow produces one audit event:
- Authorization decisions (granted / denied)
- Token lifecycle (issued, refreshed, revoked, reuse detected)
- Client registration
- Access token validation
"""

import json
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, List, Union

security_logger = logging.getLogger("security_audit")
security_logger.setLevel(logging.INFO)


class AuditEventType(str, Enum):
    """Types of security audit events"""

    # Authorization endpoint
    AUTHORIZATION_GRANTED = "oauth.authorization.granted"
    AUTHORIZATION_DENIED = "oauth.authorization.denied"

    # Token lifecycle
    TOKEN_ISSUED = "oauth.token.issued"
    TOKEN_REFRESHED = "oauth.token.refreshed"
    TOKEN_REUSE_DETECTED = "oauth.token.reuse_detected"
    TOKEN_REVOKED = "oauth.token.revoked"

    # Token validation
    TOKEN_VALIDATION_SUCCESS = "oauth.token.validation.success"
    TOKEN_VALIDATION_FAILED = "oauth.token.validation.failed"

    # Clients
    CLIENT_REGISTERED = "oauth.client.registered"
    CLIENT_DELETED = "oauth.client.deleted"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    DENIED = "denied"
    ERROR = "error"


# Metadata keys carrying credential values; only a short prefix is ever logged
SENSITIVE_KEYS = ("token", "access_token", "refresh_token", "code", "client_secret", "code_verifier")
# Metadata keys carrying end-user identifiers; hashed
PII_KEYS = ("subject", "user_id", "client_ip")


@dataclass
class AuditEvent:
    """Security audit event data structure"""

    event_type: str
    outcome: AuditOutcome
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.event_type, AuditEventType):
            self.event_type = self.event_type.value
        self.outcome = AuditOutcome(self.outcome)
        if not self.timestamp.tzinfo:
            self.timestamp = self.timestamp.replace(tzinfo=timezone.utc)


class AuditLogger(ABC):
    """Sink for audit events; implementations may raise, callers must cope"""

    @abstractmethod
    def log_event(self,
                  event_type: Union[AuditEventType, str],
                  outcome: Union[AuditOutcome, str],
                  metadata: Optional[Dict[str, Any]] = None) -> None:
        pass


class NullAuditLogger(AuditLogger):
    """Discards every event"""

    def log_event(self, event_type, outcome, metadata=None) -> None:
        return None


class InMemoryAuditLogger(AuditLogger):
    """Keeps events in a list; for tests and local inspection"""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def log_event(self, event_type, outcome, metadata=None) -> None:
        self.events.append(AuditEvent(event_type=event_type, outcome=outcome,
                                      metadata=dict(metadata or {})))

    def of_type(self, event_type: Union[AuditEventType, str]) -> List[AuditEvent]:
        name = event_type.value if isinstance(event_type, AuditEventType) else event_type
        return [event for event in self.events if event.event_type == name]


class SecurityAuditLogger(AuditLogger):
    """
    Structured security audit logger writing JSON lines to the
    `security_audit` logger

    Features:
    - One compact JSON object per event
    - Level by outcome: success=INFO, denied=WARNING, error=ERROR
    - End-user identifiers hashed with a salt
    - Credential values truncated to an 8-character prefix
    """

    def __init__(self,
                 logger_name: str = "security_audit",
                 enable_pii_hashing: bool = True,
                 hash_salt: str = "mcp-oauth-audit-salt",
                 max_metadata_length: int = 2048):
        """
        Initialize security audit logger

        Args:
            logger_name: Logger instance name
            enable_pii_hashing: Whether to hash subject identifiers
            hash_salt: Salt for PII hashing
            max_metadata_length: Maximum serialized length for metadata
        """
        self.logger = logging.getLogger(logger_name)
        self.enable_pii_hashing = enable_pii_hashing
        self.hash_salt = hash_salt
        self.max_metadata_length = max_metadata_length

    def log_event(self,
                  event_type: Union[AuditEventType, str],
                  outcome: Union[AuditOutcome, str],
                  metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Log security audit event

        Args:
            event_type: Dotted event name, e.g. "oauth.token.issued"
            outcome: success, denied or error
            metadata: Event details (client_id, subject, scope, reason, ...)
        """
        event = AuditEvent(event_type=event_type, outcome=outcome, metadata=dict(metadata or {}))
        event.metadata = self._redact(event.metadata)
        log_entry = self._format_log_entry(event)

        if event.outcome == AuditOutcome.SUCCESS:
            self.logger.info(log_entry)
        elif event.outcome == AuditOutcome.DENIED:
            self.logger.warning(log_entry)
        else:
            self.logger.error(log_entry)

    def _redact(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        redacted = {}
        for key, value in metadata.items():
            if value is None:
                continue
            if key in SENSITIVE_KEYS and isinstance(value, str):
                redacted[key] = f"{value[:8]}..."
            elif key in PII_KEYS and self.enable_pii_hashing and isinstance(value, str):
                redacted[key] = self._hash_value(value)
            else:
                redacted[key] = value
        return redacted

    def _hash_value(self, value: str) -> str:
        """Hash a value with salt"""
        salted_value = f"{value}{self.hash_salt}"
        return hashlib.sha256(salted_value.encode()).hexdigest()[:16]

    def _format_log_entry(self, event: AuditEvent) -> str:
        log_data = {
            "event_type": event.event_type,
            "outcome": event.outcome.value,
            "timestamp": event.timestamp.isoformat(),
        }

        if event.metadata:
            metadata_str = json.dumps(event.metadata, default=str)
            if len(metadata_str) > self.max_metadata_length:
                log_data["metadata"] = metadata_str[:self.max_metadata_length] + "..."
            else:
                log_data["metadata"] = event.metadata

        return json.dumps(log_data, separators=(',', ':'), default=str)


def get_security_audit_logger(logger_name: str = "security_audit",
                              hash_salt: str = "mcp-oauth-audit-salt") -> SecurityAuditLogger:
    """Get or create security audit logger instance"""
    return SecurityAuditLogger(logger_name=logger_name, hash_salt=hash_salt)
