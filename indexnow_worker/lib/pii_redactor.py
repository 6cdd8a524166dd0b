"""PII redaction for log output.

Recipient addresses, customer phone numbers, card numbers and API
credentials must never land in logs in clear text.
"""

import re
from typing import Optional


class PIIRedactor:
    """Redact PII and secrets from text before logging."""

    PATTERNS = {
        'email': r'\b[\w.+-]+@[\w.-]+\.\w{2,}\b',
        'phone_intl': r'(?<![\w-])\+\d{1,3}[\s-]?\d[\d\s/()-]{6,}\d\b',
        'credit_card': r'\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b',
        'iban': r'\b[A-Z]{2}\d{2}\s?(?:[\dA-Z]{4}\s?){3,5}[\dA-Z]{0,4}\b',
    }

    # Credentials that show up in request dumps and error messages
    SECRET_PATTERNS = {
        'bearer': r'\bBearer\s+[A-Za-z0-9._~+/=-]{8,}',
        'api_key': r'\b(?:api[_-]?key|apikey|token)=[A-Za-z0-9._~+/-]{8,}',
    }

    @classmethod
    def redact(cls, text: Optional[str], include_secrets: bool = True) -> str:
        """
        Redact PII from text.

        Args:
            text: Text to redact
            include_secrets: Also mask bearer tokens and api keys

        Returns:
            Text with matches replaced by [TYPE_REDACTED]
        """
        if not text:
            return ""

        result = text
        if include_secrets:
            for name, pattern in cls.SECRET_PATTERNS.items():
                result = re.sub(pattern, f'[{name.upper()}_REDACTED]', result, flags=re.IGNORECASE)

        for name, pattern in cls.PATTERNS.items():
            flags = 0 if name == 'iban' else re.IGNORECASE
            result = re.sub(pattern, f'[{name.upper()}_REDACTED]', result, flags=flags)

        return result

    @classmethod
    def redact_for_logging(cls, text: Optional[str]) -> str:
        return cls.redact(text, include_secrets=True)

    @classmethod
    def mask_email(cls, email: Optional[str]) -> str:
        """Keep the first character and domain: ``j***@example.com``."""
        if not email or "@" not in email:
            return ""
        local, domain = email.split("@", 1)
        return f"{local[:1]}***@{domain}"

    @classmethod
    def contains_pii(cls, text: Optional[str]) -> bool:
        """Check if text contains any PII patterns."""
        if not text:
            return False
        return any(
            re.search(pattern, text, re.IGNORECASE)
            for pattern in cls.PATTERNS.values()
        )
