# core/email_validation.py
"""
Recipient address helpers: cleaning, validation, normalization and hashing.

Addresses pasted from spreadsheets routinely carry zero-width characters,
non-breaking spaces and stray control characters. Those are stripped before
validation so the SMTP envelope never sees them.
"""

import hashlib
import re
from typing import List

from email_validator import validate_email as check_email_syntax, EmailNotValidError

MAX_EMAIL_LENGTH = 254

# Zero-width, no-break and typographic spaces commonly found in Excel exports
INVISIBLE_CHARS = re.compile(r'[\u200B-\u200D\u2060\uFEFF\u00A0\u180E\u2000-\u200A\u202F\u205F\u3000]')
CONTROL_CHARS = re.compile(r'[\x00-\x1F\x7F-\x9F]')
WHITESPACE_RUN = re.compile(r'\s+')
RECIPIENT_SEPARATORS = re.compile(r'[\n,;]+')

# Characters that break header formatting on the SMTP side
SMTP_PROBLEM_CHARS = ('<', '>', '"')


def clean_email(email: str) -> str:
    """Remove invisible and control characters and collapse whitespace"""
    if not email:
        return ''

    cleaned = INVISIBLE_CHARS.sub('', email)
    cleaned = CONTROL_CHARS.sub('', cleaned)
    cleaned = WHITESPACE_RUN.sub(' ', cleaned)
    return cleaned.strip()


def normalize_email(email: str) -> str:
    return clean_email(email).lower()


def validate_email(cleaned_email: str) -> bool:
    """
    Check an already cleaned address for SMTP compatibility

    Syntax only; no DNS or deliverability lookups are made.
    """
    if not cleaned_email or len(cleaned_email) > MAX_EMAIL_LENGTH:
        return False

    if any(char in cleaned_email for char in SMTP_PROBLEM_CHARS):
        return False

    try:
        check_email_syntax(
            cleaned_email,
            check_deliverability=False,
            allow_smtputf8=False
        )
    except EmailNotValidError:
        return False

    return True


def hash_email(normalized_email: str, salt: str) -> str:
    """
    One-way hash of a normalized address

    Args:
        normalized_email: Lowercased, cleaned address
        salt: Installation-wide salt stored with the newsletter settings

    Returns:
        SHA-256 hex digest of address + salt
    """
    if not normalized_email or not salt:
        raise ValueError('Email and salt are required for hashing')

    return hashlib.sha256((normalized_email + salt).encode('utf-8')).hexdigest()


def email_domain(email: str) -> str:
    """Domain part of an address; the only part of an address we ever log"""
    if not email or '@' not in email:
        return 'unknown'
    return email.rsplit('@', 1)[1] or 'unknown'


def split_recipient_text(raw_text: str) -> List[str]:
    """Split a pasted recipient blob on newlines, commas and semicolons"""
    if not raw_text:
        return []
    return [part.strip() for part in RECIPIENT_SEPARATORS.split(raw_text) if part.strip()]
