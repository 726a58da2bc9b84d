# services/recipient_service.py
"""
Recipient list processing: validate, normalize, de-duplicate, hash and
classify pasted recipient lists against the hashed recipient store.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from core.database import NewsletterRepository
from core.email_validation import (
    clean_email, validate_email, hash_email, email_domain, split_recipient_text
)
from core.errors import AppError
from services.settings_service import SettingsService

logger = logging.getLogger(__name__)


@dataclass
class RecipientListResult:
    """Outcome of processing a recipient list"""
    valid_emails: List[str] = field(default_factory=list)
    invalid_emails: List[str] = field(default_factory=list)
    hashed_emails: List[str] = field(default_factory=list)
    new: int = 0
    existing: int = 0

    @property
    def valid(self) -> int:
        return len(self.valid_emails)

    @property
    def invalid(self) -> int:
        return len(self.invalid_emails)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'invalid': self.invalid,
            'new': self.new,
            'existing': self.existing,
            'invalidEmails': list(self.invalid_emails),
        }


class RecipientService:
    """Turns raw recipient text into a validated, hashed recipient set"""

    def __init__(self, repository: NewsletterRepository, settings_service: SettingsService):
        self.repository = repository
        self.settings_service = settings_service

    def process_recipient_list(self, raw_text: str) -> RecipientListResult:
        """
        Validate and hash a pasted recipient list

        Args:
            raw_text: Addresses separated by newlines, commas or semicolons

        Returns:
            RecipientListResult with valid addresses normalized and de-duplicated
            in first-seen order

        Raises:
            ValidationError: Input is empty or whitespace only
        """
        if raw_text is None or not str(raw_text).strip():
            raise AppError.validation('Recipient list is empty')

        result = RecipientListResult()
        seen = set()

        for entry in split_recipient_text(str(raw_text)):
            cleaned = clean_email(entry)
            if not validate_email(cleaned):
                result.invalid_emails.append(entry)
                logger.debug(f"Invalid recipient skipped (domain: {email_domain(cleaned)})")
                continue

            normalized = cleaned.lower()
            if normalized in seen:
                continue
            seen.add(normalized)
            result.valid_emails.append(normalized)

        if not result.valid_emails:
            logger.warning(f"Recipient list contained no valid addresses ({result.invalid} invalid)")
            return result

        salt = self.settings_service.get_or_create_salt()
        result.hashed_emails = [hash_email(email, salt) for email in result.valid_emails]

        existing = {r.hashed_email for r in self.repository.find_hashed_recipients(result.hashed_emails)}
        new_hashes = [h for h in result.hashed_emails if h not in existing]
        if new_hashes:
            self.repository.create_hashed_recipients(new_hashes)

        result.existing = len(result.hashed_emails) - len(new_hashes)
        result.new = len(new_hashes)

        logger.info(
            f"Processed recipient list: {result.valid} valid, {result.invalid} invalid, "
            f"{result.new} new, {result.existing} existing"
        )
        return result

    def mark_sent(self, emails: List[str]) -> int:
        """Stamp last_sent on the hashed records of successfully sent addresses"""
        if not emails:
            return 0
        salt = self.settings_service.get_or_create_salt()
        return self.repository.mark_recipients_sent(hash_email(e, salt) for e in emails)
