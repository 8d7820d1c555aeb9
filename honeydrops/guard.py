"""Contact-information guard for application cover letters.

Freelancers and clients must talk through the platform, so cover letters may
not carry an email address, a phone number or a link. The same ``scan`` backs
both the live preview shown while typing and the authoritative check made at
submission time.
"""

import re

import structlog

from .errors import ContactInfoDetectedError
from .models import ScanResult

logger = structlog.get_logger(__name__)

EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}")
URL_PATTERN = re.compile(r"(?:https?://|www\.)[^\s]+", re.IGNORECASE)
PHONE_PATTERN = re.compile(r"\+?\(?\d(?:[\s().-]{0,2}\d){7,14}")
YEAR_RANGE_PATTERN = re.compile(r"^(?:19|20)\d{2}\s*-\s*(?:19|20)\d{2}$")


class ContentGuard:
    def scan(self, text: str) -> ScanResult:
        reasons: list[str] = []
        matches: list[str] = []

        emails = EMAIL_PATTERN.findall(text)
        if emails:
            reasons.append("email")
            matches.extend(emails)

        urls = URL_PATTERN.findall(text)
        if urls:
            reasons.append("url")
            matches.extend(urls)

        phones = self._find_phone_numbers(text)
        if phones:
            reasons.append("phone")
            matches.extend(phones)

        return ScanResult(allowed=not reasons, reasons=reasons, matches=matches)

    def preview(self, text: str) -> ScanResult:
        """Advisory check for live feedback; never blocks."""
        return self.scan(text)

    def enforce(self, text: str) -> ScanResult:
        result = self.scan(text)
        if not result.allowed:
            logger.info("contact_info_blocked", reasons=result.reasons)
            raise ContactInfoDetectedError(result.reasons)
        return result

    @staticmethod
    def _find_phone_numbers(text: str) -> list[str]:
        found = []
        # Each match holds 8 to 15 digits; longer runs split into several matches.
        for match in PHONE_PATTERN.finditer(text):
            candidate = match.group()
            if YEAR_RANGE_PATTERN.match(candidate):
                continue
            found.append(candidate)
        return found
