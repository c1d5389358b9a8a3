"""
Publishing credentials and log masking.

Credentials are read once per run into an immutable model. Only the
publisher turns them into process environment; everything that leaves the
worker as text (logs, stage output, error messages) goes through a
SecretMasker first.
"""

import logging
from typing import Dict, Iterable, List

from pydantic import BaseModel, SecretStr

MASK = "***"

class PipelineSecrets(BaseModel):
    api_token: SecretStr = SecretStr("")
    account_id: SecretStr = SecretStr("")
    project_name: SecretStr = SecretStr("")

    class Config:
        frozen = True

    @classmethod
    def from_settings(cls, settings) -> "PipelineSecrets":
        return cls(
            api_token=settings.cf_api_token,
            account_id=settings.cf_account_id,
            project_name=settings.cf_project_name,
        )

    def missing(self) -> List[str]:
        """Names of credentials that were not supplied."""
        return [
            name for name in ("api_token", "account_id", "project_name")
            if not getattr(self, name).get_secret_value()
        ]

    def values(self) -> List[str]:
        return [
            secret.get_secret_value()
            for secret in (self.api_token, self.account_id, self.project_name)
            if secret.get_secret_value()
        ]

    def as_env(self) -> Dict[str, str]:
        """Environment for the wrangler process."""
        return {
            "CLOUDFLARE_API_TOKEN": self.api_token.get_secret_value(),
            "CLOUDFLARE_ACCOUNT_ID": self.account_id.get_secret_value(),
        }

class SecretMasker(logging.Filter):
    """Replaces known secret values with *** in text and log records."""

    def __init__(self, values: Iterable[str] = ()):
        super().__init__()
        self._values: List[str] = []
        self.add(values)

    def add(self, values: Iterable[str]):
        for value in values:
            if value and value not in self._values:
                self._values.append(value)
        # Longest first so a secret containing another is masked whole
        self._values.sort(key=len, reverse=True)

    def redact(self, text: str) -> str:
        if not text:
            return text
        for value in self._values:
            text = text.replace(value, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._values:
            record.msg = self.redact(record.getMessage())
            record.args = None
            if record.exc_info and not record.exc_text:
                record.exc_text = logging.Formatter().formatException(record.exc_info)
            if record.exc_text:
                record.exc_text = self.redact(record.exc_text)
        return True
