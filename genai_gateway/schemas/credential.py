"""Credential backup schemas (export/import of the key pool)."""

from datetime import datetime

from pydantic import BaseModel, Field

BACKUP_VERSION = "1.0"


class CredentialCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    secret: str = Field(..., min_length=1)
    priority: int = 100
    is_active: bool = True


class CredentialBackupItem(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    secret: str = Field(..., min_length=1)  # plaintext, only present when exported with secrets
    priority: int = 100
    is_active: bool = True


class CredentialBackup(BaseModel):
    version: str = Field(..., min_length=1)
    exported_at: datetime
    key_count: int = 0
    api_keys: list[CredentialBackupItem] | None = None  # omitted unless exported with secrets
