"""Key Rotation Pool.

Spreads calls across several Gemini API keys. Secrets are stored encrypted
by the CredentialVault and only decrypted when a key is handed out for an
outgoing call; every listing masks them.

Selection strategies (active keys only):
  - priority:    lowest priority value, ties → most recently created
  - round-robin: never-used keys first, then least recently used, ties → priority
  - least-used:  lowest usage_count, ties → priority
  - random:      uniform

Selection and usage recording are separate statements, so two concurrent
callers may pick the same key. Balancing is best-effort.
"""

from __future__ import annotations

import json
import logging
import random
import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

import pydantic
from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genai_gateway.core.encryption import CredentialVault, mask_secret
from genai_gateway.core.exceptions import NoAvailableKeyError, NotFoundError, StorageError, ValidationError
from genai_gateway.core.metrics import KEY_USAGE
from genai_gateway.gateway.types import CredentialView, RotationStrategy
from genai_gateway.models.credential import ApiCredential
from genai_gateway.schemas.credential import BACKUP_VERSION, CredentialBackup, CredentialBackupItem, CredentialCreate

logger = logging.getLogger(__name__)

# Gemini keys: "AIza" + 31..41 URL-safe characters
API_KEY_PATTERN = re.compile(r"^AIza[A-Za-z0-9_-]{31,41}$")
DEFAULT_PRIORITY = 100


def validate_key_format(secret: str) -> None:
    if not isinstance(secret, str) or not API_KEY_PATTERN.fullmatch(secret):
        raise ValidationError(
            "Invalid API key format: expected 'AIza' prefix, 35-45 characters of [A-Za-z0-9_-]"
        )


class KeyRotationPool:
    """Persistent, encrypted pool of API credentials."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], vault: CredentialVault):
        self._session_factory = session_factory
        self._vault = vault

    # --- Views ---

    def _view(self, row: ApiCredential, reveal: bool = False) -> CredentialView:
        secret = self._vault.decrypt(row.secret_ciphertext) if reveal else self._masked(row)
        return CredentialView(
            id=row.id,
            name=row.name,
            secret=secret,
            is_active=row.is_active,
            priority=row.priority,
            usage_count=row.usage_count,
            success_count=row.success_count,
            failure_count=row.failure_count,
            last_used_at=row.last_used_at,
            created_at=row.created_at,
        )

    def _masked(self, row: ApiCredential) -> str:
        try:
            return mask_secret(self._vault.decrypt(row.secret_ciphertext))
        except ValidationError:
            # Listing must keep working even if one row was encrypted with another secret
            logger.warning("Credential %s cannot be decrypted; showing placeholder", row.id)
            return mask_secret(None)

    async def _get_row(self, session: AsyncSession, key_id: int) -> ApiCredential:
        row = await session.get(ApiCredential, key_id)
        if row is None:
            raise NotFoundError("API key", key_id)
        return row

    # --- Create ---

    async def add_key(self, name: str, secret: str, priority: int = DEFAULT_PRIORITY) -> CredentialView:
        """Validate, encrypt and store one key. Returns the masked view."""
        created = await self.add_multiple_keys([{"name": name, "secret": secret, "priority": priority}])
        logger.info("API key added: %s (id=%s, priority=%d)", name, created[0].id, priority)
        return created[0]

    async def add_multiple_keys(
        self, items: Iterable[CredentialCreate | Mapping[str, Any]]
    ) -> list[CredentialView]:
        """Store several keys in one transaction. One invalid key rejects the whole batch."""
        try:
            payloads = [
                item if isinstance(item, CredentialCreate) else CredentialCreate.model_validate(item)
                for item in items
            ]
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid API key entry: {e}") from e

        for payload in payloads:
            validate_key_format(payload.secret)

        rows = [
            ApiCredential(
                name=payload.name,
                secret_ciphertext=self._vault.encrypt(payload.secret),
                is_active=payload.is_active,
                priority=payload.priority,
                usage_count=0,
                success_count=0,
                failure_count=0,
                created_at=datetime.now(timezone.utc),
            )
            for payload in payloads
        ]

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add_all(rows)
                    await session.flush()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to store {len(rows)} API key(s)") from e

        return [
            CredentialView(
                id=row.id,
                name=row.name,
                secret=mask_secret(payload.secret),
                is_active=row.is_active,
                priority=row.priority,
                created_at=row.created_at,
            )
            for row, payload in zip(rows, payloads)
        ]

    # --- Rotation ---

    async def get_next_key(self, strategy: RotationStrategy = RotationStrategy.PRIORITY) -> CredentialView:
        """Pick an active key. The returned view carries the decrypted secret."""
        strategy = RotationStrategy(strategy)
        stmt = select(ApiCredential).where(ApiCredential.is_active.is_(True))

        if strategy == RotationStrategy.PRIORITY:
            stmt = stmt.order_by(ApiCredential.priority.asc(), ApiCredential.created_at.desc(), ApiCredential.id.desc())
        elif strategy == RotationStrategy.ROUND_ROBIN:
            stmt = stmt.order_by(
                case((ApiCredential.last_used_at.is_(None), 0), else_=1),
                ApiCredential.last_used_at.asc(),
                ApiCredential.priority.asc(),
                ApiCredential.id.asc(),
            )
        elif strategy == RotationStrategy.LEAST_USED:
            stmt = stmt.order_by(ApiCredential.usage_count.asc(), ApiCredential.priority.asc(), ApiCredential.id.asc())

        if strategy != RotationStrategy.RANDOM:
            stmt = stmt.limit(1)

        try:
            async with self._session_factory() as session:
                rows = list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            raise StorageError("Failed to select an API key") from e

        if not rows:
            raise NoAvailableKeyError("No active API keys available")

        row = random.choice(rows) if strategy == RotationStrategy.RANDOM else rows[0]
        logger.debug("Selected API key %s (%s) via %s", row.id, row.name, strategy.value)
        return self._view(row, reveal=True)

    async def record_key_usage(self, key_id: int, success: bool) -> None:
        """Count one use of a key. Single UPDATE, so counters stay consistent."""
        stmt = (
            update(ApiCredential)
            .where(ApiCredential.id == key_id)
            .values(
                usage_count=ApiCredential.usage_count + 1,
                success_count=ApiCredential.success_count + (1 if success else 0),
                failure_count=ApiCredential.failure_count + (0 if success else 1),
                last_used_at=datetime.now(timezone.utc),
            )
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to record usage for API key {key_id}") from e

        if result.rowcount == 0:
            # Key was deleted while the call was in flight
            logger.warning("Usage recorded for unknown API key %s", key_id)
            return
        KEY_USAGE.labels(outcome="success" if success else "failure").inc()

    # --- Management ---

    async def list_keys(self) -> list[CredentialView]:
        """All keys, secrets masked. Ordered by priority, then newest first."""
        stmt = select(ApiCredential).order_by(ApiCredential.priority.asc(), ApiCredential.created_at.desc())
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError("Failed to list API keys") from e
        return [self._view(row) for row in rows]

    async def get_key(self, key_id: int) -> CredentialView:
        async with self._session_factory() as session:
            return self._view(await self._get_row(session, key_id))

    async def update_key(
        self,
        key_id: int,
        name: str | None = None,
        secret: str | None = None,
        is_active: bool | None = None,
        priority: int | None = None,
    ) -> CredentialView:
        if secret is not None:
            validate_key_format(secret)

        try:
            async with self._session_factory() as session:
                row = await self._get_row(session, key_id)
                if name is not None:
                    row.name = name
                if secret is not None:
                    row.secret_ciphertext = self._vault.encrypt(secret)
                if is_active is not None:
                    row.is_active = is_active
                if priority is not None:
                    row.priority = priority
                await session.commit()
                view = self._view(row)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update API key {key_id}") from e

        logger.info("API key %s updated", key_id)
        return view

    async def toggle_key_status(self, key_id: int, is_active: bool) -> CredentialView:
        return await self.update_key(key_id, is_active=is_active)

    async def delete_key(self, key_id: int) -> None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(delete(ApiCredential).where(ApiCredential.id == key_id))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete API key {key_id}") from e

        if result.rowcount == 0:
            raise NotFoundError("API key", key_id)
        logger.info("API key %s deleted", key_id)

    # --- Backup ---

    async def export_keys(self, include_secrets: bool = False) -> str:
        """Serialize the pool as a backup document. Secrets only when asked for."""
        async with self._session_factory() as session:
            rows = (
                (await session.execute(select(ApiCredential).order_by(ApiCredential.priority.asc(), ApiCredential.id)))
                .scalars()
                .all()
            )

        backup = CredentialBackup(
            version=BACKUP_VERSION,
            exported_at=datetime.now(timezone.utc),
            key_count=len(rows),
        )
        if include_secrets:
            backup.api_keys = [
                CredentialBackupItem(
                    name=row.name,
                    secret=self._vault.decrypt(row.secret_ciphertext),
                    priority=row.priority,
                    is_active=row.is_active,
                )
                for row in rows
            ]
        return backup.model_dump_json(indent=2, exclude_none=True)

    async def import_keys(self, payload: str | Mapping[str, Any]) -> list[CredentialView]:
        """Restore keys from a backup document produced by ``export_keys(include_secrets=True)``."""
        try:
            data = json.loads(payload) if isinstance(payload, str) else dict(payload)
        except json.JSONDecodeError as e:
            raise ValidationError("Backup document is not valid JSON") from e

        try:
            backup = CredentialBackup.model_validate(data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Backup document is malformed: {e}") from e

        if not backup.api_keys:
            logger.info("Backup %s contains no API keys, nothing imported", backup.version)
            return []

        imported = await self.add_multiple_keys(
            CredentialCreate(name=item.name, secret=item.secret, priority=item.priority, is_active=item.is_active)
            for item in backup.api_keys
        )
        logger.info("Imported %d API keys from backup", len(imported))
        return imported
