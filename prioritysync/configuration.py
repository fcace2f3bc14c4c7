"""Per-installation Azure DevOps configuration: load, validate, save, seed."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from prioritysync.db.factory import get_sync_config_repository
from prioritysync.db.repositories.links import config_from_row
from prioritysync.errors import ConfigurationMissingError, InvalidConfigurationError
from prioritysync.models import SyncConfiguration

logger = logging.getLogger("prioritysync.sync")

_SNAKE_TO_CAMEL = {
    "installation_id": "installationId",
    "personal_access_token": "personalAccessToken",
    "sync_enabled": "syncEnabled",
    "state_mapping": "stateMapping",
    "work_item_types": "workItemTypes",
    "last_sync_at": "lastSyncAt",
}


def _camelize(raw: dict[str, Any]) -> dict[str, Any]:
    return {_SNAKE_TO_CAMEL.get(key, key): value for key, value in raw.items()}


def validate_configuration(raw: dict[str, Any]) -> SyncConfiguration:
    """Build a ``SyncConfiguration`` from camelCase or snake_case keys."""
    try:
        return SyncConfiguration(**_camelize(raw or {}))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'configuration'}: {err['msg']}"
            for err in exc.errors()
        )
        raise InvalidConfigurationError(f"Invalid Azure DevOps configuration: {problems}") from exc


async def load_configuration(db: Any, installation_id: str) -> SyncConfiguration:
    row = await get_sync_config_repository(db).get(installation_id)
    if not row:
        raise ConfigurationMissingError(installation_id)
    return validate_configuration(config_from_row(row))


async def save_configuration(db: Any, raw: dict[str, Any]) -> SyncConfiguration:
    configuration = validate_configuration(raw)
    await get_sync_config_repository(db).upsert(configuration.model_dump(mode="json"))
    logger.info(
        "Saved Azure DevOps configuration for installation %s (%s/%s, sync %s)",
        configuration.installationId,
        configuration.organization,
        configuration.project,
        "enabled" if configuration.syncEnabled else "disabled",
    )
    return configuration


def load_seed_file(path: str | Path) -> list[dict[str, Any]]:
    """Read installation entries from YAML.

    Accepts a single mapping, a list of mappings, or a mapping with an
    ``installations`` list.
    """
    try:
        parsed = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise InvalidConfigurationError(f"Cannot read configuration file {path}: {exc}") from exc

    if isinstance(parsed, dict) and isinstance(parsed.get("installations"), list):
        entries = parsed["installations"]
    elif isinstance(parsed, list):
        entries = parsed
    elif isinstance(parsed, dict):
        entries = [parsed]
    else:
        raise InvalidConfigurationError(f"Configuration file {path} must contain a mapping or a list")
    return [entry for entry in entries if isinstance(entry, dict)]


async def seed_from_file(db: Any, path: str | Path, default_installation_id: str = "default") -> int:
    """Insert seed entries for installations that have no stored configuration yet."""
    repo = get_sync_config_repository(db)
    seeded = 0
    for entry in load_seed_file(path):
        data = _camelize(entry)
        data.setdefault("installationId", default_installation_id)
        if await repo.get(data["installationId"]):
            continue
        await save_configuration(db, data)
        seeded += 1
    if seeded:
        logger.info("Seeded %d Azure DevOps configuration(s) from %s", seeded, path)
    return seeded
