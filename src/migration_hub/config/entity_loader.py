"""
YAML loader for entity definitions.

The file lists every migrated entity under an ``entities`` mapping keyed by
entity name. A ``transform`` is referenced as ``"package.module:function"``
and resolved with importlib; omitting it copies every non-key field.

Example:
    entities:
      offices:
        source_table: legacy.dispatch_office
        target_table: offices
        volume_class: small
        critical: true
      doctors:
        source_table: legacy.doctor
        target_table: doctors
        depends_on: [offices]
        references:
          - {field: office_id, entity: offices}
"""

import importlib
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
import yaml
from pydantic import ValidationError

from migration_hub.config.settings import get_settings
from migration_hub.domain.errors import ConfigurationError
from migration_hub.domain.models import EntityDefinition

logger = structlog.get_logger(__name__)


def resolve_transform(reference: str) -> Callable[..., Dict[str, Any]]:
    """
    Import ``package.module:function`` and return the callable.

    Raises:
        ConfigurationError: Malformed reference, missing module or attribute
    """
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"Invalid transform reference '{reference}': expected 'package.module:function'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import transform module '{module_name}': {e}") from e
    func = getattr(module, attr, None)
    if not callable(func):
        raise ConfigurationError(f"Transform '{reference}' is not a callable")
    return func


def parse_entity_definitions(content: Any, source: str = "<memory>") -> List[EntityDefinition]:
    """Validate already-parsed YAML content into entity definitions."""
    if content is None:
        return []
    if not isinstance(content, dict) or not isinstance(content.get("entities"), dict):
        raise ConfigurationError(f"Invalid entity config in {source}: expected an 'entities' mapping")

    definitions: List[EntityDefinition] = []
    for name, raw in content["entities"].items():
        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"Invalid definition for entity '{name}' in {source}: expected a mapping"
            )
        data = dict(raw)
        data.setdefault("name", name)
        if isinstance(data.get("transform"), str):
            data["transform"] = resolve_transform(data["transform"])
        try:
            definitions.append(EntityDefinition(**data))
        except ValidationError as e:
            logger.error("entity_loader.invalid_definition", entity=name, file_path=source, error=str(e))
            raise ConfigurationError(
                f"Invalid definition for entity '{name}' in {source}: {e}", entity=name
            ) from e
    return definitions


def load_entity_definitions(path: Optional[Union[str, Path]] = None) -> List[EntityDefinition]:
    """
    Load entity definitions from YAML (defaults to ``Settings.entities_config``).

    Raises:
        FileNotFoundError: The file does not exist
        ConfigurationError: Invalid YAML or definition
    """
    file_path = Path(path) if path is not None else Path(get_settings().entities_config)
    if not file_path.exists():
        raise FileNotFoundError(f"Entity config not found: {file_path}")

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error("entity_loader.yaml_parse_error", file_path=str(file_path), error=str(e))
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e

    definitions = parse_entity_definitions(content, str(file_path))
    logger.info(
        "entity_loader.loaded",
        file_path=str(file_path),
        entity_count=len(definitions),
    )
    return definitions
