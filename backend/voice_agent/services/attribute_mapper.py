"""
Attribute Mapper - caller-facing attribute keys to catalog fields.

The classifier may name an attribute several ways ("style", "colour",
"Type"). query_products only understands one key per field. This module
loads the explicit lookup table from catalog/attribute_map.yaml and
answers two questions:

- resolve(key): which catalog field does this key mean (or None)?
- validate_against(sources): does the ToolProvider expose every
  vocabulary list the table relies on?
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml

logger = logging.getLogger(__name__)

ATTRIBUTE_MAP_PATH = Path(__file__).parent.parent.parent / "catalog" / "attribute_map.yaml"

# get_attributes response key -> Vocabulary field
ATTRIBUTE_RESPONSE_KEYS: Dict[str, str] = {
    "colors": "colors",
    "colours": "colors",
    "genders": "genders",
    "seasons": "seasons",
    "usages": "usages",
}


class AttributeMapError(Exception):
    """Raised when the attribute map is invalid or disagrees with the ToolProvider."""
    pass


class AttributeMapper:
    """
    Lookup table from caller-facing attribute keys to catalog field names.

    Usage:
        mapper = AttributeMapper.load()
        mapper.resolve("Colour")       # -> "color"
        mapper.vocabulary_source("color")  # -> "colors"
    """

    def __init__(self, fields: Dict[str, Dict]):
        if not fields:
            raise AttributeMapError("Attribute map defines no fields")

        self._field_sources: Dict[str, str] = {}
        self._alias_index: Dict[str, str] = {}

        for field_name, entry in fields.items():
            source = (entry or {}).get("vocabulary")
            if not source:
                raise AttributeMapError(f"Field '{field_name}' has no vocabulary source")
            self._field_sources[field_name] = source

            aliases = set((entry or {}).get("aliases") or []) | {field_name}
            for alias in aliases:
                key = alias.lower()
                owner = self._alias_index.get(key)
                if owner is not None and owner != field_name:
                    raise AttributeMapError(
                        f"Alias '{alias}' maps to both '{owner}' and '{field_name}'"
                    )
                self._alias_index[key] = field_name

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "AttributeMapper":
        """Load the table from YAML."""
        path = Path(path or ATTRIBUTE_MAP_PATH)
        if not path.exists():
            raise AttributeMapError(f"Attribute map not found at {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        fields = data.get("fields")
        if not isinstance(fields, dict):
            raise AttributeMapError("Attribute map must have a 'fields' mapping")
        return cls(fields)

    @property
    def fields(self) -> List[str]:
        return list(self._field_sources)

    def resolve(self, key: str) -> Optional[str]:
        """Map a caller-facing key to its catalog field, or None if unknown."""
        return self._alias_index.get(str(key).strip().lower())

    def vocabulary_source(self, field_name: str) -> Optional[str]:
        return self._field_sources.get(field_name)

    def validate_against(self, exposed_sources: Iterable[str]) -> None:
        """
        Check every field's vocabulary source is exposed by the ToolProvider.

        Raises:
            AttributeMapError: listing the fields whose source is missing
        """
        exposed = set(exposed_sources)
        missing = {
            field_name: source
            for field_name, source in self._field_sources.items()
            if source not in exposed
        }
        if missing:
            raise AttributeMapError(
                f"ToolProvider does not expose vocabulary for fields: {missing}. "
                f"Exposed: {sorted(exposed)}"
            )
        logger.info(f"Attribute map validated: {len(self._field_sources)} fields")


def exposed_vocabulary_sources(attributes: Dict, has_product_types: bool) -> set:
    """Translate a get_attributes payload (plus product types) into Vocabulary sources."""
    sources = {
        ATTRIBUTE_RESPONSE_KEYS[key]
        for key in attributes
        if key in ATTRIBUTE_RESPONSE_KEYS
    }
    if has_product_types:
        sources.add("product_types")
    return sources
