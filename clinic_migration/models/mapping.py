"""Mapping spec models: how source fields become canonical fields."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import json

from .canonical import EntityType, canonical_field_names

# Field mappings below this confidence must be reviewed before approval
APPROVAL_CONFIDENCE_THRESHOLD = 0.8


class TransformType(str, Enum):
    """Allowlisted transformations. Mapping specs cannot name anything else."""
    DIRECT = "direct"
    TRIM = "trim"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    NORMALIZE_DATE = "normalize_date"
    NORMALIZE_DATETIME = "normalize_datetime"
    NORMALIZE_PHONE = "normalize_phone"
    NORMALIZE_EMAIL = "normalize_email"
    ENUM_MAP = "enum_map"
    SPLIT_NAME = "split_name"
    CONCAT = "concat"
    DEFAULT = "default"
    TO_NUMBER = "to_number"
    TO_LIST = "to_list"
    TO_SECTIONS = "to_sections"
    MAP_LIST = "map_list"
    HASH_TOKEN = "hash_token"
    REFERENCE = "reference"  # Source id of another entity -> its canonical id


ALLOWED_TRANSFORMS = {t.value for t in TransformType}


def is_allowed_transform(name: Optional[str]) -> bool:
    return name is None or name in ALLOWED_TRANSFORMS


@dataclass
class FieldMapping:
    """Mapping between a source field and a canonical field."""
    source_field: Optional[str]  # None if generated/default
    target_field: str
    transform: TransformType = TransformType.DIRECT
    transform_config: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0
    requires_approval: bool = False
    default_value: Optional[Any] = None
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "transform": self.transform.value if isinstance(self.transform, TransformType) else self.transform,
            "confidence": self.confidence,
            "requires_approval": self.requires_approval,
        }
        if self.transform_config:
            result["transform_config"] = self.transform_config
        if self.default_value is not None:
            result["default"] = self.default_value
        if self.notes:
            result["notes"] = self.notes
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        """Create from dictionary representation."""
        confidence = data.get("confidence", 1.0)
        return cls(
            source_field=data.get("source_field"),
            target_field=data.get("target_field", ""),
            transform=TransformType(data.get("transform") or "direct"),
            transform_config=data.get("transform_config") or {},
            confidence=confidence,
            requires_approval=data.get("requires_approval", confidence < APPROVAL_CONFIDENCE_THRESHOLD),
            default_value=data.get("default"),
            notes=data.get("notes", ""),
        )


@dataclass
class EntityMapping:
    """Complete mapping from one source entity to one canonical entity."""
    source_entity: str
    target_entity: EntityType
    field_mappings: List[FieldMapping] = field(default_factory=list)
    enum_maps: Dict[str, Dict[str, str]] = field(default_factory=dict)  # source field -> {source value: canonical value}
    source_id_field: str = "id"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_entity": self.source_entity,
            "target_entity": self.target_entity.value,
            "source_id_field": self.source_id_field,
            "field_mappings": [fm.to_dict() for fm in self.field_mappings],
            "enum_maps": self.enum_maps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityMapping":
        """Create from dictionary representation."""
        return cls(
            source_entity=data["source_entity"],
            target_entity=EntityType(data["target_entity"]),
            field_mappings=[FieldMapping.from_dict(fm) for fm in data.get("field_mappings", [])],
            enum_maps=data.get("enum_maps") or {},
            source_id_field=data.get("source_id_field", "id"),
        )

    def get_target_mapping(self, target_field: str) -> Optional[FieldMapping]:
        """Get the mapping for a specific canonical field."""
        for fm in self.field_mappings:
            if fm.target_field == target_field:
                return fm
        return None

    @property
    def pending_approval(self) -> List[FieldMapping]:
        return [fm for fm in self.field_mappings if fm.requires_approval]


@dataclass
class MappingSpec:
    """A versioned set of entity mappings for one run."""
    source_vendor: str
    version: int = 1
    entity_mappings: List[EntityMapping] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "version": self.version,
            "source_vendor": self.source_vendor,
            "entity_mappings": [em.to_dict() for em in self.entity_mappings],
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingSpec":
        """Create from dictionary representation."""
        return cls(
            source_vendor=data["source_vendor"],
            version=data.get("version", 1),
            entity_mappings=[EntityMapping.from_dict(em) for em in data.get("entity_mappings", [])],
            notes=data.get("notes", ""),
        )

    @classmethod
    def from_json_file(cls, path: str) -> "MappingSpec":
        """Load mapping spec from a JSON file."""
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def get_entity_mapping(self, source_entity: str) -> Optional[EntityMapping]:
        for em in self.entity_mappings:
            if em.source_entity == source_entity:
                return em
        return None

    def get_entity_mappings(self, source_entity: str) -> List[EntityMapping]:
        """Get every mapping for a source entity (one source entity may feed several canonical types)."""
        return [em for em in self.entity_mappings if em.source_entity == source_entity]


def validate_mapping_spec(spec: Any) -> List[Dict[str, str]]:
    """
    Structurally validate a mapping spec dictionary.

    Args:
        spec: Raw mapping spec (as submitted by an operator or drafted)

    Returns:
        List of {"path", "message"} errors; empty when the spec is valid
    """
    if not isinstance(spec, dict):
        return [{"path": "", "message": "mapping spec must be an object"}]

    errors: List[Dict[str, str]] = []

    version = spec.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        errors.append({"path": "version", "message": "version must be a positive integer"})

    if not isinstance(spec.get("source_vendor"), str) or not spec.get("source_vendor"):
        errors.append({"path": "source_vendor", "message": "source_vendor is required"})

    entity_mappings = spec.get("entity_mappings")
    if not isinstance(entity_mappings, list):
        errors.append({"path": "entity_mappings", "message": "entity_mappings must be an array"})
        return errors

    valid_targets = [e.value for e in EntityType]

    for i, em in enumerate(entity_mappings):
        prefix = f"entity_mappings[{i}]"
        if not isinstance(em, dict):
            errors.append({"path": prefix, "message": "entity mapping must be an object"})
            continue

        if not isinstance(em.get("source_entity"), str) or not em.get("source_entity"):
            errors.append({"path": f"{prefix}.source_entity", "message": "source_entity is required"})

        target_entity = em.get("target_entity")
        if target_entity not in valid_targets:
            errors.append({
                "path": f"{prefix}.target_entity",
                "message": f"target_entity must be one of: {', '.join(valid_targets)}",
            })
            target_fields = None
        else:
            target_fields = set(canonical_field_names(EntityType(target_entity)))

        source_id_field = em.get("source_id_field")
        if source_id_field is not None and (not isinstance(source_id_field, str) or not source_id_field):
            errors.append({"path": f"{prefix}.source_id_field", "message": "source_id_field must be a field name"})

        field_mappings = em.get("field_mappings")
        if not isinstance(field_mappings, list):
            errors.append({"path": f"{prefix}.field_mappings", "message": "field_mappings must be an array"})
            continue

        for j, fm in enumerate(field_mappings):
            f_prefix = f"{prefix}.field_mappings[{j}]"
            if not isinstance(fm, dict):
                errors.append({"path": f_prefix, "message": "field mapping must be an object"})
                continue

            transform = fm.get("transform")
            source_field = fm.get("source_field")
            if source_field is None:
                if transform != TransformType.DEFAULT.value:
                    errors.append({"path": f"{f_prefix}.source_field", "message": "source_field is required"})
            elif not isinstance(source_field, str) or not source_field:
                errors.append({"path": f"{f_prefix}.source_field", "message": "source_field must be a field name"})

            target_field = fm.get("target_field")
            if not isinstance(target_field, str) or not target_field:
                errors.append({"path": f"{f_prefix}.target_field", "message": "target_field is required"})
            elif target_fields is not None and target_field.split(".", 1)[0] not in target_fields:
                errors.append({
                    "path": f"{f_prefix}.target_field",
                    "message": f'"{target_field}" is not a mappable {target_entity} field',
                })

            if not isinstance(transform, (str, type(None))) or not is_allowed_transform(transform):
                errors.append({
                    "path": f"{f_prefix}.transform",
                    "message": f'Transform "{transform}" is not in the allowlist',
                })

            transform_config = fm.get("transform_config")
            if transform_config is not None and not isinstance(transform_config, dict):
                errors.append({"path": f"{f_prefix}.transform_config", "message": "transform_config must be an object"})

            confidence = fm.get("confidence", 1.0)
            if not isinstance(confidence, (int, float)) or isinstance(confidence, bool) or not 0 <= confidence <= 1:
                errors.append({"path": f"{f_prefix}.confidence", "message": "confidence must be between 0 and 1"})

        enum_maps = em.get("enum_maps")
        if enum_maps is not None and not isinstance(enum_maps, dict):
            errors.append({"path": f"{prefix}.enum_maps", "message": "enum_maps must be an object"})

    return errors
