"""Transformation engine for converting raw source records to canonical records."""

import hashlib
import hmac
import json
import re
import logging
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser

from ..models.canonical import EntityType, generate_canonical_id, record_from_dict
from ..models.mapping import EntityMapping, FieldMapping, TransformType
from ..models.record import CanonicalEnvelope, RawRecord

logger = logging.getLogger(__name__)

# Set by the engine, never by a mapping
IDENTITY_FIELDS = ("canonical_id", "source_record_id")


ReferenceResolver = Callable[[str, str], str]


class RecordTransformError(ValueError):
    """A single source record could not be transformed."""

    def __init__(self, source_id: str, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.source_id = source_id
        self.field = field


def record_checksum(data: Dict[str, Any]) -> str:
    """Stable sha256 over a record's canonical JSON form."""
    payload = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class TransformEngine:
    """
    Engine for transforming raw source records to canonical format.

    Supports:
    - Allowlisted transformation functions only
    - Nested source and target field paths (dot notation)
    - Per-entity enum maps
    - Cross-entity references resolved to canonical ids
    """

    def __init__(
        self,
        clinic_id: str,
        source_vendor: str,
        masking_secret: str = "dev-secret",
        resolve_reference: Optional[ReferenceResolver] = None
    ):
        """
        Initialize the transform engine.

        Args:
            clinic_id: Tenant the canonical ids are scoped to
            source_vendor: Vendor key the canonical ids are scoped to
            masking_secret: HMAC secret for the hash_token transform
            resolve_reference: Callable (entity_type, source_id) -> canonical id;
                defaults to deterministic id generation
        """
        self.clinic_id = clinic_id
        self.source_vendor = source_vendor
        self.masking_secret = masking_secret
        self._resolve = resolve_reference or self._default_resolver
        self._transforms = self._register_transforms()

    def _default_resolver(self, entity_type: str, source_id: str) -> str:
        return generate_canonical_id(self.clinic_id, self.source_vendor, entity_type, source_id)

    def _register_transforms(self) -> Dict[str, Callable]:
        """Register the allowlisted transformation functions."""
        return {
            TransformType.DIRECT.value: self._transform_direct,
            TransformType.TRIM.value: self._transform_trim,
            TransformType.UPPERCASE.value: self._transform_uppercase,
            TransformType.LOWERCASE.value: self._transform_lowercase,
            TransformType.NORMALIZE_DATE.value: self._transform_normalize_date,
            TransformType.NORMALIZE_DATETIME.value: self._transform_normalize_datetime,
            TransformType.NORMALIZE_PHONE.value: self._transform_normalize_phone,
            TransformType.NORMALIZE_EMAIL.value: self._transform_normalize_email,
            TransformType.ENUM_MAP.value: self._transform_enum_map,
            TransformType.SPLIT_NAME.value: self._transform_split_name,
            TransformType.CONCAT.value: self._transform_concat,
            TransformType.DEFAULT.value: self._transform_default,
            TransformType.TO_NUMBER.value: self._transform_to_number,
            TransformType.TO_LIST.value: self._transform_to_list,
            TransformType.TO_SECTIONS.value: self._transform_to_sections,
            TransformType.MAP_LIST.value: self._transform_map_list,
            TransformType.HASH_TOKEN.value: self._transform_hash_token,
            TransformType.REFERENCE.value: self._transform_reference,
        }

    def transform_record(self, raw: RawRecord, mapping: EntityMapping) -> CanonicalEnvelope:
        """
        Transform one raw record into a canonical record.

        Args:
            raw: Source record as ingested
            mapping: Approved entity mapping to apply

        Returns:
            CanonicalEnvelope carrying the canonical record and its checksum

        Raises:
            RecordTransformError: If the record has no source id or a field
                transform fails
        """
        source_id_field = mapping.source_id_field if isinstance(mapping.source_id_field, str) else None
        source_id = str(raw.source_id or (raw.get_field(source_id_field) if source_id_field else None) or "").strip()
        if not source_id:
            raise RecordTransformError("", f"{raw.source_entity_type} record has no source id")

        target = mapping.target_entity
        data: Dict[str, Any] = {
            "canonical_id": self._resolve(target.value, source_id),
            "source_record_id": source_id,
        }

        for field_mapping in mapping.field_mappings:
            target_field = field_mapping.target_field
            if not isinstance(target_field, str) or not target_field or target_field.split(".", 1)[0] in IDENTITY_FIELDS:
                raise RecordTransformError(source_id, f"Cannot map a value onto {target_field!r}")
            value = self.apply_field_mapping(raw, field_mapping, mapping)
            if value is not None:
                self._set_nested_value(data, target_field, value)

        try:
            record = record_from_dict(target, data)
        except (TypeError, ValueError, AttributeError) as e:
            raise RecordTransformError(source_id, f"Cannot build {target.value} record: {e}")

        return CanonicalEnvelope(
            entity_type=target,
            record=record,
            source_entity_type=raw.source_entity_type,
            checksum=record_checksum(record.to_dict()),
        )

    def apply_field_mapping(
        self,
        raw: RawRecord,
        field_mapping: FieldMapping,
        mapping: Optional[EntityMapping] = None
    ) -> Any:
        """Apply a single field mapping to a raw record and return the canonical value."""
        transform_name = (
            field_mapping.transform.value
            if isinstance(field_mapping.transform, TransformType)
            else field_mapping.transform
        )
        transform_func = self._transforms.get(transform_name) if isinstance(transform_name, str) else None
        if transform_func is None:
            raise RecordTransformError(
                raw.source_id, f"Transform not allowed: {transform_name}", field_mapping.target_field
            )

        try:
            source_value = (
                self._get_nested_value(raw.payload, field_mapping.source_field)
                if field_mapping.source_field else None
            )
            config = field_mapping.transform_config or {}
            if not isinstance(config, dict):
                raise TypeError("transform_config must be an object")
            config = dict(config)
        except (TypeError, ValueError, AttributeError) as e:
            raise RecordTransformError(
                raw.source_id,
                f"Invalid mapping for {field_mapping.target_field}: {e}",
                field_mapping.target_field,
            )

        if transform_name == TransformType.ENUM_MAP.value and "mapping" not in config and mapping:
            config["mapping"] = mapping.enum_maps.get(field_mapping.source_field or "", {})

        try:
            value = transform_func(source_value, config, raw.payload)
        except (TypeError, ValueError, AttributeError) as e:
            logger.debug(f"Transform error for {field_mapping.target_field}: {e}")
            raise RecordTransformError(
                raw.source_id,
                f"Transform {transform_name} failed for {field_mapping.target_field}: {e}",
                field_mapping.target_field,
            )

        if value is None and field_mapping.default_value is not None:
            value = field_mapping.default_value
        return value

    def _get_nested_value(self, data: Dict[str, Any], path: str) -> Any:
        """Get a nested value using dot notation."""
        value: Any = data
        for part in path.split("."):
            if value is None:
                return None

            # Handle array indexing (e.g., "items[0]" or "items.0")
            array_match = re.match(r"^(\w+)\[(\d+)\]$", part)
            if array_match:
                key, index = array_match.groups()
                if isinstance(value, dict):
                    value = value.get(key)
                if isinstance(value, list) and int(index) < len(value):
                    value = value[int(index)]
                else:
                    return None
            elif isinstance(value, dict):
                value = value.get(part)
            elif isinstance(value, list) and part.isdigit():
                idx = int(part)
                value = value[idx] if idx < len(value) else None
            else:
                return None

        return value

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: Any) -> None:
        """Set a nested value using dot notation."""
        parts = path.split(".")
        current = data
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value

    # Allowlisted transform functions

    def _transform_direct(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Direct copy without transformation."""
        return value

    def _transform_trim(self, value: Any, config: Dict, payload: Dict) -> Any:
        if value is None:
            return None
        return str(value).strip()

    def _transform_uppercase(self, value: Any, config: Dict, payload: Dict) -> Any:
        if value is None:
            return None
        return str(value).upper()

    def _transform_lowercase(self, value: Any, config: Dict, payload: Dict) -> Any:
        if value is None:
            return None
        return str(value).lower()

    def _transform_normalize_date(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Normalize to an ISO date; unparseable input is kept so validation can flag it."""
        if value is None or str(value).strip() == "":
            return None
        try:
            return date_parser.parse(str(value), dayfirst=config.get("dayfirst", False)).date().isoformat()
        except (ValueError, OverflowError):
            return str(value)

    def _transform_normalize_datetime(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Normalize to an ISO datetime; unparseable input is kept so validation can flag it."""
        if value is None or str(value).strip() == "":
            return None
        try:
            return date_parser.parse(str(value), dayfirst=config.get("dayfirst", False)).isoformat()
        except (ValueError, OverflowError):
            return str(value)

    def _transform_normalize_phone(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Normalize to E.164, assuming a North American number for 10 digits."""
        if value is None:
            return None
        digits = re.sub(r"\D", "", str(value))
        if not digits:
            return None
        if len(digits) == 10:
            return f"+1{digits}"
        return f"+{digits}"

    def _transform_normalize_email(self, value: Any, config: Dict, payload: Dict) -> Any:
        if value is None:
            return None
        email = str(value).strip().lower()
        return email or None

    def _transform_enum_map(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Map value using a lookup table; unmapped values pass through unless a default is set."""
        if value is None:
            return config.get("default")
        mapping = config.get("mapping", {})
        key = str(value)
        if key in mapping:
            return mapping[key]
        lowered = {str(k).lower(): v for k, v in mapping.items()}
        if key.lower() in lowered:
            return lowered[key.lower()]
        return config.get("default", value)

    def _transform_split_name(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Split a full name into first/last parts."""
        if not value:
            return None
        parts = str(value).strip().split()
        if config.get("part", "first") == "first":
            return parts[0] if parts else None
        return " ".join(parts[1:]) or None

    def _transform_concat(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Join the mapped value with other source fields."""
        separator = config.get("separator", " ")
        values = [value] + [self._get_nested_value(payload, f) for f in config.get("fields", [])]
        parts = [str(v).strip() for v in values if v is not None and str(v).strip()]
        return separator.join(parts) or None

    def _transform_default(self, value: Any, config: Dict, payload: Dict) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return config.get("value")
        return value

    def _transform_to_number(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Parse a numeric amount; unparseable input is kept so validation can flag it."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            number = value
        else:
            cleaned = re.sub(r"[,$\s]", "", str(value))
            try:
                number = float(cleaned)
            except ValueError:
                return value
        divisor = config.get("divide_by")
        if divisor:
            number = number / divisor
        if isinstance(number, float) and number.is_integer() and not config.get("keep_float"):
            return int(number)
        return number

    def _transform_to_list(self, value: Any, config: Dict, payload: Dict) -> Any:
        if value is None:
            return None
        if isinstance(value, list):
            key = config.get("key")
            if key:
                value = [v.get(key) if isinstance(v, dict) else v for v in value]
            return [str(v).strip() for v in value if v is not None and str(v).strip()]
        separator = config.get("separator", ",")
        return [part.strip() for part in str(value).split(separator) if part.strip()]

    def _transform_to_sections(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Wrap free text (or a list of section dicts) as chart sections."""
        if value is None:
            return None
        if isinstance(value, list):
            return [
                {
                    "title": item.get("title") or config.get("title", "Notes"),
                    "content": item.get("content") or item.get("body") or "",
                    "type": item.get("type"),
                }
                for item in value if isinstance(item, dict)
            ]
        text = str(value).strip()
        if not text:
            return None
        return [{"title": config.get("title", "Notes"), "content": text, "type": config.get("type")}]

    def _transform_map_list(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Rename keys in a list of objects; config["fields"] maps target key -> source key."""
        if value is None:
            return None
        if not isinstance(value, list):
            raise ValueError("map_list expects a list")
        fields = config.get("fields", {})
        numeric = set(config.get("numeric", []))
        items = []
        for item in value:
            if not isinstance(item, dict):
                continue
            mapped = {}
            for target_key, source_key in fields.items():
                v = self._get_nested_value(item, source_key)
                if target_key in numeric:
                    v = self._transform_to_number(v, {"divide_by": config.get("divide_by")}, payload)
                if v is not None:
                    mapped[target_key] = v
            items.append(mapped)
        return items

    def _transform_hash_token(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Replace a value with a keyed, irreversible token."""
        if value is None:
            return None
        digest = hmac.new(self.masking_secret.encode("utf-8"), str(value).encode("utf-8"), hashlib.sha256)
        return digest.hexdigest()[:16]

    def _transform_reference(self, value: Any, config: Dict, payload: Dict) -> Any:
        """Translate a source-side id of another entity into its canonical id."""
        if value is None or str(value).strip() == "":
            return None
        entity = config.get("entity")
        if entity not in [e.value for e in EntityType]:
            raise ValueError(f"reference transform needs a canonical entity, got {entity!r}")
        return self._resolve(entity, str(value).strip())

    def preview(self, payloads: List[Dict[str, Any]], mapping: EntityMapping) -> List[Dict[str, Any]]:
        """Transform sample payloads without side effects, reporting failures inline."""
        results = []
        for idx, payload in enumerate(payloads):
            raw = RawRecord(
                source_entity_type=mapping.source_entity,
                source_id=str(payload.get(mapping.source_id_field) or f"preview-{idx}"),
                payload=payload,
            )
            try:
                results.append({"ok": True, "record": self.transform_record(raw, mapping).to_dict()})
            except RecordTransformError as e:
                results.append({"ok": False, "error": str(e)})
        return results
