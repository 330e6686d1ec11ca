"""LLM-assisted mapping proposals.

Only field profiles reach the provider: names, inferred types, null and
unique rates and PHI flags. Record values are never part of a prompt.
Any provider failure falls back to the name-matching drafter.
"""

import json
import logging
import re
from typing import Any, List, Optional

from ..models.canonical import EntityType, canonical_field_names
from ..models.mapping import (
    APPROVAL_CONFIDENCE_THRESHOLD,
    EntityMapping,
    FieldMapping,
    TransformType,
    validate_mapping_spec,
)
from ..models.migration import SourceVendor
from .mapping_drafter import EntityProfile, MappingDrafter

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-3-5-sonnet-latest",
}

# Suggestions from a model are never trusted enough to skip review
MAX_LLM_CONFIDENCE = 0.75


class LLMMappingDrafter(MappingDrafter):
    """
    Mapping drafter that asks an LLM to match source fields.

    Vendor default mappings still win. For other entities the model's
    suggestions are checked against the canonical model and the profiled
    source fields; anything it gets wrong is dropped.
    """

    def __init__(
        self,
        source_vendor: SourceVendor,
        provider: str = "openai",
        model: Optional[str] = None,
        api_key: Optional[str] = None
    ):
        """
        Initialize the drafter.

        Args:
            source_vendor: Vendor the run ingests from
            provider: LLM provider (openai, anthropic)
            model: Model to use; defaults per provider
            api_key: API key for the provider; the client's own environment
                lookup is used when omitted
        """
        super().__init__(source_vendor)
        self.provider = provider
        self.model = model or DEFAULT_MODELS.get(provider, "")
        self.api_key = api_key

    def suggest_entity_mapping(self, profile: EntityProfile, target: EntityType) -> EntityMapping:
        prompt = self.build_prompt(profile, target)
        try:
            response = self._call_llm(prompt)
            mapping = self._parse_mapping_response(response, profile, target)
        except Exception as e:
            logger.error(f"LLM mapping suggestion failed for {profile.source_entity}: {e}")
            return super().suggest_entity_mapping(profile, target)

        if not mapping.field_mappings:
            logger.warning(f"LLM suggested no usable mappings for {profile.source_entity}; using name matching")
            return super().suggest_entity_mapping(profile, target)
        return mapping

    def build_prompt(self, profile: EntityProfile, target: EntityType) -> str:
        """Build the mapping prompt from a profile. No record values are included."""
        source_fields = [
            {
                "name": f.name,
                "inferred_type": f.inferred_type,
                "null_rate": f.null_rate,
                "unique_rate": f.unique_rate,
                "is_phi": f.is_phi,
            }
            for f in profile.fields
        ]
        transforms = [t.value for t in TransformType]

        return f"""
Suggest field mappings from a clinic software export into a canonical {target.value} record.

Source entity: {profile.source_entity} ({profile.record_count} records)

Source fields (statistics only):
{json.dumps(source_fields, indent=2)}

Key candidates: {json.dumps(profile.key_candidates)}

Canonical {target.value} fields:
{json.dumps(canonical_field_names(target))}

Available transforms: {", ".join(transforms)}

Return a JSON object:
{{
    "source_id_field": "source field holding the record id",
    "field_mappings": [
        {{
            "source_field": "field name in source",
            "target_field": "canonical field name",
            "transform": "one of the available transforms",
            "transform_config": {{}},
            "confidence": 0.0-1.0
        }}
    ]
}}
"""

    def _call_llm(self, prompt: str) -> Any:
        """Call the LLM API."""
        if self.provider == "openai":
            return self._call_openai(prompt)
        elif self.provider == "anthropic":
            return self._call_anthropic(prompt)
        else:
            raise ValueError(f"Unsupported provider: {self.provider}")

    def _call_openai(self, prompt: str) -> Any:
        import openai

        client = openai.OpenAI(api_key=self.api_key)
        response = client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.2,
            max_tokens=4096,
            response_format={"type": "json_object"},
        )
        return json.loads(response.choices[0].message.content)

    def _call_anthropic(self, prompt: str) -> Any:
        import anthropic

        client = anthropic.Anthropic(api_key=self.api_key)
        response = client.messages.create(
            model=self.model,
            max_tokens=4096,
            messages=[{"role": "user", "content": prompt}],
        )
        content = response.content[0].text
        json_match = re.search(r"\{[\s\S]*\}", content)
        if not json_match:
            raise ValueError("LLM response contained no JSON object")
        return json.loads(json_match.group())

    def _parse_mapping_response(
        self,
        response: Any,
        profile: EntityProfile,
        target: EntityType
    ) -> EntityMapping:
        """Turn the model's answer into an EntityMapping, dropping invalid suggestions."""
        if not isinstance(response, dict):
            raise ValueError("LLM response must be a JSON object")
        items = response.get("field_mappings")
        if not isinstance(items, list):
            raise ValueError("LLM response has no field_mappings array")

        source_names = {f.name for f in profile.fields}
        field_mappings: List[FieldMapping] = []
        used_targets = set()

        for item in items:
            if not self._is_usable(item, profile, target, source_names):
                logger.debug(f"Dropping LLM suggestion for {profile.source_entity}: {item!r}")
                continue
            if item["target_field"] in used_targets:
                continue
            used_targets.add(item["target_field"])

            confidence = item.get("confidence", 0.5)
            if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
                confidence = 0.5
            confidence = round(min(max(float(confidence), 0.0), MAX_LLM_CONFIDENCE), 2)

            field_mappings.append(FieldMapping(
                source_field=item.get("source_field"),
                target_field=item["target_field"],
                transform=TransformType(item.get("transform") or TransformType.DIRECT.value),
                transform_config=dict(item.get("transform_config") or {}),
                confidence=confidence,
                requires_approval=confidence < APPROVAL_CONFIDENCE_THRESHOLD,
            ))

        id_field = response.get("source_id_field")
        if not isinstance(id_field, str) or id_field not in source_names:
            id_field = "id"

        return EntityMapping(
            source_entity=profile.source_entity,
            target_entity=target,
            field_mappings=field_mappings,
            source_id_field=id_field,
        )

    def _is_usable(
        self,
        item: Any,
        profile: EntityProfile,
        target: EntityType,
        source_names: set
    ) -> bool:
        if not isinstance(item, dict):
            return False
        source_field = item.get("source_field")
        if source_field is not None and (not isinstance(source_field, str) or source_field not in source_names):
            return False
        errors = validate_mapping_spec({
            "version": 1,
            "source_vendor": self.source_vendor.value,
            "entity_mappings": [{
                "source_entity": profile.source_entity,
                "target_entity": target.value,
                "field_mappings": [item],
            }],
        })
        return not errors


def create_drafter(
    source_vendor: SourceVendor,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    api_key: Optional[str] = None
) -> MappingDrafter:
    """Return the LLM drafter when a provider is configured, else the name-matching one."""
    if provider:
        return LLMMappingDrafter(source_vendor, provider=provider, model=model, api_key=api_key)
    return MappingDrafter(source_vendor)
