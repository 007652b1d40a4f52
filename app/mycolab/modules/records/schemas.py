"""
Field schemas for versioned entity types.

Each entity type declares its fields explicitly so that validation and the
changes summary are computed over a known, closed set of fields rather than
whatever keys a client happens to send.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from .errors import InvalidFieldValue

FIELD_KINDS = ("str", "text", "int", "float", "date", "choice")


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: str
    label: str = ""
    required: bool = False
    choices: tuple[str, ...] = ()
    minimum: float | None = None
    maximum: float | None = None
    max_length: int | None = None
    alias: str | None = None

    def coerce(self, value: Any) -> Any:
        """Return the canonical JSON-safe value, or raise InvalidFieldValue."""
        if isinstance(value, str):
            value = value.strip()
            if value == "":
                value = None
        if value is None:
            if self.required:
                raise InvalidFieldValue(self.name, "is required.")
            return None

        if self.kind in ("str", "text"):
            if not isinstance(value, str):
                value = str(value)
            if self.max_length is not None and len(value) > self.max_length:
                raise InvalidFieldValue(self.name, f"must be at most {self.max_length} characters.")
            return value

        if self.kind == "choice":
            value = str(value).strip().lower()
            if value not in self.choices:
                raise InvalidFieldValue(self.name, f"must be one of: {', '.join(self.choices)}.")
            return value

        if self.kind == "date":
            if isinstance(value, date):
                return value.isoformat()
            try:
                return date.fromisoformat(str(value)).isoformat()
            except ValueError:
                raise InvalidFieldValue(self.name, "must be a YYYY-MM-DD date.") from None

        if self.kind == "int":
            if isinstance(value, bool):
                raise InvalidFieldValue(self.name, "must be a whole number.")
            if isinstance(value, float):
                if not value.is_integer():
                    raise InvalidFieldValue(self.name, "must be a whole number.")
                value = int(value)
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise InvalidFieldValue(self.name, "must be a whole number.") from None
            return self._check_range(value)

        if self.kind == "float":
            if isinstance(value, bool):
                raise InvalidFieldValue(self.name, "must be a number.")
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise InvalidFieldValue(self.name, "must be a number.") from None
            if value != value or value in (float("inf"), float("-inf")):
                raise InvalidFieldValue(self.name, "must be a finite number.")
            # 250 and 250.0 are the same weight; store one form so diffs stay quiet.
            if value.is_integer():
                value = int(value)
            return self._check_range(value)

        raise InvalidFieldValue(self.name, f"unsupported field kind {self.kind!r}.")

    def _check_range(self, value: int | float) -> int | float:
        if self.minimum is not None and value < self.minimum:
            raise InvalidFieldValue(self.name, f"must be at least {self.minimum:g}.")
        if self.maximum is not None and value > self.maximum:
            raise InvalidFieldValue(self.name, f"must be at most {self.maximum:g}.")
        return value


@dataclass(frozen=True)
class EntitySchema:
    entity_type: str
    label_field: str
    fields: tuple[FieldSpec, ...]

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def _lookup(self) -> dict[str, FieldSpec]:
        out: dict[str, FieldSpec] = {}
        for f in self.fields:
            out[f.name] = f
            if f.alias:
                out[f.alias] = f
        return out

    def normalize(self, values: Any, *, partial: bool) -> dict[str, Any]:
        """
        Validate and coerce a field map.

        partial=True: only the supplied fields are returned (amendment changes).
        partial=False: a full snapshot with every declared field (record creation).
        """
        if values is None:
            values = {}
        if not isinstance(values, dict):
            raise InvalidFieldValue("fields", "must be an object.")

        lookup = self._lookup()
        out: dict[str, Any] = {}
        for key, raw in values.items():
            spec = lookup.get(key)
            if spec is None:
                raise InvalidFieldValue(str(key), f"is not a {self.entity_type} field.")
            out[spec.name] = spec.coerce(raw)

        if partial:
            return out

        full: dict[str, Any] = {}
        for spec in self.fields:
            if spec.name in out:
                full[spec.name] = out[spec.name]
            elif spec.required:
                raise InvalidFieldValue(spec.name, "is required.")
            else:
                full[spec.name] = None
        return full

    def diff(self, current: dict[str, Any], proposed: dict[str, Any]) -> dict[str, dict[str, Any]]:
        """Old/new pairs for declared fields whose value differs."""
        summary: dict[str, dict[str, Any]] = {}
        for name in self.field_names():
            if name not in proposed:
                continue
            old = current.get(name)
            new = proposed[name]
            if old != new:
                summary[name] = {"old": old, "new": new}
        return summary

    def display_label(self, fields: dict[str, Any]) -> str | None:
        return fields.get(self.label_field)


CULTURE_SCHEMA = EntitySchema(
    entity_type="culture",
    label_field="label",
    fields=(
        FieldSpec("label", "str", "Label", required=True, max_length=128),
        FieldSpec(
            "culture_type",
            "choice",
            "Type",
            choices=("liquid_culture", "agar", "slant", "spore_syringe", "spore_print"),
            alias="cultureType",
        ),
        FieldSpec(
            "status",
            "choice",
            "Status",
            choices=("active", "colonizing", "ready", "contaminated", "expired", "depleted", "archived"),
        ),
        FieldSpec("health_rating", "int", "Health Rating", minimum=1, maximum=5, alias="healthRating"),
        FieldSpec("volume_ml", "float", "Volume (ml)", minimum=0, alias="volumeMl"),
        FieldSpec("fill_volume_ml", "float", "Fill Volume (ml)", minimum=0, alias="fillVolumeMl"),
        FieldSpec("expiration_date", "date", "Expiration Date", alias="expirationDate"),
        FieldSpec("notes", "text", "Notes", max_length=4000),
    ),
)

GROW_SCHEMA = EntitySchema(
    entity_type="grow",
    label_field="name",
    fields=(
        FieldSpec("name", "str", "Name", required=True, max_length=255),
        FieldSpec("label", "str", "Label", max_length=128),
        FieldSpec(
            "current_stage",
            "choice",
            "Stage",
            choices=("spawning", "colonization", "fruiting", "harvesting", "completed", "contaminated", "aborted"),
            alias="currentStage",
        ),
        FieldSpec("spawn_weight", "float", "Spawn Weight (g)", minimum=0, alias="spawnWeight"),
        FieldSpec("substrate_weight", "float", "Substrate Weight (g)", minimum=0, alias="substrateWeight"),
        FieldSpec("target_temperature", "float", "Target Temperature", alias="targetTemperature"),
        FieldSpec("notes", "text", "Notes", max_length=4000),
    ),
)

ENTITY_SCHEMAS: dict[str, EntitySchema] = {
    CULTURE_SCHEMA.entity_type: CULTURE_SCHEMA,
    GROW_SCHEMA.entity_type: GROW_SCHEMA,
}


def schema_for(entity_type: str) -> EntitySchema:
    schema = ENTITY_SCHEMAS.get((entity_type or "").strip().lower())
    if schema is None:
        raise InvalidFieldValue(
            "entity_type",
            f"must be one of: {', '.join(sorted(ENTITY_SCHEMAS))}.",
        )
    return schema
