"""
Settings schema descriptors used to render module configuration forms.

Modules describe their settings as an ordered list of ``FieldDescriptor``
objects.  Older modules described settings as a JSON-schema-like object with
named properties; ``convert_object_schema`` turns that form into the field
list once so only one representation has to be rendered and validated.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

FieldType = Literal[
    "text",
    "textarea",
    "password",
    "number",
    "boolean",
    "select",
    "multiselect",
    "color",
    "time",
    "section",
    "divider",
    "readonly",
    "filelist",
    "array",
]

# Field types that only structure the form and never carry a setting value.
LAYOUT_TYPES = frozenset({"section", "divider", "readonly"})


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )


class SelectOption(_CamelModel):
    value: Any
    label: str


class ValidationRules(_CamelModel):
    """Per-field validation constraints."""

    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    pattern_message: str | None = None
    min: float | None = None
    max: float | None = None


class FieldDescriptor(_CamelModel):
    """One entry of a module settings form."""

    key: str
    type: FieldType
    label: str = ""
    description: str | None = None
    placeholder: str | None = None
    required: bool = False
    default: Any = None
    options: list[SelectOption] | None = None
    validation: ValidationRules | None = None
    depends_on: str | None = None
    value: Any = None
    item_schema: list[FieldDescriptor] | None = None

    @property
    def is_layout(self) -> bool:
        return self.type in LAYOUT_TYPES

    def display_label(self) -> str:
        return self.label or self.key


def section(key: str, label: str) -> FieldDescriptor:
    return FieldDescriptor(key=key, type="section", label=label)


def dump_schema(schema: Iterable[FieldDescriptor]) -> list[dict[str, Any]]:
    """Serialize descriptors with camelCase keys, omitting unset attributes."""
    return [item.model_dump(by_alias=True, exclude_none=True) for item in schema]


_STRING_FORMATS: dict[str, FieldType] = {
    "color": "color",
    "time": "time",
    "password": "password",
    "textarea": "textarea",
    "multiline": "textarea",
}


def _field_type(prop: Mapping[str, Any]) -> FieldType:
    kind = prop.get("type", "string")
    if kind == "boolean":
        return "boolean"
    if kind in ("number", "integer"):
        return "number"
    if kind == "array":
        items = prop.get("items") or {}
        return "multiselect" if isinstance(items, Mapping) and items.get("enum") else "array"
    if prop.get("enum"):
        return "select"
    fmt = prop.get("format") or prop.get("widget")
    if fmt in _STRING_FORMATS:
        return _STRING_FORMATS[fmt]
    return "text"


def _options(prop: Mapping[str, Any]) -> list[SelectOption] | None:
    values = prop.get("enum")
    if not values:
        items = prop.get("items")
        values = items.get("enum") if isinstance(items, Mapping) else None
    if not values:
        return None
    titles = prop.get("enumTitles") or prop.get("enumNames") or []
    return [
        SelectOption(value=value, label=str(titles[idx]) if idx < len(titles) else str(value))
        for idx, value in enumerate(values)
    ]


def _rules(prop: Mapping[str, Any]) -> ValidationRules | None:
    rules = ValidationRules(
        min_length=prop.get("minLength"),
        max_length=prop.get("maxLength"),
        pattern=prop.get("pattern"),
        pattern_message=prop.get("patternMessage"),
        min=prop.get("minimum", prop.get("min")),
        max=prop.get("maximum", prop.get("max")),
    )
    if rules == ValidationRules():
        return None
    return rules


def _convert_property(key: str, prop: Mapping[str, Any], required: set[str]) -> FieldDescriptor:
    return FieldDescriptor(
        key=key,
        type=_field_type(prop),
        label=prop.get("title") or key,
        description=prop.get("description"),
        placeholder=prop.get("placeholder"),
        required=key in required or bool(prop.get("required") is True),
        default=prop.get("default"),
        options=_options(prop),
        validation=_rules(prop),
        depends_on=prop.get("dependsOn"),
    )


def convert_object_schema(schema: Mapping[str, Any]) -> list[FieldDescriptor]:
    """
    Convert an object-with-properties schema into an ordered field list.

    Optional ``sections`` (``[{"title": ..., "fields": [...]}]``) become
    section breaks followed by their fields; properties not claimed by any
    section keep their declaration order and come first.
    """
    properties = schema.get("properties")
    if not isinstance(properties, Mapping):
        raise ValueError("Object schema must define a 'properties' mapping.")
    required = {str(item) for item in schema.get("required") or ()}

    sections = [item for item in schema.get("sections") or () if isinstance(item, Mapping)]
    claimed = {
        str(name) for group in sections for name in group.get("fields") or () if name in properties
    }

    fields = [
        _convert_property(key, prop, required)
        for key, prop in properties.items()
        if key not in claimed and isinstance(prop, Mapping)
    ]
    for idx, group in enumerate(sections):
        names = [name for name in group.get("fields") or () if name in properties]
        if not names:
            continue
        fields.append(section(f"section_{idx}", str(group.get("title") or "")))
        fields.extend(_convert_property(name, properties[name], required) for name in names)
    return fields


__all__ = [
    "FieldDescriptor",
    "FieldType",
    "LAYOUT_TYPES",
    "SelectOption",
    "ValidationRules",
    "convert_object_schema",
    "dump_schema",
    "section",
]
