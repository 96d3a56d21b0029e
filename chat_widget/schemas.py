from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ExtractionFailure, ValidationError

# Reserved extraction output field listing values the user explicitly withdrew.
RETRACTED_KEY = "retracted"


class FieldKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    OBJECT = "object"
    ARRAY = "array"
    ENUM = "enum"


@dataclass(frozen=True)
class SchemaField:
    """One extractable field: its kind plus the prompt-facing description."""
    kind: FieldKind
    description: str
    required: bool = False
    format: Optional[str] = None
    example: Any = None
    options: Tuple[str, ...] = ()
    item_kind: Optional[FieldKind] = None
    properties: Tuple[Tuple[str, "SchemaField"], ...] = ()

    @property
    def is_array(self) -> bool:
        return self.kind is FieldKind.ARRAY

    def describe(self) -> Dict[str, Any]:
        """Render the field as the JSON-schema-like dict embedded in prompts."""
        if self.kind is FieldKind.ENUM:
            described: Dict[str, Any] = {"type": "string", "enum": list(self.options)}
        else:
            described = {"type": self.kind.value}
        described["description"] = self.description
        if self.kind is FieldKind.ARRAY:
            described["items"] = {"type": (self.item_kind or FieldKind.STRING).value}
        if self.properties:
            described["properties"] = {name: sub.describe() for name, sub in self.properties}
        if self.format:
            described["format"] = self.format
        if self.example is not None:
            described["example"] = self.example
        if self.required:
            described["required"] = True
        return described


@dataclass(frozen=True)
class SchemaDescriptor:
    """Typed description of the fields an extraction may produce.

    The same descriptor drives the extraction prompt, the validator applied to model
    output, and the per-field merge rules. Search data is built from widget config;
    intention and prospect descriptors are fixed. Array fields in one disjoint group
    never share a value.
    """
    name: str
    fields: Dict[str, SchemaField]
    disjoint_groups: Tuple[Tuple[str, ...], ...] = ()
    allow_retraction: bool = True

    def required_fields(self) -> List[str]:
        return [key for key, spec in self.fields.items() if spec.required]

    def array_fields(self) -> List[str]:
        return [key for key, spec in self.fields.items() if spec.is_array]

    def siblings(self, key: str) -> Tuple[str, ...]:
        for group in self.disjoint_groups:
            if key in group:
                return tuple(other for other in group if other != key)
        return ()

    def output_keys(self) -> List[str]:
        keys = list(self.fields)
        if self.allow_retraction and self.array_fields():
            keys.append(RETRACTED_KEY)
        return keys

    def extraction_schema(self) -> Dict[str, Any]:
        """Purpose: Build the object schema the extractor asks the model to honor.
        Inputs/Outputs: No inputs; returns a JSON-schema-like dict.
        Side Effects / State: None.
        Dependencies: SchemaField.describe; consumed by extraction prompts.
        Failure Modes: None.
        If Removed: Prompts lose the field contract and model output drifts.
        Testing Notes: Every declared field appears; "retracted" only when arrays exist.
        """
        # Declared fields first, then the reserved retraction channel.
        properties = {key: spec.describe() for key, spec in self.fields.items()}
        if RETRACTED_KEY in self.output_keys():
            properties[RETRACTED_KEY] = {
                "type": "array",
                "items": {"type": "string"},
                "description": "Values previously recorded in any array field that the user has "
                "explicitly withdrawn or contradicted. Empty when nothing was withdrawn.",
            }
        return {
            "type": "object",
            "properties": properties,
            "required": list(properties),
            "additionalProperties": False,
        }

    def prompt_view(self) -> Dict[str, Dict[str, Any]]:
        """Compact {type, description, required} view used by the chat prompt."""
        view: Dict[str, Dict[str, Any]] = {}
        for key, spec in self.fields.items():
            view[key] = {"type": spec.kind.value, "description": spec.description, "required": spec.required}
        return view


def field_from_config(name: str, config: Mapping[str, Any]) -> SchemaField:
    """Purpose: Convert one configured search field into a SchemaField.
    Inputs/Outputs: Input is the field name and its config mapping; returns SchemaField.
    Side Effects / State: None.
    Dependencies: FieldKind; called by search_schema_from_config.
    Failure Modes: Raises ValidationError for unknown types or enum fields without options.
    If Removed: Widget-configured search data cannot be extracted.
    Testing Notes: {"type": "array"} defaults item kind to string.
    """
    # Map the config's type string onto the typed field kinds.
    try:
        kind = FieldKind(str(config.get("type", "")).lower())
    except ValueError as exc:
        raise ValidationError(f"searchData.{name}: unsupported type {config.get('type')!r}") from exc
    options = tuple(str(option) for option in (config.get("enum") or ()))
    if kind is FieldKind.ENUM and not options:
        raise ValidationError(f"searchData.{name}: enum fields need an 'enum' option list")
    item_kind = None
    items = config.get("items")
    if isinstance(items, Mapping) and items.get("type"):
        try:
            item_kind = FieldKind(str(items["type"]).lower())
        except ValueError as exc:
            raise ValidationError(f"searchData.{name}: unsupported item type {items['type']!r}") from exc
    properties: Tuple[Tuple[str, SchemaField], ...] = ()
    nested = config.get("properties")
    if kind is FieldKind.OBJECT and isinstance(nested, Mapping):
        properties = tuple((sub_name, field_from_config(f"{name}.{sub_name}", sub)) for sub_name, sub in nested.items())
    return SchemaField(
        kind=kind,
        description=str(config.get("description") or ""),
        required=bool(config.get("required", False)),
        format=config.get("format"),
        example=config.get("example"),
        options=options,
        item_kind=item_kind,
        properties=properties,
    )


def search_schema_from_config(search_data: Mapping[str, Mapping[str, Any]]) -> SchemaDescriptor:
    """Build the search-data descriptor from a widget's ``searchData`` config block."""
    if not isinstance(search_data, Mapping) or not search_data:
        raise ValidationError("searchConfig.searchData must be a non-empty object")
    if RETRACTED_KEY in search_data:
        raise ValidationError(f"searchData field name {RETRACTED_KEY!r} is reserved")
    fields = {name: field_from_config(name, config) for name, config in search_data.items()}
    return SchemaDescriptor(name="search_data", fields=fields)


def _string_list(description: str) -> SchemaField:
    return SchemaField(kind=FieldKind.ARRAY, description=description, item_kind=FieldKind.STRING)


CUSTOMER_INTENTION_SCHEMA = SchemaDescriptor(
    name="customer_intention",
    fields={
        "objective": SchemaField(
            kind=FieldKind.ENUM,
            description="The primary goal the customer aims to achieve. If not clear, leave unset.",
            options=("discover", "transact", "compare", "resolve", "customize"),
        ),
        "budget": SchemaField(
            kind=FieldKind.NUMBER,
            description="The amount the customer wants to spend. If not explicitly mentioned, leave unset.",
        ),
        "urgency_level": SchemaField(
            kind=FieldKind.ENUM,
            description="How urgently the customer needs to achieve their objective "
            "(1: low, 2: medium, 3: high). If not clear, leave unset.",
            options=("1", "2", "3"),
        ),
        "pain_points": _string_list(
            "The challenges or problems the customer is trying to solve. Unless explicitly stated, leave unset."
        ),
        "likes": _string_list("The customer's likes. If not clear, leave unset."),
        "dislikes": _string_list("The customer's dislikes. If not clear, leave unset."),
        "priorities": _string_list(
            "The customer's priorities as single words, e.g. price, location, style. If not clear, leave unset."
        ),
        "satisfaction_level": SchemaField(
            kind=FieldKind.ENUM,
            description="How satisfied the customer appears with the options discussed so far "
            "(1: low, 2: medium, 3: high). Only set on explicit signals.",
            options=("1", "2", "3"),
        ),
        "preferred_tone": SchemaField(
            kind=FieldKind.STRING,
            description="The communication style the customer responds to, e.g. playful, concise, formal. "
            "Only set when the customer states it.",
        ),
    },
    disjoint_groups=(("likes", "dislikes", "priorities"),),
)

CUSTOMER_PROSPECT_SCHEMA = SchemaDescriptor(
    name="customer_prospect",
    fields={
        "type": SchemaField(kind=FieldKind.STRING, description="The type/category of prospect the customer is looking for"),
        "priceRange": SchemaField(
            kind=FieldKind.OBJECT,
            description="The price range the customer is willing to consider",
            properties=(
                ("min", SchemaField(kind=FieldKind.NUMBER, description="Lowest acceptable price")),
                ("max", SchemaField(kind=FieldKind.NUMBER, description="Highest acceptable price")),
            ),
        ),
        "specifications": _string_list("Key specifications or features the customer has mentioned"),
        "preferences": _string_list("Specific preferences or requirements mentioned by the customer"),
    },
    allow_retraction=False,
)


def validate_snapshot(candidate: Any, schema: SchemaDescriptor) -> Dict[str, Any]:
    """Purpose: Check a model-produced candidate against the extraction schema.
    Inputs/Outputs: Input is parsed model output and a descriptor; returns the candidate
        as a plain dict (integers given as whole floats are normalized to int).
    Side Effects / State: None.
    Dependencies: _check_value; called by the structured extractor.
    Failure Modes: Raises ExtractionFailure on missing keys, extra keys, or type errors.
    If Removed: Malformed model output could corrupt durable snapshots.
    Testing Notes: Missing key, extra key, wrong enum option, and bool-as-number all fail.
    """
    # Key set must match exactly; None is the schema-valid "unset".
    if not isinstance(candidate, dict):
        raise ExtractionFailure(f"{schema.name}: model output is not an object")
    expected = schema.output_keys()
    missing = [key for key in expected if key not in candidate]
    if missing:
        raise ExtractionFailure(f"{schema.name}: missing keys {missing}")
    extra = [key for key in candidate if key not in expected]
    if extra:
        raise ExtractionFailure(f"{schema.name}: unexpected keys {extra}")

    validated: Dict[str, Any] = {}
    for key, spec in schema.fields.items():
        validated[key] = _check_value(f"{schema.name}.{key}", candidate[key], spec)
    if RETRACTED_KEY in expected:
        retracted = candidate[RETRACTED_KEY]
        if retracted is None:
            retracted = []
        if not isinstance(retracted, list):
            raise ExtractionFailure(f"{schema.name}.{RETRACTED_KEY}: expected array")
        validated[RETRACTED_KEY] = retracted
    return validated


def _check_value(path: str, value: Any, spec: SchemaField) -> Any:
    if value is None:
        return None
    kind = spec.kind
    if kind is FieldKind.STRING:
        if not isinstance(value, str):
            raise ExtractionFailure(f"{path}: expected string")
        return value
    if kind is FieldKind.ENUM:
        if isinstance(value, str) and value == "":
            return value
        if not isinstance(value, str) or value not in spec.options:
            raise ExtractionFailure(f"{path}: {value!r} is not one of {list(spec.options)}")
        return value
    if kind is FieldKind.BOOLEAN:
        if not isinstance(value, bool):
            raise ExtractionFailure(f"{path}: expected boolean")
        return value
    if kind is FieldKind.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ExtractionFailure(f"{path}: expected number")
        return value
    if kind is FieldKind.INTEGER:
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ExtractionFailure(f"{path}: expected integer")
        return value
    if kind is FieldKind.ARRAY:
        if not isinstance(value, list):
            raise ExtractionFailure(f"{path}: expected array")
        if spec.item_kind is None:
            return value
        item_spec = SchemaField(kind=spec.item_kind, description="")
        return [_check_value(f"{path}[{index}]", item, item_spec) for index, item in enumerate(value)]
    if kind is FieldKind.OBJECT:
        if not isinstance(value, dict):
            raise ExtractionFailure(f"{path}: expected object")
        if not spec.properties:
            return value
        allowed = {name for name, _ in spec.properties}
        extra = [key for key in value if key not in allowed]
        if extra:
            raise ExtractionFailure(f"{path}: unexpected keys {extra}")
        return {
            name: _check_value(f"{path}.{name}", value.get(name), sub)
            for name, sub in spec.properties
            if name in value
        }
    raise ExtractionFailure(f"{path}: unsupported field kind {kind}")
