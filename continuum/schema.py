"""Input validation and field mapping between workflow context and executors.

Schemas are plain JSON objects and come in three shapes:

* JSON Schema objects: ``{"type": "object", "properties": {...}, "required": [...]}``
* field definitions: ``{"email": {"type": "string", "required": true, "default": ...}}``
* simple mappings (resolution only): ``{"client_id": "$.stage[0].client.id"}``

Field definitions may name a ``source`` path that differs from the field
name. Paths use dot and ``[n]`` notation with an optional ``$.`` prefix.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    create_model,
)

from .contracts import ContinuationError, ErrorCode

_PATH_INDEX = re.compile(r"\[(\d+)\]")
_KEY_INDEX = re.compile(r"^([^\[]+)\[(\d+)\]$")
_TEMPLATE_EXPR = re.compile(r"\$\{([^}]+)\}")


def _stringify(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


StringValue = Annotated[str, BeforeValidator(_stringify)]

_FIELD_TYPES: Dict[str, Any] = {
    "string": StringValue,
    "str": StringValue,
    "int": int,
    "integer": int,
    "number": Union[int, float],
    "float": Union[int, float],
    "bool": bool,
    "boolean": bool,
    "object": Dict[str, Any],
    "array": List[Any],
}

_ADAPTERS: Dict[str, TypeAdapter] = {
    name: TypeAdapter(annotation) for name, annotation in _FIELD_TYPES.items()
}


class FieldSpec(BaseModel):
    """A single field declared by a schema."""

    name: str
    type: Optional[str] = None
    required: bool = False
    default: Any = None
    has_default: bool = False
    source: Optional[str] = None

    @property
    def path(self) -> str:
        return self.source or self.name


def _field_spec(name: str, definition: Any, required: bool) -> FieldSpec:
    if not isinstance(definition, Mapping):
        raise ValueError(f"definition of field '{name}' must be an object")
    type_name = definition.get("type")
    default = definition.get("default")
    return FieldSpec(
        name=name,
        type=type_name if isinstance(type_name, str) else None,
        required=required,
        default=default,
        has_default=default is not None,
        source=definition.get("source") or definition.get("x-source"),
    )


def parse_fields(schema: Mapping[str, Any]) -> Optional[List[FieldSpec]]:
    """Return the fields declared by ``schema``.

    ``None`` means the schema is a simple ``target -> source`` mapping.

    Raises:
        ValueError: If the schema matches none of the supported shapes.
    """
    if schema.get("type") == "object":
        properties = schema.get("properties") or {}
        if not isinstance(properties, Mapping):
            raise ValueError("'properties' must be an object")
        required = set(schema.get("required") or [])
        return [
            _field_spec(name, definition, name in required)
            for name, definition in properties.items()
        ]
    if all(isinstance(v, Mapping) for v in schema.values()):
        return [
            _field_spec(name, definition, bool(definition.get("required")))
            for name, definition in schema.items()
        ]
    if all(isinstance(v, str) for v in schema.values()):
        return None
    raise ValueError("schema must map fields to definitions or to source paths")


def split_path(path: str) -> List[str]:
    """Split ``$.stage[0].activity`` into ``["stage", "0", "activity"]``."""
    path = path.strip()
    if path.startswith("$."):
        path = path[2:]
    elif path == "$":
        path = ""
    path = _PATH_INDEX.sub(r".\1", path)
    return [part for part in path.split(".") if part]


def get_path(data: Any, path: str) -> Any:
    """Look up ``path`` in nested mappings and lists; ``None`` when absent."""
    if isinstance(data, Mapping) and path in data:
        return data[path]
    current = data
    for part in split_path(path):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def set_path(target: Dict[str, Any], key: str, value: Any) -> None:
    """Assign ``value`` at ``key``, creating nested dicts and lists.

    ``user.first_name`` sets ``target["user"]["first_name"]`` and
    ``to[0].address`` sets ``target["to"][0]["address"]``.
    """
    head, _, rest = key.partition(".")
    match = _KEY_INDEX.match(head)
    if match:
        name, index = match.group(1), int(match.group(2))
        items = target.get(name)
        if not isinstance(items, list):
            items = []
        items.extend([None] * (index + 1 - len(items)))
        target[name] = items
        if not rest:
            items[index] = value
            return
        child = items[index]
        if not isinstance(child, dict):
            child = {}
            items[index] = child
        set_path(child, rest, value)
        return

    if not rest:
        target[head] = value
        return
    child = target.get(head)
    if not isinstance(child, dict):
        child = {}
        target[head] = child
    set_path(child, rest, value)


def describe_validation_error(exc: ValidationError) -> str:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        if err["type"] == "missing":
            messages.append(f"required field '{loc}' is missing")
        else:
            messages.append(f"field '{loc}': {err['msg']}")
    return "; ".join(messages)


class SchemaProcessor:
    """Validates raw payloads and maps fields in and out of workflow context."""

    def __init__(self) -> None:
        self._models: Dict[str, type[BaseModel]] = {}

    # ------------------------------------------------------------------
    # Validation
    def parse_payload(self, raw: str | bytes | Mapping[str, Any] | None) -> Dict[str, Any]:
        """Parse a serialized JSON object; empty input yields ``{}``."""
        if raw is None:
            return {}
        if isinstance(raw, Mapping):
            return dict(raw)
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ContinuationError(
                ErrorCode.INVALID_INPUT, f"Failed to parse input JSON: {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise ContinuationError(
                ErrorCode.INVALID_INPUT, "Input JSON must be an object"
            )
        return data

    def validate_input(
        self,
        raw: str | bytes | Mapping[str, Any] | None,
        schema: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Parse ``raw`` and check it against ``schema``.

        Defaults are applied for absent fields and undeclared fields pass
        through untouched. Without a schema the parsed payload is returned
        as-is.

        Raises:
            ContinuationError: ``INVALID_INPUT`` for unparseable payloads when
                no schema is declared, ``VALIDATION_FAILED`` when a declared
                schema is violated or the payload cannot be parsed.
        """
        if not schema:
            return self.parse_payload(raw)
        try:
            data = self.parse_payload(raw)
        except ContinuationError as exc:
            raise ContinuationError(ErrorCode.VALIDATION_FAILED, exc.message) from exc

        try:
            fields = parse_fields(schema)
        except ValueError as exc:
            raise ContinuationError(
                ErrorCode.VALIDATION_FAILED, f"Invalid input schema: {exc}"
            ) from exc
        if not fields:
            return data

        by_name = {spec.name: spec for spec in fields}
        # null counts as absent for declared fields
        data = {k: v for k, v in data.items() if not (k in by_name and v is None)}

        model = self._model_for(schema, fields)
        try:
            validated = model.model_validate(data)
        except ValidationError as exc:
            raise ContinuationError(
                ErrorCode.VALIDATION_FAILED,
                f"Input validation failed: {describe_validation_error(exc)}",
            ) from exc

        dumped = validated.model_dump(by_alias=True)
        result: Dict[str, Any] = {}
        for key, value in data.items():
            result[key] = dumped[key] if key in by_name else value
        for spec in fields:
            if spec.name not in result and spec.has_default:
                result[spec.name] = spec.default
        return result

    def _model_for(
        self, schema: Mapping[str, Any], fields: List[FieldSpec]
    ) -> type[BaseModel]:
        key = json.dumps(schema, sort_keys=True, default=str)
        model = self._models.get(key)
        if model is not None:
            return model

        definitions: Dict[str, Any] = {}
        for index, spec in enumerate(fields):
            annotation = _FIELD_TYPES.get(spec.type or "", Any)
            if spec.required and not spec.has_default:
                definitions[f"field_{index}"] = (annotation, Field(..., alias=spec.name))
            else:
                definitions[f"field_{index}"] = (
                    Optional[annotation],
                    Field(default=spec.default, alias=spec.name),
                )
        model = create_model(
            "ValidatedInput",
            __config__=ConfigDict(extra="allow"),
            **definitions,
        )
        self._models[key] = model
        return model

    # ------------------------------------------------------------------
    # Resolution
    def coerce(self, value: Any, type_name: Optional[str]) -> Any:
        """Coerce ``value`` to a schema type; unknown types pass through."""
        adapter = _ADAPTERS.get(type_name or "")
        if adapter is None:
            return value
        return adapter.validate_python(value)

    def resolve(
        self, source: Mapping[str, Any], schema: Optional[Mapping[str, Any]]
    ) -> Dict[str, Any]:
        """Build a map holding exactly the fields ``schema`` asks for.

        Raises:
            ContinuationError: ``SCHEMA_RESOLUTION_FAILED`` when the schema is
                unusable, a required field is missing or coercion fails.
        """
        if not schema:
            return {}
        try:
            fields = parse_fields(schema)
        except ValueError as exc:
            raise ContinuationError(
                ErrorCode.SCHEMA_RESOLUTION_FAILED, f"Invalid schema: {exc}"
            ) from exc
        if fields is None:
            return self._resolve_mapping(source, schema)

        result: Dict[str, Any] = {}
        for spec in fields:
            value = get_path(source, spec.path)
            if value is None:
                if spec.has_default:
                    value = spec.default
                elif spec.required:
                    raise ContinuationError(
                        ErrorCode.SCHEMA_RESOLUTION_FAILED,
                        f"required field '{spec.name}' not found at '{spec.path}'",
                    )
                else:
                    continue
            try:
                value = self.coerce(value, spec.type)
            except ValidationError as exc:
                raise ContinuationError(
                    ErrorCode.SCHEMA_RESOLUTION_FAILED,
                    f"failed to coerce field '{spec.name}' to {spec.type}: "
                    f"{describe_validation_error(exc)}",
                ) from exc
            set_path(result, spec.name, value)
        return result

    def _resolve_mapping(
        self, source: Mapping[str, Any], mapping: Mapping[str, str]
    ) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for target, path in mapping.items():
            if _TEMPLATE_EXPR.search(path):
                text = self.interpolate(source, path)
                if text:
                    set_path(result, target, text)
                continue
            value = get_path(source, path)
            if value is not None:
                set_path(result, target, value)
        return result

    def interpolate(self, source: Mapping[str, Any], template: str) -> str:
        """Replace each ``${path}`` in ``template`` with its value in ``source``."""

        def _substitute(match: re.Match) -> str:
            value = get_path(source, match.group(1))
            if value is None:
                return ""
            return str(_stringify(value))

        return _TEMPLATE_EXPR.sub(_substitute, template)

    @staticmethod
    def merge(context: Mapping[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
        """Overlay ``updates`` onto a copy of ``context``; new keys win."""
        merged = dict(context)
        merged.update(updates)
        return merged
