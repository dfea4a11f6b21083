from __future__ import annotations

import json
import re
from typing import Any, Mapping, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .logging import get_logger

logger = get_logger(name=__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_JSON_TYPES: Mapping[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict, Mapping),
}

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


class SchemaValidator:
    """Validates tool parameters and model replies against declared shapes.

    Tool parameters are checked against a small JSON-schema subset (``type``,
    ``required``, ``properties``, ``additionalProperties``, ``enum``,
    ``pattern``, ``minimum``/``exclusiveMinimum``/``maximum``, ``maxLength``).
    Model replies are parsed into pydantic models. Every failure is raised as
    :class:`~supportdesk.core.errors.ValidationError`.
    """

    def __init__(self, *, max_string_length: int = 4096) -> None:
        self._max_string_length = max_string_length

    def validate_payload(self, name: str, payload: Any, schema: Mapping[str, Any] | None) -> dict[str, Any]:
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Parameters for '{name}' must be an object")
        errors: list[str] = []
        if schema:
            self._check(schema, payload, path="", errors=errors)
        self._guard_payload_shape(payload, key_path="", errors=errors)
        if errors:
            raise ValidationError(f"Invalid parameters for '{name}': {'; '.join(errors)}", errors=errors)
        self._ensure_serializable(name, payload)
        return dict(payload)

    def parse_model(self, model: type[ModelT], raw: Any) -> ModelT:
        """Coerce a raw model reply (JSON text or mapping) into ``model``."""
        data = raw
        if isinstance(raw, (str, bytes)):
            data = self._load_json(raw.decode() if isinstance(raw, bytes) else raw)
        if not isinstance(data, Mapping):
            raise ValidationError(f"Expected a JSON object for {model.__name__}")
        try:
            return model.model_validate(dict(data))
        except PydanticValidationError as exc:
            errors = [
                f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
                for error in exc.errors()
            ]
            raise ValidationError(f"Reply does not match {model.__name__}", errors=errors) from exc

    def _load_json(self, text: str) -> Any:
        content = text.strip()
        fenced = _FENCE_PATTERN.match(content)
        if fenced:
            content = fenced.group(1).strip()
        if not content.startswith("{"):
            start = content.find("{")
            end = content.rfind("}")
            if start == -1 or end <= start:
                raise ValidationError("Reply does not contain a JSON object")
            content = content[start : end + 1]
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Reply is not valid JSON: {exc.msg}") from exc

    def _check(self, schema: Mapping[str, Any], value: Any, *, path: str, errors: list[str]) -> None:
        label = path or "<root>"
        expected = schema.get("type")
        if isinstance(expected, str) and expected in _JSON_TYPES:
            if not self._matches_type(expected, value):
                errors.append(f"{label} must be of type {expected}")
                return

        enum = schema.get("enum")
        if isinstance(enum, (list, tuple)) and value not in enum:
            errors.append(f"{label} must be one of {', '.join(str(item) for item in enum)}")

        if isinstance(value, str):
            pattern = schema.get("pattern")
            if isinstance(pattern, str) and re.fullmatch(pattern, value) is None:
                errors.append(f"{label} does not match pattern {pattern}")
            max_length = schema.get("maxLength")
            if isinstance(max_length, int) and len(value) > max_length:
                errors.append(f"{label} exceeds {max_length} characters")
            min_length = schema.get("minLength")
            if isinstance(min_length, int) and len(value) < min_length:
                errors.append(f"{label} must be at least {min_length} characters")

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            minimum = schema.get("minimum")
            if isinstance(minimum, (int, float)) and value < minimum:
                errors.append(f"{label} must be >= {minimum}")
            exclusive = schema.get("exclusiveMinimum")
            if isinstance(exclusive, (int, float)) and value <= exclusive:
                errors.append(f"{label} must be > {exclusive}")
            maximum = schema.get("maximum")
            if isinstance(maximum, (int, float)) and value > maximum:
                errors.append(f"{label} must be <= {maximum}")

        if isinstance(value, Mapping):
            properties = schema.get("properties") if isinstance(schema.get("properties"), Mapping) else {}
            required = schema.get("required") if isinstance(schema.get("required"), list) else []
            missing = [field for field in required if value.get(field) is None]
            for field in sorted(set(missing)):
                errors.append(f"{self._join(path, field)} is required")
            if schema.get("additionalProperties", True) is False:
                extraneous = [field for field in value if field not in properties]
                for field in sorted(set(extraneous)):
                    errors.append(f"{self._join(path, field)} is not a supported parameter")
            for field, subschema in properties.items():
                if field in value and value[field] is not None and isinstance(subschema, Mapping):
                    self._check(subschema, value[field], path=self._join(path, field), errors=errors)

        if isinstance(value, (list, tuple)):
            items = schema.get("items")
            if isinstance(items, Mapping):
                for index, item in enumerate(value):
                    self._check(items, item, path=f"{label}[{index}]", errors=errors)

    def _matches_type(self, expected: str, value: Any) -> bool:
        if isinstance(value, bool) and expected in {"integer", "number"}:
            return False
        if expected == "integer" and isinstance(value, float):
            return value.is_integer()
        return isinstance(value, _JSON_TYPES[expected])

    def _guard_payload_shape(self, value: Any, *, key_path: str, errors: list[str]) -> None:
        if isinstance(value, Mapping):
            for key, item in value.items():
                self._guard_payload_shape(item, key_path=self._join(key_path, str(key)), errors=errors)
            return
        if isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                self._guard_payload_shape(item, key_path=f"{key_path}[{index}]", errors=errors)
            return
        if isinstance(value, str) and len(value) > self._max_string_length:
            errors.append(f"{key_path or '<root>'} exceeds maximum length of {self._max_string_length} characters")

    def _ensure_serializable(self, name: str, payload: Mapping[str, Any]) -> None:
        try:
            json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Parameters for '{name}' are not JSON-serializable") from exc

    @staticmethod
    def _join(path: str, field: str) -> str:
        return f"{path}.{field}" if path else field


schema_validator = SchemaValidator()

__all__ = ["SchemaValidator", "schema_validator"]
