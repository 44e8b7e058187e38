from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import ValidationError


class EvalError(Exception):
    """Base class for every error raised while parsing or evaluating a trust policy."""


class SchemaError(EvalError, ValueError):
    """The verification config does not match the schema.

    ``errors`` holds one ``{"field": ..., "message": ...}`` entry per problem so that
    settings validation can name the offending fields.
    """

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None) -> None:
        super().__init__(message)
        self.errors: List[Dict[str, str]] = errors or []

    @property
    def fields(self) -> List[str]:
        return [e["field"] for e in self.errors if e.get("field")]

    @classmethod
    def from_validation_error(cls, exc: ValidationError, prefix: str = "") -> "SchemaError":
        errors: List[Dict[str, str]] = []
        for item in exc.errors():
            loc = _format_location(item.get("loc", ()), prefix)
            if item.get("type") == "extra_forbidden":
                message = f"unknown field: {loc}"
            else:
                message = f"{loc}: {item.get('msg', 'invalid value')}" if loc else item.get(
                    "msg", "invalid value"
                )
            errors.append({"field": loc, "message": message})
        summary = "; ".join(e["message"] for e in errors) or str(exc)
        return cls(f"invalid verification config: {summary}", errors)


class InvalidConfigError(SchemaError):
    """The value is not a versioned verification config at all."""


class UnsupportedVersionError(EvalError):
    """The config is versioned, but with a version this release does not understand."""

    def __init__(self, api_version: str, supported: str) -> None:
        super().__init__(
            f"unsupported verification config apiVersion {api_version!r}; "
            f"this release supports {supported!r}, upgrade to evaluate newer policies"
        )
        self.api_version = api_version
        self.supported = supported


class OracleError(EvalError):
    """A verification host call failed without producing a verdict."""

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(message)
        self.operation = operation


def _format_location(loc: Any, prefix: str) -> str:
    parts: List[str] = [prefix] if prefix else []
    for token in loc:
        if isinstance(token, int):
            if parts:
                parts[-1] = f"{parts[-1]}[{token}]"
            else:
                parts.append(f"[{token}]")
            continue
        parts.append(str(token))
    return ".".join(parts)
