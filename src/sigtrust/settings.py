from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

from sigtrust.errors import InvalidConfigError
from sigtrust.models import (
    API_VERSION_FIELD,
    LATEST_API_VERSION,
    InvalidConfig,
    UnsupportedConfig,
    classify_verification_config,
    load_document,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_KEY = "verificationConfig"


class HostSettings(BaseSettings):
    """Connection to the verification host, read from ``SIGTRUST_*`` variables."""

    model_config = SettingsConfigDict(env_prefix="SIGTRUST_", extra="ignore")

    host_url: Optional[str] = None
    timeout_seconds: float = 30.0
    allow_insecure: bool = False


class SettingsValidationResponse(BaseModel):
    valid: bool
    message: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


def load_settings_document(path: str) -> Dict[str, Any]:
    settings_path = Path(path)
    if not settings_path.exists():
        raise FileNotFoundError(f"settings not found: {settings_path}")
    text = settings_path.read_text(encoding="utf-8")
    try:
        if settings_path.suffix == ".json":
            payload = json.loads(text)
        else:
            payload = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise InvalidConfigError(f"cannot parse settings {settings_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidConfigError(f"settings {settings_path} must contain a mapping")
    return payload


def extract_verification_config(settings: Dict[str, Any], key: str = DEFAULT_CONFIG_KEY) -> Any:
    """Return the verification config embedded in a larger settings object.

    A settings object that is itself a versioned config is returned unchanged.
    """
    if key in settings:
        return settings[key]
    if API_VERSION_FIELD in settings:
        return settings
    raise InvalidConfigError(
        f"settings do not contain {key!r}",
        [{"field": key, "message": f"missing {key}"}],
    )


def validate_settings(raw: Any, key: str = DEFAULT_CONFIG_KEY) -> SettingsValidationResponse:
    try:
        raw = load_document(raw)
    except InvalidConfigError as exc:
        return SettingsValidationResponse(valid=False, message=str(exc))
    if isinstance(raw, dict):
        try:
            raw = extract_verification_config(raw, key)
        except InvalidConfigError as exc:
            return SettingsValidationResponse(valid=False, message=str(exc))
    outcome = classify_verification_config(raw)
    if isinstance(outcome, UnsupportedConfig):
        return SettingsValidationResponse(
            valid=False,
            message=(
                f"verification config apiVersion {outcome.api_version!r} is not supported "
                f"by this policy (supported: {LATEST_API_VERSION!r}); upgrade the policy "
                "or rewrite the settings for the supported version"
            ),
        )
    if isinstance(outcome, InvalidConfig):
        return SettingsValidationResponse(
            valid=False,
            message=f"verification config is not valid: {outcome.error}",
        )
    if outcome.config.is_empty():
        logger.warning("verification config declares neither allOf nor anyOf")
    return SettingsValidationResponse(valid=True)


def validate_settings_payload(payload: bytes, key: str = DEFAULT_CONFIG_KEY) -> bytes:
    """JSON settings in, JSON ``SettingsValidationResponse`` out."""
    try:
        settings = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        response = SettingsValidationResponse(
            valid=False, message=f"error decoding settings payload: {exc}"
        )
    else:
        response = validate_settings(settings, key)
    return response.model_dump_json().encode("utf-8")
