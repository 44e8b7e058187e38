from __future__ import annotations

import logging
from types import MappingProxyType
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Tuple,
    Type,
    Union,
)

import yaml
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import load_pem_public_key
from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    StrictInt,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from sigtrust.errors import InvalidConfigError, SchemaError
from sigtrust.subject import Subject

logger = logging.getLogger(__name__)

API_VERSION_FIELD = "apiVersion"


class _Schema(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


def _read_only(value: Dict[str, str]) -> Mapping[str, str]:
    return MappingProxyType(value)


def _plain_dict(value: Mapping[str, str]) -> Dict[str, str]:
    return dict(value)


# Read-only view so a parsed assertion cannot be changed through its annotations.
Annotations = Annotated[
    Dict[str, str],
    AfterValidator(_read_only),
    PlainSerializer(_plain_dict, return_type=Dict[str, str]),
]


def _check_public_key_pem(value: str) -> str:
    try:
        load_pem_public_key(value.encode("utf-8"))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError(f"key is not a PEM encoded public key: {exc}") from None
    return value


def _check_certificate_pem(value: str) -> str:
    try:
        x509.load_pem_x509_certificate(value.encode("utf-8"))
    except ValueError as exc:
        raise ValueError(f"not a PEM encoded X.509 certificate: {exc}") from None
    return value


class PubKeyAssertion(_Schema):
    kind: Literal["pubKey"] = "pubKey"
    owner: Optional[str] = None
    key: str
    annotations: Optional[Annotations] = None

    @field_validator("key")
    @classmethod
    def _key_is_pem(cls, value: str) -> str:
        return _check_public_key_pem(value)


class GenericIssuerAssertion(_Schema):
    kind: Literal["genericIssuer"] = "genericIssuer"
    issuer: str
    subject: Subject
    annotations: Optional[Annotations] = None


class GithubActionAssertion(_Schema):
    kind: Literal["githubAction"] = "githubAction"
    owner: str = Field(min_length=1)
    repo: Optional[str] = None
    annotations: Optional[Annotations] = None


class CertificateAssertion(_Schema):
    """Signature must validate against a user supplied certificate and optional chain.

    With ``require_rekor_bundle`` set, the signature must also come with a Rekor
    bundle, which lets the host check the certificate validity at signing time.
    """

    kind: Literal["certificate"] = "certificate"
    certificate: str
    certificate_chain: Optional[Tuple[str, ...]] = None
    require_rekor_bundle: bool = True
    annotations: Optional[Annotations] = None

    @field_validator("certificate")
    @classmethod
    def _certificate_is_pem(cls, value: str) -> str:
        return _check_certificate_pem(value)

    @field_validator("certificate_chain")
    @classmethod
    def _chain_is_pem(cls, value: Optional[Tuple[str, ...]]) -> Optional[Tuple[str, ...]]:
        if value is not None:
            for entry in value:
                _check_certificate_pem(entry)
        return value


Assertion = Annotated[
    Union[
        PubKeyAssertion,
        GenericIssuerAssertion,
        GithubActionAssertion,
        CertificateAssertion,
    ],
    Field(discriminator="kind"),
]

ASSERTION_TYPES: Tuple[Type[BaseModel], ...] = (
    PubKeyAssertion,
    GenericIssuerAssertion,
    GithubActionAssertion,
    CertificateAssertion,
)


class AnyOf(_Schema):
    minimum_matches: StrictInt = Field(default=1, ge=1)
    signatures: Tuple[Assertion, ...]


class VerificationConfigV1(_Schema):
    all_of: Optional[Tuple[Assertion, ...]] = None
    any_of: Optional[AnyOf] = None

    def is_empty(self) -> bool:
        return self.all_of is None and self.any_of is None


# Every "current schema" reference goes through these two names. Adding v2 means
# pointing them at the new model and registering a v1 -> v2 step in MIGRATIONS.
LatestVerificationConfig = VerificationConfigV1
LATEST_API_VERSION = "v1"

SCHEMAS: Dict[str, Type[_Schema]] = {
    "v1": VerificationConfigV1,
}

# api_version -> (next api_version, upgrade function)
MIGRATIONS: Dict[str, Tuple[str, Callable[[Any], Any]]] = {}


class VersionedConfig(BaseModel):
    api_version: str = LATEST_API_VERSION
    config: LatestVerificationConfig

    model_config = ConfigDict(frozen=True)


class UnsupportedConfig(BaseModel):
    api_version: str
    document: Dict[str, Any]

    model_config = ConfigDict(frozen=True)


class InvalidConfig(BaseModel):
    value: Any = None
    error: str
    errors: List[Dict[str, str]] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


VersionedVerificationConfig = Union[VersionedConfig, UnsupportedConfig]
ClassifiedConfig = Union[VersionedConfig, UnsupportedConfig, InvalidConfig]


def load_document(raw: Any) -> Any:
    """Turn JSON/YAML text or bytes into Python data; anything else passes through."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidConfigError(f"verification config is not UTF-8 text: {exc}") from exc
    if isinstance(raw, str):
        try:
            return yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise InvalidConfigError(f"verification config is not valid YAML/JSON: {exc}") from exc
    return raw


def parse_verification_config_v1(raw: Any) -> VerificationConfigV1:
    document = load_document(raw)
    if isinstance(document, VerificationConfigV1):
        return document
    if not isinstance(document, dict):
        raise InvalidConfigError(
            f"verification config must be a mapping, got {type(document).__name__}"
        )
    try:
        return VerificationConfigV1.model_validate(document)
    except ValidationError as exc:
        raise SchemaError.from_validation_error(exc) from exc


def migrate_to_latest(api_version: str, config: Any) -> LatestVerificationConfig:
    while api_version != LATEST_API_VERSION:
        if api_version not in MIGRATIONS:
            raise SchemaError(f"no migration path from apiVersion {api_version!r}")
        api_version, step = MIGRATIONS[api_version]
        config = step(config)
    return config


def parse_verification_config(raw: Any) -> VersionedVerificationConfig:
    """Parse a versioned verification config.

    Returns ``VersionedConfig`` for a supported ``apiVersion`` and ``UnsupportedConfig``
    for any other string tag, whose body is kept as-is without validation. Raises
    ``InvalidConfigError`` when ``raw`` is not a versioned object at all and
    ``SchemaError`` when a supported body fails strict validation.
    """
    document = load_document(raw)
    if isinstance(document, (VersionedConfig, UnsupportedConfig)):
        return document
    if isinstance(document, LatestVerificationConfig):
        return VersionedConfig(config=document)
    if not isinstance(document, dict):
        raise InvalidConfigError(
            f"verification config must be a mapping, got {type(document).__name__}"
        )
    if API_VERSION_FIELD not in document:
        raise InvalidConfigError(
            f"verification config is missing {API_VERSION_FIELD}",
            [{"field": API_VERSION_FIELD, "message": f"missing {API_VERSION_FIELD}"}],
        )
    api_version = document[API_VERSION_FIELD]
    if not isinstance(api_version, str):
        raise InvalidConfigError(
            f"{API_VERSION_FIELD} must be a string, got {type(api_version).__name__}",
            [{"field": API_VERSION_FIELD, "message": "must be a string"}],
        )

    schema = SCHEMAS.get(api_version)
    if schema is None:
        logger.info("verification config has unsupported apiVersion %r", api_version)
        return UnsupportedConfig(api_version=api_version, document=dict(document))

    body = {k: v for k, v in document.items() if k != API_VERSION_FIELD}
    try:
        config = schema.model_validate(body)
    except ValidationError as exc:
        raise SchemaError.from_validation_error(exc) from exc
    return VersionedConfig(config=migrate_to_latest(api_version, config))


def classify_verification_config(raw: Any) -> ClassifiedConfig:
    """Like ``parse_verification_config`` but reports bad input as ``InvalidConfig``."""
    try:
        return parse_verification_config(raw)
    except SchemaError as exc:
        value = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
        return InvalidConfig(value=value, error=str(exc), errors=exc.errors)


def dump_verification_config(
    config: Union[VersionedConfig, UnsupportedConfig, VerificationConfigV1],
) -> Dict[str, Any]:
    if isinstance(config, UnsupportedConfig):
        return dict(config.document)
    if isinstance(config, VersionedConfig):
        body = config.config.model_dump(by_alias=True, exclude_none=True, mode="json")
        return {API_VERSION_FIELD: config.api_version, **body}
    return config.model_dump(by_alias=True, exclude_none=True, mode="json")


def assertion_label(assertion: Any) -> str:
    if isinstance(assertion, PubKeyAssertion):
        return f"pubKey(owner={assertion.owner})" if assertion.owner else "pubKey"
    if isinstance(assertion, GenericIssuerAssertion):
        claim = getattr(assertion.subject, "equal", None) or getattr(
            assertion.subject, "url_prefix", ""
        )
        return f"genericIssuer({assertion.issuer}, {claim})"
    if isinstance(assertion, GithubActionAssertion):
        target = f"{assertion.owner}/{assertion.repo}" if assertion.repo else assertion.owner
        return f"githubAction({target})"
    if isinstance(assertion, CertificateAssertion):
        return "certificate"
    raise TypeError(f"unknown assertion type: {type(assertion).__name__}")
